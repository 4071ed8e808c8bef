"""Receiver side transfer state machine.

The [`TransferReceiver`][sharecode.transfer.receiver.TransferReceiver]
consumes channel messages one at a time through
[`feed()`][sharecode.transfer.receiver.TransferReceiver.feed] and returns
the events the message produced. It never touches the transport or the file
system, so every transition can be tested by feeding messages directly.

```
AWAITING_METADATA --metadata--> RECEIVING --last chunk--> COMPLETE
                                    |
                                    +--too many bytes--> FAILED
```
"""
from __future__ import annotations

import dataclasses
import enum
import logging
from typing import Union

from sharecode.transfer.chunks import progress
from sharecode.transfer.chunks import reassemble
from sharecode.transfer.exceptions import MetadataDecodeError
from sharecode.transfer.exceptions import TransferSizeError
from sharecode.transfer.metadata import decode_metadata
from sharecode.transfer.metadata import FileMetadata

logger = logging.getLogger(__name__)


class TransferPhase(enum.Enum):
    """Phases of an incoming transfer."""

    AWAITING_METADATA = 'awaiting-metadata'
    """Channel is open but the file metadata has not arrived."""
    RECEIVING = 'receiving'
    """Metadata arrived and chunks are being buffered."""
    COMPLETE = 'complete'
    """All declared bytes arrived and the file was reassembled."""
    FAILED = 'failed'
    """More bytes arrived than were declared."""


@dataclasses.dataclass(frozen=True)
class MetadataReceived:
    """File metadata was accepted."""

    metadata: FileMetadata


@dataclasses.dataclass(frozen=True)
class ChunkReceived:
    """A chunk was buffered.

    Attributes:
        received: Bytes received so far.
        total: Bytes declared by the metadata.
        percent: [`progress()`][sharecode.transfer.chunks.progress] of
            `received` over `total`.
    """

    received: int
    total: int
    percent: int


@dataclasses.dataclass(frozen=True)
class TransferComplete:
    """Every declared byte arrived; `data` is the reassembled file."""

    metadata: FileMetadata
    data: bytes = dataclasses.field(repr=False)


@dataclasses.dataclass(frozen=True)
class TransferFailed:
    """The transfer cannot complete."""

    error: Exception


@dataclasses.dataclass(frozen=True)
class MessageIgnored:
    """A message was dropped without changing state."""

    reason: str


ReceiveEvent = Union[
    MetadataReceived,
    ChunkReceived,
    TransferComplete,
    TransferFailed,
    MessageIgnored,
]


class TransferReceiver:
    """Track an incoming file transfer.

    Example:
        ```python
        receiver = TransferReceiver()
        receiver.feed('{"name": "a.txt", "size": 5}')
        events = receiver.feed(b'hello')
        assert isinstance(events[-1], TransferComplete)
        assert events[-1].data == b'hello'
        ```
    """

    def __init__(self) -> None:
        self._phase = TransferPhase.AWAITING_METADATA
        self._metadata: FileMetadata | None = None
        self._chunks: list[bytes] = []
        self._received = 0

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(phase={self._phase.name}, '
            f'received={self._received}, metadata={self._metadata})'
        )

    @property
    def phase(self) -> TransferPhase:
        """Current phase of the transfer."""
        return self._phase

    @property
    def metadata(self) -> FileMetadata | None:
        """Metadata of the file, once received."""
        return self._metadata

    @property
    def received(self) -> int:
        """Number of bytes buffered so far."""
        return self._received

    @property
    def buffered_chunks(self) -> int:
        """Number of chunks currently held in the buffer."""
        return len(self._chunks)

    def reset(self) -> None:
        """Discard all state and wait for new metadata."""
        self._phase = TransferPhase.AWAITING_METADATA
        self._metadata = None
        self._chunks = []
        self._received = 0

    def feed(self, message: bytes | str) -> list[ReceiveEvent]:
        """Process one message from the data channel.

        Args:
            message: Text (`str`) or binary (`bytes`) channel message.

        Returns:
            Events caused by the message, in order.
        """
        if isinstance(message, str):
            return self._on_text(message)
        return self._on_binary(bytes(message))

    def _on_text(self, message: str) -> list[ReceiveEvent]:
        if self._phase is not TransferPhase.AWAITING_METADATA:
            return [
                self._ignore(
                    f'text message received while {self._phase.value}',
                ),
            ]

        try:
            metadata = decode_metadata(message)
        except MetadataDecodeError as e:
            return [self._ignore(f'malformed metadata: {e}')]

        self._metadata = metadata
        self._chunks = []
        self._received = 0
        self._phase = TransferPhase.RECEIVING
        logger.info(
            f'Receiving file {metadata.name!r} ({metadata.size} bytes)',
        )

        events: list[ReceiveEvent] = [MetadataReceived(metadata)]
        if metadata.size == 0:
            # Nothing follows the metadata of an empty file
            events.append(ChunkReceived(0, 0, 100))
            events.append(self._complete())
        return events

    def _on_binary(self, data: bytes) -> list[ReceiveEvent]:
        if self._phase is TransferPhase.AWAITING_METADATA:
            return [self._ignore('binary message received before metadata')]
        if self._phase is not TransferPhase.RECEIVING:
            return [
                self._ignore(
                    f'binary message received while {self._phase.value}',
                ),
            ]

        assert self._metadata is not None
        total = self._metadata.size
        self._chunks.append(data)
        self._received += len(data)

        if self._received > total:
            error = TransferSizeError(
                f'Received {self._received} bytes but metadata for '
                f'{self._metadata.name!r} declared {total} bytes.',
            )
            logger.error(str(error))
            self._chunks = []
            self._phase = TransferPhase.FAILED
            return [TransferFailed(error)]

        percent = progress(self._received, total)
        logger.debug(
            f'Buffered chunk of {len(data)} bytes '
            f'({self._received}/{total}, {percent}%)',
        )
        events: list[ReceiveEvent] = [
            ChunkReceived(self._received, total, percent),
        ]
        if self._received == total:
            events.append(self._complete())
        return events

    def _complete(self) -> TransferComplete:
        assert self._metadata is not None
        data = reassemble(self._chunks)
        self._chunks = []
        self._phase = TransferPhase.COMPLETE
        logger.info(f'Reassembled {self._metadata.name!r} ({len(data)} bytes)')
        return TransferComplete(self._metadata, data)

    def _ignore(self, reason: str) -> MessageIgnored:
        logger.warning(f'Ignoring channel message: {reason}')
        return MessageIgnored(reason)
