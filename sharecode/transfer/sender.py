"""Sender side of a file transfer."""
from __future__ import annotations

import dataclasses
import logging
import os
from typing import Callable

from sharecode.transfer.chunks import chunk_count
from sharecode.transfer.chunks import DEFAULT_CHUNK_SIZE
from sharecode.transfer.chunks import iter_chunks
from sharecode.transfer.chunks import progress
from sharecode.transfer.metadata import encode_metadata
from sharecode.transfer.metadata import FileMetadata
from sharecode.transport.protocols import DataChannel

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class TransferProgress:
    """Progress of an outgoing transfer after a chunk was handed off."""

    sent: int
    total: int
    chunks_sent: int
    chunks_total: int

    @property
    def percent(self) -> int:
        """Integer percentage of bytes sent."""
        if self.total == 0:
            return 100
        return progress(self.sent, self.total)


async def send_file(
    channel: DataChannel,
    path: str | os.PathLike[str],
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    on_progress: Callable[[TransferProgress], None] | None = None,
) -> FileMetadata:
    """Send a file over an open data channel.

    The metadata text message is sent exactly once, followed by each
    slice of the file in order. A slice is only read from disk after the
    previous one has been accepted by
    [`DataChannel.send()`][sharecode.transport.protocols.DataChannel.send],
    so at most one slice is held in memory by the sender.

    Args:
        channel: Open data channel to the receiver.
        path: Path of the file to send.
        chunk_size: Maximum size of each binary message.
        on_progress: Optional callback invoked after each chunk.

    Returns:
        Metadata that was sent for the file.

    Raises:
        TransportClosedError: If the channel closes during the transfer.
    """
    metadata = FileMetadata.from_path(path)
    total_chunks = chunk_count(metadata.size, chunk_size)
    logger.info(
        f'Sending {metadata.name!r} ({metadata.size} bytes, '
        f'{total_chunks} chunks) on channel {channel.label!r}',
    )
    await channel.send(encode_metadata(metadata))

    sent = 0
    for index, chunk in enumerate(iter_chunks(path, chunk_size), start=1):
        await channel.send(chunk)
        sent += len(chunk)
        logger.debug(
            f'Sent chunk {index}/{total_chunks} ({sent}/{metadata.size} bytes)',
        )
        if on_progress is not None:
            on_progress(
                TransferProgress(sent, metadata.size, index, total_chunks),
            )

    if total_chunks == 0 and on_progress is not None:
        on_progress(TransferProgress(0, 0, 0, 0))

    logger.info(f'Finished sending {metadata.name!r}')
    return metadata
