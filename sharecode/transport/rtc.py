"""WebRTC transport built on aiortc.

[aiortc](https://aiortc.readthedocs.io/en/latest/){target=_blank} gathers
every local candidate while the local description is being set and embeds
them in the description. [`RtcTransport`][sharecode.transport.rtc.RtcTransport]
still reports them one at a time through
[`on_local_candidate()`][sharecode.transport.rtc.RtcTransport.on_local_candidate]
so that peers which trickle candidates through the rendezvous record (such
as browsers) interoperate with it.
"""
from __future__ import annotations

import asyncio
import logging
import warnings
from typing import Any
from typing import Callable
from typing import Sequence

from aiortc import RTCConfiguration
from aiortc import RTCDataChannel
from aiortc import RTCIceServer
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from aiortc.sdp import candidate_from_sdp
from cryptography.utils import CryptographyDeprecationWarning

from sharecode.transfer.chunks import DEFAULT_CHUNK_SIZE
from sharecode.transfer.exceptions import TransportClosedError
from sharecode.transport.models import Candidate
from sharecode.transport.models import SessionDescription
from sharecode.transport.protocols import IncomingChannelCallback
from sharecode.transport.protocols import LocalCandidateCallback
from sharecode.transport.protocols import Message

warnings.simplefilter('ignore', CryptographyDeprecationWarning)

logger = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS = ('stun:stun.l.google.com:19302',)
# Senders pause once this many bytes are queued in the channel
DEFAULT_BUFFER_THRESHOLD = 16 * DEFAULT_CHUNK_SIZE

_CLOSED = object()


def parse_sdp_candidates(sdp: str) -> list[Candidate]:
    """Extract the candidates embedded in a session description.

    Args:
        sdp: Session description protocol body.

    Returns:
        Candidates in the order they appear, each tagged with the media
        stream identifier and index of its media section.
    """
    sections: list[list[str]] = []
    for line in sdp.splitlines():
        line = line.strip()
        if line.startswith('m='):
            sections.append([])
        elif sections:
            sections[-1].append(line)

    candidates: list[Candidate] = []
    for index, lines in enumerate(sections):
        mid = None
        for line in lines:
            if line.startswith('a=mid:'):
                mid = line[len('a=mid:') :]
        for line in lines:
            if line.startswith('a=candidate:'):
                candidates.append(
                    Candidate(
                        candidate=line[len('a=') :],
                        sdp_mid=mid,
                        sdp_mline_index=index,
                    ),
                )
    return candidates


class RtcDataChannel:
    """[`DataChannel`][sharecode.transport.protocols.DataChannel] backed by
    an aiortc `RTCDataChannel`.

    Messages are queued from the moment the wrapper is created so nothing
    the peer sends is lost before the first call to
    [`recv()`][sharecode.transport.rtc.RtcDataChannel.recv].

    Args:
        channel: aiortc data channel to wrap.
        buffer_threshold: Buffered byte count above which
            [`send()`][sharecode.transport.rtc.RtcDataChannel.send] waits.
    """

    def __init__(
        self,
        channel: RTCDataChannel,
        *,
        buffer_threshold: int = DEFAULT_BUFFER_THRESHOLD,
    ) -> None:
        self._channel = channel
        self._channel.bufferedAmountLowThreshold = buffer_threshold

        self._incoming: asyncio.Queue[Any] = asyncio.Queue()
        self._opened = asyncio.Event()
        self._closed = asyncio.Event()
        self._buffer_low = asyncio.Event()
        self._close_callbacks: list[Callable[[], None]] = []

        self._channel.on('open', self._on_open)
        self._channel.on('message', self._on_message)
        self._channel.on('close', self._on_close)
        self._channel.on('bufferedamountlow', self._buffer_low.set)

        if self._channel.readyState == 'open':
            self._opened.set()
        elif self._channel.readyState == 'closed':  # pragma: no cover
            self._on_close()

    @property
    def _log_prefix(self) -> str:
        return f'{self.__class__.__name__}[{self.label}]'

    @property
    def label(self) -> str:
        """Label the channel was created with."""
        return self._channel.label

    @property
    def ready_state(self) -> str:
        """Ready state of the underlying channel."""
        if self._closed.is_set():
            return 'closed'
        return self._channel.readyState

    async def wait_open(self) -> None:
        """Wait until the channel is open.

        Raises:
            TransportClosedError: If the channel closes before opening.
        """
        opened = asyncio.ensure_future(self._opened.wait())
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait(
                {opened, closed},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            opened.cancel()
            closed.cancel()
        if not self._opened.is_set():
            raise TransportClosedError(
                f'Channel {self.label!r} closed before opening.',
            )

    async def send(self, message: Message) -> None:
        """Send a message once the buffered amount is low enough.

        Raises:
            TransportClosedError: If the channel is closed.
        """
        while (
            not self._closed.is_set()
            and self._channel.bufferedAmount
            > self._channel.bufferedAmountLowThreshold
        ):
            self._buffer_low.clear()
            await self._buffer_low.wait()

        if self._closed.is_set() or self._channel.readyState != 'open':
            raise TransportClosedError(
                f'Cannot send on channel {self.label!r} in state '
                f'{self.ready_state!r}.',
            )
        self._channel.send(message)

    async def recv(self) -> Message:
        """Receive the next message.

        Raises:
            TransportClosedError: If the channel closed and every earlier
                message was consumed.
        """
        message = await self._incoming.get()
        if message is _CLOSED:
            # Leave the marker for any later call
            self._incoming.put_nowait(_CLOSED)
            raise TransportClosedError(f'Channel {self.label!r} is closed.')
        return message

    def on_close(self, callback: Callable[[], None]) -> None:
        """Register a callback invoked once when the channel closes."""
        if self._closed.is_set():
            callback()
        else:
            self._close_callbacks.append(callback)

    async def close(self) -> None:
        """Flush pending messages then close the channel."""
        if self._channel.readyState == 'open':
            # Flush send buffers before close
            # https://github.com/aiortc/aiortc/issues/547
            transport = self._channel._RTCDataChannel__transport
            await transport._data_channel_flush()
            await transport._transmit()
        self._channel.close()
        self._on_close()

    def _on_open(self) -> None:
        logger.info(f'{self._log_prefix}: channel open')
        self._opened.set()

    def _on_message(self, message: Message) -> None:
        self._incoming.put_nowait(message)

    def _on_close(self) -> None:
        if self._closed.is_set():
            return
        logger.info(f'{self._log_prefix}: channel closed')
        self._closed.set()
        # Wake any sender blocked on back-pressure
        self._buffer_low.set()
        self._incoming.put_nowait(_CLOSED)
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            callback()


class RtcTransport:
    """[`PeerTransport`][sharecode.transport.protocols.PeerTransport] backed
    by an aiortc `RTCPeerConnection`.

    Example:
        ```python
        offerer = RtcTransport(ice_servers=[])
        answerer = RtcTransport(ice_servers=[])

        channel = offerer.create_channel('file-transfer')
        await offerer.set_local_description(await offerer.create_offer())
        await answerer.set_remote_description(offerer.local_description)
        await answerer.set_local_description(await answerer.create_answer())
        await offerer.set_remote_description(answerer.local_description)

        await channel.wait_open()
        await channel.send(b'hello')
        ```

    Args:
        ice_servers: STUN or TURN server URLs used to discover candidates.
        buffer_threshold: Buffered byte count above which channel sends
            wait for the buffer to drain.
    """

    def __init__(
        self,
        ice_servers: Sequence[str] = DEFAULT_ICE_SERVERS,
        *,
        buffer_threshold: int = DEFAULT_BUFFER_THRESHOLD,
    ) -> None:
        self._buffer_threshold = buffer_threshold
        configuration = RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in ice_servers],
        )
        self._pc = RTCPeerConnection(configuration=configuration)
        self._channels: list[RtcDataChannel] = []
        self._candidate_callbacks: list[LocalCandidateCallback] = []
        self._channel_callbacks: list[IncomingChannelCallback] = []
        self._remote_description: SessionDescription | None = None

        self._pc.on('datachannel', self._on_datachannel)
        self._pc.on('connectionstatechange', self._on_connection_state)

    @property
    def _log_prefix(self) -> str:
        return f'{self.__class__.__name__}[{self._pc.connectionState}]'

    @property
    def state(self) -> str:
        """Connection state of the underlying peer connection.

        Returns:
            One of 'connected', 'connecting', 'closed', 'failed', or 'new'.
        """
        return self._pc.connectionState

    @property
    def local_description(self) -> SessionDescription | None:
        """Local description with every gathered candidate embedded."""
        description = self._pc.localDescription
        if description is None:
            return None
        return SessionDescription(type=description.type, sdp=description.sdp)

    async def create_offer(self) -> SessionDescription:
        """Create an offer describing the local side."""
        offer = await self._pc.createOffer()
        return SessionDescription(type='offer', sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        """Create an answer to the applied remote offer."""
        answer = await self._pc.createAnswer()
        return SessionDescription(type='answer', sdp=answer.sdp)

    async def set_local_description(
        self,
        description: SessionDescription,
    ) -> None:
        """Apply a local description and report the gathered candidates."""
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type),
        )
        candidates = parse_sdp_candidates(self._pc.localDescription.sdp)
        logger.debug(
            f'{self._log_prefix}: gathered {len(candidates)} local '
            'candidate(s)',
        )
        for candidate in candidates:
            self._emit_candidate(candidate)
        self._emit_candidate(None)

    async def set_remote_description(
        self,
        description: SessionDescription,
    ) -> None:
        """Apply the peer's description once."""
        if self._remote_description == description:
            return
        logger.info(f'{self._log_prefix}: applying remote {description.type}')
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type),
        )
        self._remote_description = description

    def on_local_candidate(self, callback: LocalCandidateCallback) -> None:
        """Register a callback for locally gathered candidates."""
        self._candidate_callbacks.append(callback)

    async def add_remote_candidate(self, candidate: Candidate) -> None:
        """Apply a candidate gathered by the peer.

        Raises:
            ValueError: If no remote description has been applied or the
                candidate cannot be parsed.
        """
        if self._remote_description is None:
            raise ValueError(
                'Cannot add a remote candidate before the remote '
                'description is applied.',
            )
        value = candidate.candidate
        if value.startswith('candidate:'):
            value = value[len('candidate:') :]
        if not value:
            # An empty candidate marks the end of the peer's candidates
            return

        ice_candidate = candidate_from_sdp(value)
        ice_candidate.sdpMid = candidate.sdp_mid
        ice_candidate.sdpMLineIndex = candidate.sdp_mline_index
        if ice_candidate.sdpMid is None and ice_candidate.sdpMLineIndex is None:
            ice_candidate.sdpMLineIndex = 0

        try:
            await self._pc.addIceCandidate(ice_candidate)
        except ValueError as e:
            # Candidates already carried by the remote description have
            # been applied and aiortc rejects more after end-of-candidates
            logger.debug(f'{self._log_prefix}: candidate not added: {e}')

    def create_channel(self, label: str) -> RtcDataChannel:
        """Create an ordered, reliable data channel."""
        channel = RtcDataChannel(
            self._pc.createDataChannel(label, ordered=True),
            buffer_threshold=self._buffer_threshold,
        )
        self._channels.append(channel)
        logger.info(f'{self._log_prefix}: created channel {label!r}')
        return channel

    def on_incoming_channel(self, callback: IncomingChannelCallback) -> None:
        """Register a callback for channels opened by the peer."""
        self._channel_callbacks.append(callback)

    async def close(self) -> None:
        """Close every channel and the peer connection."""
        logger.info(f'{self._log_prefix}: closing connection')
        for channel in self._channels:
            await channel.close()
        await self._pc.close()

    def _emit_candidate(self, candidate: Candidate | None) -> None:
        for callback in self._candidate_callbacks:
            callback(candidate)

    def _on_datachannel(self, channel: RTCDataChannel) -> None:
        logger.info(
            f'{self._log_prefix}: peer opened channel {channel.label!r}',
        )
        wrapped = RtcDataChannel(
            channel,
            buffer_threshold=self._buffer_threshold,
        )
        self._channels.append(wrapped)
        for callback in self._channel_callbacks:
            callback(wrapped)

    def _on_connection_state(self) -> None:
        state = self._pc.connectionState
        logger.debug(f'{self._log_prefix}: connection state changed')
        if state in ('closed', 'failed'):
            for channel in self._channels:
                channel._on_close()
