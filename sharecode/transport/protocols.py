"""Peer transport protocols.

A transport is the capability that turns a pair of session descriptions
and some candidates into an ordered, reliable, bidirectional message
channel. [`RtcTransport`][sharecode.transport.rtc.RtcTransport] implements
these protocols with aiortc; tests use the linked fakes in
`testing.transport`.
"""
from __future__ import annotations

from typing import Callable
from typing import Protocol
from typing import runtime_checkable
from typing import Union

from sharecode.transport.models import Candidate
from sharecode.transport.models import SessionDescription

Message = Union[bytes, str]
"""A channel message: `str` for text, `bytes` for binary."""

LocalCandidateCallback = Callable[[Union[Candidate, None]], None]
IncomingChannelCallback = Callable[['DataChannel'], None]


@runtime_checkable
class DataChannel(Protocol):
    """Ordered, reliable message channel between two peers."""

    @property
    def label(self) -> str:
        """Label the channel was created with."""
        ...

    @property
    def ready_state(self) -> str:
        """One of `'connecting'`, `'open'`, `'closing'`, or `'closed'`."""
        ...

    async def wait_open(self) -> None:
        """Wait until the channel is open.

        Raises:
            TransportClosedError: If the channel closes before opening.
        """
        ...

    async def send(self, message: Message) -> None:
        """Send a message.

        Waits while the amount of data buffered by the transport is above
        its threshold so callers cannot outrun the network.

        Raises:
            TransportClosedError: If the channel is closed.
        """
        ...

    async def recv(self) -> Message:
        """Receive the next message in order.

        Raises:
            TransportClosedError: If the channel is closed and every
                message received before the close was consumed.
        """
        ...

    def on_close(self, callback: Callable[[], None]) -> None:
        """Register a callback invoked once when the channel closes."""
        ...

    async def close(self) -> None:
        """Close the channel after flushing buffered messages."""
        ...


@runtime_checkable
class PeerTransport(Protocol):
    """Peer-to-peer connection negotiated through opaque signaling values."""

    @property
    def local_description(self) -> SessionDescription | None:
        """Local description once set, including gathered candidates."""
        ...

    async def create_offer(self) -> SessionDescription:
        """Create an offer describing the local side."""
        ...

    async def create_answer(self) -> SessionDescription:
        """Create an answer to the applied remote offer."""
        ...

    async def set_local_description(
        self,
        description: SessionDescription,
    ) -> None:
        """Apply a local description and start gathering candidates."""
        ...

    async def set_remote_description(
        self,
        description: SessionDescription,
    ) -> None:
        """Apply the peer's description.

        Applying a description equal to the one already applied is a no-op.
        """
        ...

    def on_local_candidate(self, callback: LocalCandidateCallback) -> None:
        """Register a callback for locally gathered candidates.

        The callback is called with `None` once gathering finished.
        """
        ...

    async def add_remote_candidate(self, candidate: Candidate) -> None:
        """Apply a candidate gathered by the peer.

        Raises:
            Exception: If the transport rejects the candidate, for example
                because no remote description has been applied yet.
        """
        ...

    def create_channel(self, label: str) -> DataChannel:
        """Create an ordered, reliable data channel.

        Must be called before creating the offer.
        """
        ...

    def on_incoming_channel(self, callback: IncomingChannelCallback) -> None:
        """Register a callback for channels opened by the peer."""
        ...

    async def close(self) -> None:
        """Close every channel and the connection."""
        ...


TransportFactory = Callable[[], PeerTransport]
"""Callable returning a fresh transport for each session."""
