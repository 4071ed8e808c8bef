"""Linked in-process transports for testing."""
from __future__ import annotations

import asyncio
import itertools
from typing import Any
from typing import Callable

from sharecode.transfer.exceptions import TransportClosedError
from sharecode.transport.models import Candidate
from sharecode.transport.models import SessionDescription
from sharecode.transport.protocols import IncomingChannelCallback
from sharecode.transport.protocols import LocalCandidateCallback
from sharecode.transport.protocols import Message

_CLOSED = object()


class FakeChannel:
    """In-memory data channel.

    Every message passed to `send()` is recorded in `sent`.
    """

    def __init__(self, label: str) -> None:
        self.label = label
        self.sent: list[Message] = []
        self.peer: FakeChannel | None = None
        self._state = 'connecting'
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()
        self._opened = asyncio.Event()
        self._close_callbacks: list[Callable[[], None]] = []

    @property
    def ready_state(self) -> str:
        return self._state

    def open(self) -> None:
        self._state = 'open'
        self._opened.set()

    async def wait_open(self) -> None:
        await self._opened.wait()
        if self._state != 'open':
            raise TransportClosedError(f'{self.label} closed before open.')

    async def send(self, message: Message) -> None:
        if self._state != 'open':
            raise TransportClosedError(f'{self.label} is {self._state}.')
        self.sent.append(message)
        assert self.peer is not None
        self.peer.deliver(message)
        # Yield like a transport draining its buffer would
        await asyncio.sleep(0)

    def deliver(self, message: Message) -> None:
        """Queue a message as if sent by the peer."""
        self._incoming.put_nowait(message)

    async def recv(self) -> Message:
        message = await self._incoming.get()
        if message is _CLOSED:
            self._incoming.put_nowait(_CLOSED)
            raise TransportClosedError(f'{self.label} is closed.')
        return message

    def on_close(self, callback: Callable[[], None]) -> None:
        if self._state == 'closed':
            callback()
        else:
            self._close_callbacks.append(callback)

    async def close(self) -> None:
        self.mark_closed()
        if self.peer is not None:
            self.peer.mark_closed()

    def mark_closed(self) -> None:
        """Close this end without touching the peer."""
        if self._state == 'closed':
            return
        self._state = 'closed'
        self._opened.set()
        self._incoming.put_nowait(_CLOSED)
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            callback()


class FakeTransport:
    """Transport linked to its peer through a
    [`FakeNetwork`][testing.transport.FakeNetwork].

    Like a real transport it rejects remote candidates until the remote
    description is applied. The two ends connect once both descriptions
    are applied on both sides and each side applied at least one of the
    other's candidates.

    Args:
        network: Network the transport belongs to.
        candidates: Number of local candidates gathered.
        reject_candidates: Number of remote candidates to reject before
            accepting any (to test retries).
    """

    def __init__(
        self,
        network: FakeNetwork,
        *,
        candidates: int = 2,
        reject_candidates: int = 0,
    ) -> None:
        self.network = network
        self.index = next(network.counter)
        self.candidate_count = candidates
        self.reject_candidates = reject_candidates

        self.local_description: SessionDescription | None = None
        self.remote_description: SessionDescription | None = None
        self.local_candidates: list[Candidate] = []
        self.remote_candidates: list[Candidate] = []
        self.candidate_attempts: list[Candidate] = []
        self.remote_description_calls = 0
        self.channels: list[FakeChannel] = []
        self.closed = False

        self._candidate_callbacks: list[LocalCandidateCallback] = []
        self._channel_callbacks: list[IncomingChannelCallback] = []
        network.transports.append(self)

    async def create_offer(self) -> SessionDescription:
        return SessionDescription('offer', f'fake-offer-{self.index}')

    async def create_answer(self) -> SessionDescription:
        if self.remote_description is None:
            raise ValueError('No remote offer applied.')
        return SessionDescription('answer', f'fake-answer-{self.index}')

    async def set_local_description(
        self,
        description: SessionDescription,
    ) -> None:
        self.local_description = description
        for i in range(self.candidate_count):
            candidate = Candidate(
                candidate=(
                    f'candidate:{i} 1 udp 2130706431 192.0.2.{self.index} '
                    f'{5000 + i} typ host'
                ),
                sdp_mid='0',
                sdp_mline_index=0,
            )
            self.local_candidates.append(candidate)
            for callback in self._candidate_callbacks:
                callback(candidate)
        for callback in self._candidate_callbacks:
            callback(None)
        self.network.try_link()

    async def set_remote_description(
        self,
        description: SessionDescription,
    ) -> None:
        self.remote_description_calls += 1
        if self.remote_description == description:
            return
        if self.remote_description is not None:
            raise ValueError('A different remote description is applied.')
        self.remote_description = description
        self.network.try_link()

    def on_local_candidate(self, callback: LocalCandidateCallback) -> None:
        self._candidate_callbacks.append(callback)

    async def add_remote_candidate(self, candidate: Candidate) -> None:
        self.candidate_attempts.append(candidate)
        if self.remote_description is None:
            raise ValueError('No remote description applied.')
        if self.reject_candidates > 0:
            self.reject_candidates -= 1
            raise ValueError('Candidate rejected.')
        self.remote_candidates.append(candidate)
        self.network.try_link()

    def create_channel(self, label: str) -> FakeChannel:
        channel = FakeChannel(label)
        self.channels.append(channel)
        return channel

    def on_incoming_channel(self, callback: IncomingChannelCallback) -> None:
        self._channel_callbacks.append(callback)

    async def close(self) -> None:
        self.closed = True
        for channel in self.channels:
            await channel.close()

    def announce(self, channel: FakeChannel) -> None:
        self.channels.append(channel)
        for callback in self._channel_callbacks:
            callback(channel)


class FakeNetwork:
    """Pairs up [`FakeTransport`][testing.transport.FakeTransport]s."""

    def __init__(self) -> None:
        self.counter = itertools.count(1)
        self.transports: list[FakeTransport] = []
        self.linked: set[tuple[int, int]] = set()

    def transport(self, **kwargs: Any) -> FakeTransport:
        """Create a transport on this network."""
        return FakeTransport(self, **kwargs)

    def try_link(self) -> None:
        """Connect every pair of transports ready to connect."""
        for offerer in self.transports:
            for answerer in self.transports:
                if self._ready(offerer, answerer):
                    self._link(offerer, answerer)

    def _ready(self, offerer: FakeTransport, answerer: FakeTransport) -> bool:
        if offerer is answerer or offerer.closed or answerer.closed:
            return False
        if (offerer.index, answerer.index) in self.linked:
            return False
        if offerer.local_description is None:
            return False
        if offerer.local_description.type != 'offer':
            return False
        if answerer.local_description is None:
            return False
        if answerer.remote_description != offerer.local_description:
            return False
        if offerer.remote_description != answerer.local_description:
            return False
        return bool(
            set(offerer.remote_candidates) & set(answerer.local_candidates)
            or not answerer.local_candidates,
        ) and bool(
            set(answerer.remote_candidates) & set(offerer.local_candidates)
            or not offerer.local_candidates,
        )

    def _link(self, offerer: FakeTransport, answerer: FakeTransport) -> None:
        self.linked.add((offerer.index, answerer.index))
        for channel in offerer.channels:
            remote = FakeChannel(channel.label)
            channel.peer = remote
            remote.peer = channel
            remote.open()
            answerer.announce(remote)
            channel.open()
