"""Negotiate a peer connection through a rendezvous record.

The exchange is split in two parts. [`plan()`][sharecode.signaling.exchange.plan]
is a pure function deciding, for one snapshot of the record, which of the
peer's values still need to be applied to the local transport. The
[`InitiatorExchange`][sharecode.signaling.exchange.InitiatorExchange] and
[`ResponderExchange`][sharecode.signaling.exchange.ResponderExchange] drive
the transport and record store with it until a data channel opens.

The initiator writes the offer and its candidates; the responder writes the
answer and its candidates. Each side only ever reads the other side's
fields, so the two never race on a field.
"""
from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
from typing import Any
from typing import Callable
from typing import Coroutine

from sharecode.signaling.codes import generate_code
from sharecode.signaling.exceptions import RecordDecodeError
from sharecode.signaling.exceptions import RecordExistsError
from sharecode.signaling.exceptions import RecordNotFoundError
from sharecode.signaling.exceptions import ShareCodeExhaustedError
from sharecode.signaling.exceptions import SignalingError
from sharecode.signaling.exceptions import StoreUnavailableError
from sharecode.signaling.protocols import RecordStore
from sharecode.signaling.protocols import RecordSubscription
from sharecode.signaling.record import CandidateSet
from sharecode.signaling.record import RecordUpdate
from sharecode.signaling.record import RendezvousRecord
from sharecode.transfer.exceptions import TransportClosedError
from sharecode.transport.models import Candidate
from sharecode.transport.models import SessionDescription
from sharecode.transport.protocols import DataChannel
from sharecode.transport.protocols import PeerTransport
from sharecode.utils.tasks import SafeTaskExitError
from sharecode.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

CHANNEL_LABEL = 'file-transfer'
DEFAULT_MAX_CODE_ATTEMPTS = 10
# Seconds to wait before reading the record again after a store error
DEFAULT_RETRY_DELAY = 1.0

StatusCallback = Callable[[str], None]


class Role(enum.Enum):
    """Role of a party in a transfer."""

    INITIATOR = 'initiator'
    """Sender that creates the record and the offer."""
    RESPONDER = 'responder'
    """Receiver that joins with a share code and writes the answer."""


@dataclasses.dataclass(frozen=True)
class ExchangeState:
    """What has been applied to the local transport so far.

    Attributes:
        role: Role of the local party.
        remote_description_applied: If the peer's description was applied.
        applied_candidates: Peer candidates successfully applied.
    """

    role: Role
    remote_description_applied: bool = False
    applied_candidates: CandidateSet = frozenset()

    def with_description(self) -> ExchangeState:
        """Get the state after applying the peer's description."""
        return dataclasses.replace(self, remote_description_applied=True)

    def with_candidate(self, candidate: Candidate) -> ExchangeState:
        """Get the state after applying one peer candidate."""
        return dataclasses.replace(
            self,
            applied_candidates=self.applied_candidates | {candidate},
        )


@dataclasses.dataclass(frozen=True)
class ExchangePlan:
    """Peer values to apply for one record snapshot.

    Attributes:
        remote_description: Peer description to apply, if not yet applied.
        candidates: Peer candidates not yet applied, in a deterministic
            order. Always applied after the description.
    """

    remote_description: SessionDescription | None = None
    candidates: tuple[Candidate, ...] = ()

    def is_empty(self) -> bool:
        """Check if there is nothing to apply."""
        return self.remote_description is None and not self.candidates


def peer_values(
    role: Role,
    record: RendezvousRecord,
) -> tuple[SessionDescription | None, CandidateSet]:
    """Get the description and candidates written by the other party."""
    if role is Role.INITIATOR:
        return record.answer, record.answer_candidates
    return record.offer, record.offer_candidates


def plan(state: ExchangeState, record: RendezvousRecord | None) -> ExchangePlan:
    """Decide what to apply to the transport for a record snapshot.

    The peer's description is included only if it was not applied yet.
    Peer candidates are only included once the description has been, or
    is about to be, applied; earlier candidates stay in the record and are
    picked up by a later snapshot.

    Args:
        state: What has already been applied.
        record: Latest snapshot, or `None` if the record does not exist.

    Returns:
        Values to apply, in order.
    """
    if record is None:
        return ExchangePlan()

    description, candidates = peer_values(state.role, record)
    if not state.remote_description_applied and description is None:
        return ExchangePlan()

    pending = sorted(
        candidates - state.applied_candidates,
        key=Candidate.sort_key,
    )
    return ExchangePlan(
        remote_description=(
            None if state.remote_description_applied else description
        ),
        candidates=tuple(pending),
    )


class SignalingExchange:
    """Shared machinery of both exchange roles.

    Args:
        store: Record store shared by both parties.
        transport: Local transport to negotiate.
        on_status: Optional callback for human readable progress messages.
        channel_label: Label of the data channel.
    """

    role: Role
    retry_delay = DEFAULT_RETRY_DELAY

    def __init__(
        self,
        store: RecordStore,
        transport: PeerTransport,
        *,
        on_status: StatusCallback | None = None,
        channel_label: str = CHANNEL_LABEL,
    ) -> None:
        self._store = store
        self._transport = transport
        self._on_status = on_status
        self.channel_label = channel_label

        self._code: str | None = None
        self._state = ExchangeState(self.role)
        self._channel: asyncio.Future[
            DataChannel
        ] = asyncio.get_running_loop().create_future()
        self._local_candidates: asyncio.Queue[Candidate] = asyncio.Queue()
        self._publish_ready = asyncio.Event()
        self._subscription: RecordSubscription | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._closed = False

        self._transport.on_local_candidate(self._on_local_candidate)

    @property
    def _log_prefix(self) -> str:
        return f'{self.__class__.__name__}[{self._code or "pending"}]'

    @property
    def share_code(self) -> str | None:
        """Share code of the record, once known."""
        return self._code

    @property
    def state(self) -> ExchangeState:
        """What has been applied to the transport so far."""
        return self._state

    async def wait_channel(self, timeout: float | None = None) -> DataChannel:
        """Wait for the data channel to open.

        Args:
            timeout: Optional seconds to wait.

        Returns:
            Open data channel.

        Raises:
            asyncio.TimeoutError: If the channel does not open in time.
            SignalingError: If the exchange failed.
            RecordStoreError: If the record store failed.
        """
        return await asyncio.wait_for(asyncio.shield(self._channel), timeout)

    async def close(self) -> None:
        """Stop watching the record and publishing candidates.

        The transport is not closed.
        """
        if self._closed:
            return
        self._closed = True
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, SafeTaskExitError):
                pass
        self._tasks.clear()
        if self._subscription is not None:
            await self._subscription.close()
        if not self._channel.done():
            self._channel.cancel()
        logger.debug(f'{self._log_prefix}: exchange closed')

    def _status(self, message: str) -> None:
        logger.info(f'{self._log_prefix}: {message}')
        if self._on_status is not None:
            self._on_status(message)

    def _spawn(
        self,
        coro: Callable[[], Coroutine[Any, Any, None]],
        name: str,
    ) -> None:
        task = spawn_guarded_background_task(
            self._fail_on_error,
            coro,
            name=f'{name}-{self._code}',
        )
        self._tasks.append(task)

    async def _fail_on_error(
        self,
        coro: Callable[[], Coroutine[Any, Any, None]],
    ) -> None:
        try:
            await coro()
        except Exception as e:
            logger.exception(f'{self._log_prefix}: exchange failed')
            if not self._channel.done():
                self._channel.set_exception(e)
            raise SafeTaskExitError(str(e)) from e

    def _on_local_candidate(self, candidate: Candidate | None) -> None:
        if candidate is None:
            logger.debug(f'{self._log_prefix}: local candidate gathering done')
            return
        self._local_candidates.put_nowait(candidate)

    def _candidate_update(self, candidates: CandidateSet) -> RecordUpdate:
        raise NotImplementedError

    async def _publish_candidates(self) -> None:
        await self._publish_ready.wait()
        assert self._code is not None
        while True:
            batch = {await self._local_candidates.get()}
            while not self._local_candidates.empty():
                batch.add(self._local_candidates.get_nowait())
            try:
                await self._store.update(
                    self._code,
                    self._candidate_update(frozenset(batch)),
                )
            except RecordNotFoundError:
                logger.warning(
                    f'{self._log_prefix}: record is gone, dropping '
                    f'{len(batch)} local candidate(s)',
                )
            else:
                logger.debug(
                    f'{self._log_prefix}: published {len(batch)} local '
                    'candidate(s)',
                )

    async def _watch(self) -> None:
        assert self._subscription is not None
        while True:
            try:
                record = await self._subscription.__anext__()
            except StopAsyncIteration:
                return
            except RecordDecodeError as e:
                logger.warning(f'{self._log_prefix}: malformed record: {e}')
                self._status(
                    'Received an invalid record. Waiting for an update...',
                )
                continue
            except StoreUnavailableError as e:
                logger.warning(f'{self._log_prefix}: store unavailable: {e}')
                self._status('Record store unavailable. Retrying...')
                await asyncio.sleep(self.retry_delay)
                continue
            await self._on_snapshot(record)

    async def _on_snapshot(self, record: RendezvousRecord | None) -> None:
        raise NotImplementedError

    async def _apply(self, record: RendezvousRecord | None) -> None:
        todo = plan(self._state, record)
        if todo.remote_description is not None:
            await self._transport.set_remote_description(
                todo.remote_description,
            )
            self._state = self._state.with_description()
            logger.info(
                f'{self._log_prefix}: applied remote '
                f'{todo.remote_description.type}',
            )

        for candidate in todo.candidates:
            try:
                await self._transport.add_remote_candidate(candidate)
            except Exception as e:
                # Stays unapplied so the next snapshot retries it
                logger.warning(
                    f'{self._log_prefix}: failed to apply remote candidate '
                    f'{candidate.candidate!r}: {e!r}',
                )
            else:
                self._state = self._state.with_candidate(candidate)
                logger.debug(
                    f'{self._log_prefix}: applied remote candidate '
                    f'{candidate.candidate!r}',
                )

    def _watch_channel(self, channel: DataChannel) -> None:
        if channel.ready_state == 'open':
            self._set_channel(channel)
            return

        async def _wait_open() -> None:
            try:
                await channel.wait_open()
            except TransportClosedError as e:
                if not self._channel.done():
                    self._channel.set_exception(e)
            else:
                self._set_channel(channel)

        self._spawn(_wait_open, 'channel-open')

    def _set_channel(self, channel: DataChannel) -> None:
        if self._channel.done():
            logger.warning(
                f'{self._log_prefix}: ignoring extra channel {channel.label!r}',
            )
            return
        logger.info(f'{self._log_prefix}: channel {channel.label!r} open')
        self._channel.set_result(channel)


class InitiatorExchange(SignalingExchange):
    """Initiator side of the exchange.

    Example:
        ```python
        exchange = InitiatorExchange(store, transport)
        code = await exchange.start()
        print(f'Share code: {code}')
        channel = await exchange.wait_channel()
        ```

    Args:
        store: Record store shared by both parties.
        transport: Local transport to negotiate.
        on_status: Optional callback for human readable progress messages.
        channel_label: Label of the data channel.
        code_factory: Callable returning a candidate share code.
        max_attempts: Number of share codes tried before giving up.
    """

    role = Role.INITIATOR

    def __init__(
        self,
        store: RecordStore,
        transport: PeerTransport,
        *,
        on_status: StatusCallback | None = None,
        channel_label: str = CHANNEL_LABEL,
        code_factory: Callable[[], str] = generate_code,
        max_attempts: int = DEFAULT_MAX_CODE_ATTEMPTS,
    ) -> None:
        super().__init__(
            store,
            transport,
            on_status=on_status,
            channel_label=channel_label,
        )
        self._code_factory = code_factory
        self._max_attempts = max_attempts
        self._answer_seen = False

    async def start(self) -> str:
        """Publish an offer and start waiting for an answer.

        Returns:
            Share code the responder must enter.

        Raises:
            ShareCodeExhaustedError: If no unused share code was found.
            RecordStoreError: If the record store failed.
        """
        self._status('Generating share code...')
        # The channel must exist before the offer so the offer describes it
        channel = self._transport.create_channel(self.channel_label)

        offer = await self._transport.create_offer()
        await self._transport.set_local_description(offer)
        offer = self._transport.local_description or offer

        self._code = await self._create_record(offer)
        self._publish_ready.set()
        self._subscription = await self._store.subscribe(self._code)

        self._watch_channel(channel)
        self._spawn(self._watch, 'record-watch')
        self._spawn(self._publish_candidates, 'candidate-publish')
        self._status('Share code generated. Waiting for receiver...')
        return self._code

    async def _create_record(self, offer: SessionDescription) -> str:
        for _ in range(self._max_attempts):
            code = self._code_factory()
            try:
                await self._store.create(code, RendezvousRecord(offer=offer))
            except RecordExistsError:
                logger.debug(f'Share code {code} is taken, trying another')
            else:
                logger.info(f'Created record for share code {code}')
                return code
        raise ShareCodeExhaustedError(
            f'No unused share code found after {self._max_attempts} '
            'attempts.',
        )

    def _candidate_update(self, candidates: CandidateSet) -> RecordUpdate:
        return RecordUpdate(offer_candidates=candidates)

    async def _on_snapshot(self, record: RendezvousRecord | None) -> None:
        if record is None:
            logger.debug(f'{self._log_prefix}: record does not exist')
            return
        if record.answer is not None and not self._answer_seen:
            self._answer_seen = True
            self._status('Receiver connected. Establishing connection...')
        await self._apply(record)


class ResponderExchange(SignalingExchange):
    """Responder side of the exchange.

    Example:
        ```python
        exchange = ResponderExchange(store, transport)
        await exchange.start('531204')
        channel = await exchange.wait_channel()
        ```
    """

    role = Role.RESPONDER

    def __init__(
        self,
        store: RecordStore,
        transport: PeerTransport,
        *,
        on_status: StatusCallback | None = None,
        channel_label: str = CHANNEL_LABEL,
    ) -> None:
        super().__init__(
            store,
            transport,
            on_status=on_status,
            channel_label=channel_label,
        )
        self._answered = False
        self._missing_reported = False

    async def start(self, code: str) -> None:
        """Start watching the record of a share code.

        Args:
            code: Share code entered by the user.

        Raises:
            RecordStoreError: If the record store failed.
        """
        self._code = code
        self._status(f'Connecting with code: {code}...')
        self._transport.on_incoming_channel(self._on_incoming_channel)
        self._subscription = await self._store.subscribe(code)
        self._spawn(self._watch, 'record-watch')
        self._spawn(self._publish_candidates, 'candidate-publish')

    def _on_incoming_channel(self, channel: DataChannel) -> None:
        if channel.label != self.channel_label:
            logger.warning(
                f'{self._log_prefix}: peer opened unexpected channel '
                f'{channel.label!r}',
            )
        self._watch_channel(channel)

    def _candidate_update(self, candidates: CandidateSet) -> RecordUpdate:
        return RecordUpdate(answer_candidates=candidates)

    async def _on_snapshot(self, record: RendezvousRecord | None) -> None:
        if record is None or record.offer is None:
            if not self._missing_reported and not self._answered:
                self._missing_reported = True
                self._status('No transfer found yet. Waiting for sender...')
            return

        if not self._state.remote_description_applied:
            self._status('Offer received. Creating answer...')
        await self._apply(record)

        if not self._answered and self._state.remote_description_applied:
            await self._send_answer()

    async def _send_answer(self) -> None:
        assert self._code is not None
        answer = await self._transport.create_answer()
        await self._transport.set_local_description(answer)
        answer = self._transport.local_description or answer
        try:
            await self._store.update(self._code, RecordUpdate(answer=answer))
        except RecordNotFoundError as e:
            raise SignalingError(
                f'Record {self._code} was deleted before the answer was '
                'written.',
            ) from e
        self._answered = True
        self._publish_ready.set()
        self._status('Answer sent. Establishing connection...')
