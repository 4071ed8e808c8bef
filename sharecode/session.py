"""Lifecycle of a single file transfer session.

A [`SessionController`][sharecode.session.SessionController] runs at most
one session at a time. A session moves through the following states:

```
IDLE --start_send()/start_receive()--> AWAITING_PEER
AWAITING_PEER --channel open--> TRANSFERRING
TRANSFERRING --done, grace delay elapsed--> CLEANING_UP
any --cancel()/error--> CLEANING_UP
CLEANING_UP --transport closed, record deleted--> IDLE
```

Only the initiator deletes the rendezvous record during clean up.
"""
from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
import os
import pathlib
from typing import Awaitable
from typing import Callable
from typing import Optional
from typing import Tuple

from sharecode.config import ShareConfig
from sharecode.delivery import DirectorySink
from sharecode.delivery import FileSink
from sharecode.exceptions import SessionBusyError
from sharecode.exceptions import SessionCancelledError
from sharecode.exceptions import SessionError
from sharecode.signaling.codes import generate_code
from sharecode.signaling.codes import normalize_code
from sharecode.signaling.exceptions import RecordStoreError
from sharecode.signaling.exceptions import StoreAuthenticationError
from sharecode.signaling.exchange import InitiatorExchange
from sharecode.signaling.exchange import ResponderExchange
from sharecode.signaling.exchange import Role
from sharecode.signaling.exchange import SignalingExchange
from sharecode.signaling.protocols import RecordStore
from sharecode.transfer.exceptions import TransportClosedError
from sharecode.transfer.metadata import FileMetadata
from sharecode.transfer.receiver import ChunkReceived
from sharecode.transfer.receiver import MetadataReceived
from sharecode.transfer.receiver import TransferComplete
from sharecode.transfer.receiver import TransferFailed
from sharecode.transfer.receiver import TransferReceiver
from sharecode.transfer.sender import send_file
from sharecode.transfer.sender import TransferProgress
from sharecode.transport.protocols import DataChannel
from sharecode.transport.protocols import PeerTransport
from sharecode.transport.protocols import TransportFactory
from sharecode.utils.tasks import SafeTaskExitError
from sharecode.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

IDLE_STATUS = 'Waiting for connection...'

StatusListener = Callable[[str], None]
ProgressListener = Callable[[int, int], None]
_TransferOutput = Tuple[FileMetadata, Optional[pathlib.Path]]


class SessionState(enum.Enum):
    """Lifecycle state of a session controller."""

    IDLE = 'idle'
    AWAITING_PEER = 'awaiting-peer'
    TRANSFERRING = 'transferring'
    CLEANING_UP = 'cleaning-up'


class TransferOutcome(enum.Enum):
    """How a session ended."""

    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    FAILED = 'failed'


@dataclasses.dataclass(frozen=True)
class TransferResult:
    """Result of one session.

    Attributes:
        role: Role of the local party.
        share_code: Share code of the session, if one was assigned.
        outcome: How the session ended.
        metadata: Metadata of the transferred file, if known.
        path: Where the received file was saved (responder only).
        error: Exception that ended a failed or cancelled session.
    """

    role: Role
    share_code: str | None
    outcome: TransferOutcome
    metadata: FileMetadata | None = None
    path: pathlib.Path | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        """If the transfer completed."""
        return self.outcome is TransferOutcome.COMPLETED


class SessionController:
    """Run file transfer sessions.

    Example:
        Sender side.
        ```python
        controller = SessionController(store, RtcTransport)
        code = await controller.start_send('report.pdf')
        print(f'Share code: {code}')
        result = await controller.wait()
        ```

    Example:
        Receiver side.
        ```python
        controller = SessionController(store, RtcTransport)
        await controller.start_receive('531204')
        result = await controller.wait()
        print(f'Saved to {result.path}')
        ```

    Args:
        store: Record store shared with the peer.
        transport_factory: Callable returning a new transport per session.
        config: Configuration. Defaults are used if omitted.
        sink: Destination of received files. Defaults to a
            [`DirectorySink`][sharecode.delivery.DirectorySink] in
            `config.transfer.output_dir`.
    """

    def __init__(
        self,
        store: RecordStore,
        transport_factory: TransportFactory,
        *,
        config: ShareConfig | None = None,
        sink: FileSink | None = None,
    ) -> None:
        self._store = store
        self._transport_factory = transport_factory
        self.config = config if config is not None else ShareConfig()
        self._sink = (
            sink
            if sink is not None
            else DirectorySink(self.config.transfer.output_dir)
        )

        self._state = SessionState.IDLE
        self._status = IDLE_STATUS
        self._role: Role | None = None
        self._code: str | None = None
        self._transport: PeerTransport | None = None
        self._exchange: SignalingExchange | None = None
        self._receiver = TransferReceiver()
        self._task: asyncio.Task[None] | None = None
        self._result: asyncio.Future[TransferResult] | None = None

        self._status_listeners: list[StatusListener] = []
        self._progress_listeners: list[ProgressListener] = []

    @property
    def _log_prefix(self) -> str:
        if self._role is None:
            return f'{self.__class__.__name__}[idle]'
        return (
            f'{self.__class__.__name__}'
            f'[{self._role.value} {self._code or "pending"}]'
        )

    @property
    def state(self) -> SessionState:
        """Current lifecycle state."""
        return self._state

    @property
    def status(self) -> str:
        """Human readable status message."""
        return self._status

    @property
    def role(self) -> Role | None:
        """Role of the current session, if any."""
        return self._role

    @property
    def share_code(self) -> str | None:
        """Share code of the current session, if any."""
        return self._code

    def on_status(self, listener: StatusListener) -> None:
        """Register a callback invoked with every new status message."""
        self._status_listeners.append(listener)

    def on_progress(self, listener: ProgressListener) -> None:
        """Register a callback invoked with `(transferred, total)` bytes."""
        self._progress_listeners.append(listener)

    async def start_send(self, path: str | os.PathLike[str]) -> str:
        """Start sending a file.

        Args:
            path: File to send.

        Returns:
            Share code the receiver must enter.

        Raises:
            SessionBusyError: If a session is already in flight.
            FileNotFoundError: If `path` is not a file.
            RecordStoreError: If the record could not be created.
        """
        self._check_idle()
        if not os.path.isfile(path):
            raise FileNotFoundError(f'No file found at {path}.')

        transport = self._begin(Role.INITIATOR)
        exchange = InitiatorExchange(
            self._store,
            transport,
            on_status=self._set_status,
            code_factory=lambda: generate_code(self.config.code_length),
        )

        async def _start() -> str:
            return await exchange.start()

        return await self._launch(exchange, _start, self._sender(path))

    async def start_receive(self, code: str) -> None:
        """Start receiving the file shared under a code.

        Args:
            code: Share code given by the sender.

        Raises:
            SessionBusyError: If a session is already in flight.
            InvalidShareCodeError: If `code` is malformed.
            RecordStoreError: If the record could not be watched.
        """
        self._check_idle()
        code = normalize_code(code, self.config.code_length)

        transport = self._begin(Role.RESPONDER)
        self._code = code
        exchange = ResponderExchange(
            self._store,
            transport,
            on_status=self._set_status,
        )

        async def _start() -> str:
            await exchange.start(code)
            return code

        await self._launch(exchange, _start, self._receive)

    async def cancel(self) -> None:
        """Cancel the session in flight.

        The transport is closed and, if this party is the initiator, the
        record is deleted. No-op when idle.
        """
        task = self._task
        if self._state is SessionState.IDLE or task is None:
            return
        logger.info(f'{self._log_prefix}: cancelling session')
        if self._state is not SessionState.CLEANING_UP:
            task.cancel()
        try:
            await task
        except (asyncio.CancelledError, SafeTaskExitError):
            pass

    async def wait(self) -> TransferResult:
        """Wait for the current or most recent session to end.

        Raises:
            SessionError: If no session was ever started.
        """
        if self._result is None:
            raise SessionError('No session has been started.')
        return await asyncio.shield(self._result)

    def _check_idle(self) -> None:
        if self._state is not SessionState.IDLE:
            raise SessionBusyError(
                f'A session is already {self._state.value}.',
            )

    def _begin(self, role: Role) -> PeerTransport:
        self._role = role
        self._code = None
        self._state = SessionState.AWAITING_PEER
        self._receiver.reset()
        self._transport = self._transport_factory()
        self._result = asyncio.get_running_loop().create_future()
        logger.info(f'{self._log_prefix}: session started')
        return self._transport

    async def _launch(
        self,
        exchange: SignalingExchange,
        start: Callable[[], Awaitable[str]],
        transfer: Callable[[DataChannel], Awaitable[_TransferOutput]],
    ) -> str:
        assert self._role is not None
        self._exchange = exchange
        started: asyncio.Future[str] = (
            asyncio.get_running_loop().create_future()
        )
        self._task = spawn_guarded_background_task(
            self._run,
            start,
            transfer,
            started,
            name=f'session-{self._role.value}',
        )
        return await asyncio.shield(started)

    async def _run(
        self,
        start: Callable[[], Awaitable[str]],
        transfer: Callable[[DataChannel], Awaitable[_TransferOutput]],
        started: asyncio.Future[str],
    ) -> None:
        assert self._role is not None and self._exchange is not None
        role = self._role
        outcome = TransferOutcome.FAILED
        metadata: FileMetadata | None = None
        path: pathlib.Path | None = None
        error: BaseException | None = None
        cancelled = False

        try:
            self._code = await start()
            started.set_result(self._code)
            logger.info(f'{self._log_prefix}: waiting for peer')

            channel = await self._exchange.wait_channel(
                self.config.transfer.peer_timeout,
            )
            self._state = SessionState.TRANSFERRING
            metadata, path = await transfer(channel)
            outcome = TransferOutcome.COMPLETED
            logger.info(
                f'{self._log_prefix}: transfer complete, closing in '
                f'{self.config.transfer.grace_delay} seconds',
            )
            await asyncio.sleep(self.config.transfer.grace_delay)
        except asyncio.CancelledError:
            cancelled = True
            if outcome is not TransferOutcome.COMPLETED:
                outcome = TransferOutcome.CANCELLED
                error = SessionCancelledError('Session was cancelled.')
        except Exception as e:
            error = e
            self._set_status(self._failure_status(e))
            logger.error(f'{self._log_prefix}: session failed: {e!r}')

        if self._code is None:
            # The record can exist before start() returns
            self._code = self._exchange.share_code

        result = TransferResult(
            role=role,
            share_code=self._code,
            outcome=outcome,
            metadata=metadata,
            path=path,
            error=error,
        )
        await self._cleanup(keep_status=outcome is TransferOutcome.FAILED)

        if not started.done():
            assert error is not None
            started.set_exception(error)
        if self._result is not None and not self._result.done():
            self._result.set_result(result)
        logger.info(f'{self._log_prefix}: session ended ({outcome.value})')
        self._role = None
        self._code = None

        if cancelled:
            raise SafeTaskExitError('Session was cancelled.')

    async def _cleanup(self, *, keep_status: bool = False) -> None:
        self._state = SessionState.CLEANING_UP
        exchange, self._exchange = self._exchange, None
        transport, self._transport = self._transport, None

        if exchange is not None:
            await exchange.close()
        if transport is not None:
            await transport.close()
        if self._role is Role.INITIATOR and self._code is not None:
            try:
                await self._store.delete(self._code)
            except RecordStoreError as e:
                logger.warning(
                    f'{self._log_prefix}: failed to delete record: {e}',
                )
            else:
                logger.info(f'{self._log_prefix}: deleted record')

        self._receiver.reset()
        self._state = SessionState.IDLE
        self._task = None
        if not keep_status:
            self._set_status(IDLE_STATUS)

    def _sender(
        self,
        path: str | os.PathLike[str],
    ) -> Callable[[DataChannel], Awaitable[_TransferOutput]]:
        async def _send(channel: DataChannel) -> _TransferOutput:
            self._set_status('Connection open! Sending file...')

            def _progress(update: TransferProgress) -> None:
                self._emit_progress(update.sent, update.total)

            metadata = await send_file(
                channel,
                path,
                chunk_size=self.config.transfer.chunk_size,
                on_progress=_progress,
            )
            self._set_status('File sent successfully! Cleaning up...')
            return metadata, None

        return _send

    async def _receive(self, channel: DataChannel) -> _TransferOutput:
        self._set_status('Connection open! Ready to receive file.')
        last_percent = -1
        while True:
            message = await channel.recv()
            for event in self._receiver.feed(message):
                if isinstance(event, MetadataReceived):
                    self._set_status(f'Receiving file: {event.metadata.name}')
                elif isinstance(event, ChunkReceived):
                    self._emit_progress(event.received, event.total)
                    if event.percent != last_percent:
                        last_percent = event.percent
                        self._set_status(f'Downloading... {event.percent}%')
                elif isinstance(event, TransferFailed):
                    raise event.error
                elif isinstance(event, TransferComplete):
                    self._set_status('File received! Reassembling...')
                    path = self._sink.deliver(event.metadata, event.data)
                    self._set_status('File downloaded! Cleaning up...')
                    return event.metadata, path

    def _failure_status(self, error: Exception) -> str:
        if isinstance(error, StoreAuthenticationError):
            return 'Authentication failed. Please retry.'
        if isinstance(error, TransportClosedError):
            return 'Connection closed.'
        if isinstance(error, asyncio.TimeoutError):
            return 'Timed out waiting for peer.'
        return f'Transfer failed: {error}'

    def _set_status(self, status: str) -> None:
        self._status = status
        logger.debug(f'{self._log_prefix}: status: {status}')
        for listener in self._status_listeners:
            listener(status)

    def _emit_progress(self, transferred: int, total: int) -> None:
        for listener in self._progress_listeners:
            listener(transferred, total)
