"""In-process record store.

Useful for tests and for running both parties of a transfer in a single
process. Records are lost when the process exits.
"""
from __future__ import annotations

import asyncio
import logging
import sys
import time
from typing import Any
from typing import Callable

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from sharecode.signaling.exceptions import RecordExistsError
from sharecode.signaling.exceptions import RecordNotFoundError
from sharecode.signaling.record import RecordUpdate
from sharecode.signaling.record import RendezvousRecord

logger = logging.getLogger(__name__)

_CLOSED = object()


class MemoryRecordSubscription:
    """Subscription to a record in a
    [`MemoryRecordStore`][sharecode.signaling.memory.MemoryRecordStore].
    """

    def __init__(
        self,
        key: str,
        on_close: Callable[[MemoryRecordSubscription], None],
    ) -> None:
        self.key = key
        self._on_close = on_close
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    def __aiter__(self) -> Self:
        return self

    async def __anext__(self) -> RendezvousRecord | None:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        snapshot = await self._queue.get()
        if snapshot is _CLOSED:
            raise StopAsyncIteration
        return snapshot

    def push(self, snapshot: RendezvousRecord | None) -> None:
        """Queue a snapshot for the subscriber."""
        if not self._closed:
            self._queue.put_nowait(snapshot)

    async def close(self) -> None:
        """Stop receiving snapshots."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        self._on_close(self)


class MemoryRecordStore:
    """Record store backed by a dictionary.

    Example:
        ```python
        store = MemoryRecordStore()
        await store.create('531204', RendezvousRecord(offer=offer))
        subscription = await store.subscribe('531204')
        async for record in subscription:
            ...
        ```

    Args:
        record_ttl: Seconds after the last write at which a record is
            considered expired. `None` disables expiry.
        clock: Monotonic clock used to evaluate expiry.
    """

    def __init__(
        self,
        *,
        record_ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.record_ttl = record_ttl
        self._clock = clock
        self._records: dict[str, tuple[RendezvousRecord, float | None]] = {}
        self._subscriptions: dict[str, set[MemoryRecordSubscription]] = {}

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(record_ttl={self.record_ttl})'

    async def create(self, key: str, record: RendezvousRecord) -> None:
        """Create a new record.

        Raises:
            RecordExistsError: If a record already exists for `key`.
        """
        if self._lookup(key) is not None:
            raise RecordExistsError(f'A record already exists for {key}.')
        self._store(key, record)
        logger.debug(f'Created record {key}')

    async def update(self, key: str, update: RecordUpdate) -> None:
        """Merge a partial write into an existing record.

        Raises:
            RecordNotFoundError: If no record exists for `key`.
            RecordConflictError: If a different offer or answer is
                already stored.
        """
        current = self._lookup(key)
        if current is None:
            raise RecordNotFoundError(f'No record exists for {key}.')
        self._store(key, current.merge(update))
        logger.debug(f'Updated record {key}')

    async def get(self, key: str) -> RendezvousRecord | None:
        """Get the current record or `None` if it does not exist."""
        return self._lookup(key)

    async def delete(self, key: str) -> None:
        """Delete a record if it exists."""
        if self._records.pop(key, None) is not None:
            logger.debug(f'Deleted record {key}')
            self._notify(key, None)

    async def subscribe(self, key: str) -> MemoryRecordSubscription:
        """Subscribe to snapshots of a record."""
        snapshot = self._lookup(key)
        subscription = MemoryRecordSubscription(key, self._unsubscribe)
        self._subscriptions.setdefault(key, set()).add(subscription)
        subscription.push(snapshot)
        return subscription

    async def close(self) -> None:
        """Close every open subscription."""
        subscriptions = [
            s for subs in self._subscriptions.values() for s in subs
        ]
        for subscription in subscriptions:
            await subscription.close()
        self._subscriptions.clear()

    def _lookup(self, key: str) -> RendezvousRecord | None:
        entry = self._records.get(key)
        if entry is None:
            return None
        record, expires = entry
        if expires is not None and self._clock() >= expires:
            logger.debug(f'Record {key} expired')
            del self._records[key]
            self._notify(key, None)
            return None
        return record

    def _store(self, key: str, record: RendezvousRecord) -> None:
        expires = (
            None
            if self.record_ttl is None
            else self._clock() + self.record_ttl
        )
        self._records[key] = (record, expires)
        self._notify(key, record)

    def _notify(self, key: str, record: RendezvousRecord | None) -> None:
        for subscription in self._subscriptions.get(key, set()):
            subscription.push(record)

    def _unsubscribe(self, subscription: MemoryRecordSubscription) -> None:
        subscriptions = self._subscriptions.get(subscription.key)
        if subscriptions is not None:
            subscriptions.discard(subscription)
            if not subscriptions:
                del self._subscriptions[subscription.key]
