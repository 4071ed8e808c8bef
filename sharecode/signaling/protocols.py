"""Record store protocols."""
from __future__ import annotations

import sys
from typing import Protocol
from typing import runtime_checkable

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from sharecode.signaling.record import RecordUpdate
from sharecode.signaling.record import RendezvousRecord


@runtime_checkable
class RecordSubscription(Protocol):
    """Asynchronous stream of record snapshots.

    The first snapshot yielded is the state of the record at the time of
    subscribing. A snapshot is `None` while the record does not exist.
    Iteration stops once the subscription is closed.

    Reading a snapshot may raise
    [`RecordDecodeError`][sharecode.signaling.exceptions.RecordDecodeError]
    or
    [`StoreUnavailableError`][sharecode.signaling.exceptions.StoreUnavailableError];
    the subscription stays usable and the next read waits for the next
    update.
    """

    def __aiter__(self) -> Self:
        ...

    async def __anext__(self) -> RendezvousRecord | None:
        ...

    async def close(self) -> None:
        """Stop receiving snapshots."""
        ...


@runtime_checkable
class RecordStore(Protocol):
    """Keyed store of rendezvous records with change notifications."""

    async def create(self, key: str, record: RendezvousRecord) -> None:
        """Create a new record.

        Args:
            key: Share code of the record.
            record: Initial contents.

        Raises:
            RecordExistsError: If a record already exists for `key`.
        """
        ...

    async def update(self, key: str, update: RecordUpdate) -> None:
        """Merge a partial write into an existing record.

        Candidate fields are merged by union and the offer and answer are
        write-once.

        Args:
            key: Share code of the record.
            update: Fields to write.

        Raises:
            RecordNotFoundError: If no record exists for `key`.
            RecordConflictError: If a different offer or answer is
                already stored.
        """
        ...

    async def get(self, key: str) -> RendezvousRecord | None:
        """Get the current record or `None` if it does not exist."""
        ...

    async def delete(self, key: str) -> None:
        """Delete a record if it exists."""
        ...

    async def subscribe(self, key: str) -> RecordSubscription:
        """Subscribe to snapshots of a record."""
        ...

    async def close(self) -> None:
        """Close the store and any open subscriptions."""
        ...
