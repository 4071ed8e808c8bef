"""Redis backed record store.

A record with share code `{code}` is stored under several keys so that
every write is an atomic Redis command and concurrent writers never lose
each other's data:

* `{prefix}:{code}`: hash with the JSON encoded `offer` and `answer`
  (written once with `HSETNX`) and a `created` marker.
* `{prefix}:{code}:offerCandidates`: set of JSON encoded initiator
  candidates (merged by `SADD`).
* `{prefix}:{code}:answerCandidates`: set of JSON encoded responder
  candidates.

Every key is given the record TTL on each write, and every write is
followed by a `PUBLISH` on `{prefix}:{code}:updates`. Subscribers re-read
the full record when notified.
"""
from __future__ import annotations

import contextlib
import json
import logging
import sys
from typing import Any
from typing import Generator
from typing import Iterable

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import redis.asyncio
import redis.exceptions

from sharecode.signaling.exceptions import RecordConflictError
from sharecode.signaling.exceptions import RecordDecodeError
from sharecode.signaling.exceptions import RecordExistsError
from sharecode.signaling.exceptions import RecordNotFoundError
from sharecode.signaling.exceptions import StoreAuthenticationError
from sharecode.signaling.exceptions import StoreUnavailableError
from sharecode.signaling.record import RecordUpdate
from sharecode.signaling.record import RendezvousRecord
from sharecode.transport.models import Candidate
from sharecode.transport.models import SessionDescription

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = 'sharecode'
DEFAULT_RECORD_TTL = 3600


@contextlib.contextmanager
def _translate_errors() -> Generator[None, None, None]:
    try:
        yield
    except redis.exceptions.AuthenticationError as e:
        raise StoreAuthenticationError(
            f'Redis rejected the credentials: {e}',
        ) from e
    except redis.exceptions.ConnectionError as e:
        raise StoreUnavailableError(f'Cannot reach Redis: {e}') from e


def _to_str(value: bytes | str) -> str:
    return value.decode('utf-8') if isinstance(value, bytes) else value


def _encode_description(description: SessionDescription) -> str:
    return json.dumps(description.to_dict(), sort_keys=True)


def _encode_candidates(candidates: Iterable[Candidate]) -> list[str]:
    return [json.dumps(c.to_dict(), sort_keys=True) for c in candidates]


class RedisRecordSubscription:
    """Subscription to a record in a
    [`RedisRecordStore`][sharecode.signaling.redis.RedisRecordStore].

    The first snapshot is read when iteration starts; later snapshots are
    read each time an update notification arrives. A snapshot that cannot
    be decoded raises
    [`RecordDecodeError`][sharecode.signaling.exceptions.RecordDecodeError]
    and iteration can continue with the next notification.
    """

    def __init__(
        self,
        store: RedisRecordStore,
        key: str,
        pubsub: redis.asyncio.client.PubSub,
    ) -> None:
        self.key = key
        self._store = store
        self._pubsub = pubsub
        self._initial = True
        self._closed = False

    def __aiter__(self) -> Self:
        return self

    async def __anext__(self) -> RendezvousRecord | None:
        while not self._closed:
            if self._initial:
                self._initial = False
            else:
                with _translate_errors():
                    message = await self._pubsub.get_message(
                        ignore_subscribe_messages=True,
                        timeout=None,
                    )
                if message is None or message['type'] != 'message':
                    continue

            return await self._store.get(self.key)
        raise StopAsyncIteration

    async def close(self) -> None:
        """Unsubscribe from update notifications."""
        if self._closed:
            return
        self._closed = True
        with _translate_errors():
            await self._pubsub.unsubscribe()
            await self._pubsub.aclose()
        self._store._forget(self)


class RedisRecordStore:
    """Record store backed by a Redis server.

    Example:
        ```python
        store = RedisRecordStore('localhost', 6379)
        await store.connect()
        await store.create('531204', RendezvousRecord(offer=offer))
        await store.close()
        ```

    Args:
        hostname: Redis server hostname.
        port: Redis server port.
        username: Optional Redis ACL username.
        password: Optional Redis password.
        prefix: Prefix of every key written by the store.
        record_ttl: Seconds a record lives after its last write. `None`
            disables expiry.
        client: Existing client to use instead of creating one.
        kwargs: Extra keyword arguments to pass to
            [`redis.asyncio.Redis()`][redis.asyncio.Redis].
    """

    def __init__(
        self,
        hostname: str = 'localhost',
        port: int = 6379,
        *,
        username: str | None = None,
        password: str | None = None,
        prefix: str = DEFAULT_PREFIX,
        record_ttl: int | None = DEFAULT_RECORD_TTL,
        client: Any = None,
        **kwargs: Any,
    ) -> None:
        self.hostname = hostname
        self.port = port
        self.prefix = prefix
        self.record_ttl = record_ttl
        self._client = (
            client
            if client is not None
            else redis.asyncio.Redis(
                host=hostname,
                port=port,
                username=username,
                password=password,
                **kwargs,
            )
        )
        self._subscriptions: set[RedisRecordSubscription] = set()

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(hostname={self.hostname}, '
            f'port={self.port}, prefix={self.prefix})'
        )

    def _record_key(self, code: str) -> str:
        return f'{self.prefix}:{code}'

    def _candidates_key(self, code: str, field: str) -> str:
        return f'{self.prefix}:{code}:{field}'

    def _channel(self, code: str) -> str:
        return f'{self.prefix}:{code}:updates'

    def _keys(self, code: str) -> list[str]:
        return [
            self._record_key(code),
            self._candidates_key(code, 'offerCandidates'),
            self._candidates_key(code, 'answerCandidates'),
        ]

    async def connect(self) -> None:
        """Check the server is reachable and accepts the credentials.

        Raises:
            StoreAuthenticationError: If the credentials are rejected.
            StoreUnavailableError: If the server cannot be reached.
        """
        with _translate_errors():
            await self._client.ping()
        logger.info(f'Connected to Redis at {self.hostname}:{self.port}')

    async def create(self, key: str, record: RendezvousRecord) -> None:
        """Create a new record.

        Raises:
            RecordExistsError: If a record already exists for `key`.
        """
        with _translate_errors():
            created = await self._client.hsetnx(
                self._record_key(key),
                'created',
                '1',
            )
            if not created:
                raise RecordExistsError(f'A record already exists for {key}.')
            await self._write(
                key,
                RecordUpdate(
                    offer=record.offer,
                    answer=record.answer,
                    offer_candidates=record.offer_candidates,
                    answer_candidates=record.answer_candidates,
                ),
            )
        logger.debug(f'Created record {key}')

    async def update(self, key: str, update: RecordUpdate) -> None:
        """Merge a partial write into an existing record.

        Raises:
            RecordNotFoundError: If no record exists for `key`.
            RecordConflictError: If a different offer or answer is
                already stored.
        """
        with _translate_errors():
            if not await self._client.exists(self._record_key(key)):
                raise RecordNotFoundError(f'No record exists for {key}.')
            await self._write(key, update)
        logger.debug(f'Updated record {key}')

    async def get(self, key: str) -> RendezvousRecord | None:
        """Get the current record or `None` if it does not exist.

        Raises:
            RecordDecodeError: If the stored data is malformed.
        """
        with _translate_errors():
            fields = await self._client.hgetall(self._record_key(key))
            if not fields:
                return None
            offer_candidates = await self._client.smembers(
                self._candidates_key(key, 'offerCandidates'),
            )
            answer_candidates = await self._client.smembers(
                self._candidates_key(key, 'answerCandidates'),
            )

        fields = {_to_str(k): _to_str(v) for k, v in fields.items()}
        try:
            data: dict[str, Any] = {
                'offerCandidates': [
                    json.loads(_to_str(c)) for c in offer_candidates
                ],
                'answerCandidates': [
                    json.loads(_to_str(c)) for c in answer_candidates
                ],
            }
            for field in ('offer', 'answer'):
                if field in fields:
                    data[field] = json.loads(fields[field])
        except json.JSONDecodeError as e:
            raise RecordDecodeError(
                f'Record {key} contains invalid JSON: {e}',
            ) from e
        return RendezvousRecord.from_dict(data)

    async def delete(self, key: str) -> None:
        """Delete a record if it exists."""
        with _translate_errors():
            deleted = await self._client.delete(*self._keys(key))
            if deleted:
                await self._client.publish(self._channel(key), 'deleted')
        logger.debug(f'Deleted record {key}')

    async def subscribe(self, key: str) -> RedisRecordSubscription:
        """Subscribe to snapshots of a record."""
        pubsub = self._client.pubsub()
        with _translate_errors():
            await pubsub.subscribe(self._channel(key))
        subscription = RedisRecordSubscription(self, key, pubsub)
        self._subscriptions.add(subscription)
        return subscription

    async def close(self) -> None:
        """Close open subscriptions and the client connection."""
        for subscription in list(self._subscriptions):
            await subscription.close()
        await self._client.aclose()

    def _forget(self, subscription: RedisRecordSubscription) -> None:
        self._subscriptions.discard(subscription)

    async def _write(self, key: str, update: RecordUpdate) -> None:
        record_key = self._record_key(key)
        for field, description in (
            ('offer', update.offer),
            ('answer', update.answer),
        ):
            if description is None:
                continue
            if not await self._client.hsetnx(
                record_key,
                field,
                _encode_description(description),
            ):
                stored = await self._client.hget(record_key, field)
                current = SessionDescription.from_dict(
                    json.loads(_to_str(stored)),
                )
                if current != description:
                    raise RecordConflictError(
                        f'Record {key} already has a different {field}.',
                    )

        for field, candidates in (
            ('offerCandidates', update.offer_candidates),
            ('answerCandidates', update.answer_candidates),
        ):
            if candidates:
                await self._client.sadd(
                    self._candidates_key(key, field),
                    *_encode_candidates(candidates),
                )

        if self.record_ttl is not None:
            for name in self._keys(key):
                await self._client.expire(name, self.record_ttl)
        await self._client.publish(self._channel(key), 'updated')
