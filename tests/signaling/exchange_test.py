from __future__ import annotations

import asyncio
import itertools
from unittest import mock

import pytest

from sharecode.signaling.exceptions import RecordNotFoundError
from sharecode.signaling.exceptions import ShareCodeExhaustedError
from sharecode.signaling.exceptions import SignalingError
from sharecode.signaling.exceptions import StoreUnavailableError
from sharecode.signaling.exchange import CHANNEL_LABEL
from sharecode.signaling.exchange import ExchangeState
from sharecode.signaling.exchange import InitiatorExchange
from sharecode.signaling.exchange import ResponderExchange
from sharecode.signaling.exchange import Role
from sharecode.signaling.exchange import peer_values
from sharecode.signaling.exchange import plan
from sharecode.signaling.memory import MemoryRecordStore
from sharecode.signaling.protocols import RecordStore
from sharecode.signaling.record import RendezvousRecord
from sharecode.transport.models import Candidate
from sharecode.transport.models import SessionDescription
from testing.stores import mock_redis_stores
from testing.transport import FakeNetwork

OFFER = SessionDescription('offer', 'v=0 offer')
ANSWER = SessionDescription('answer', 'v=0 answer')
C1 = Candidate('candidate:1 1 udp 1 192.0.2.1 5000 typ host', '0', 0)
C2 = Candidate('candidate:2 1 udp 1 192.0.2.2 5001 typ host', '0', 0)
C3 = Candidate('candidate:3 1 udp 1 192.0.2.3 5002 typ host', '1', 1)

TIMEOUT = 5


def test_peer_values() -> None:
    record = RendezvousRecord(
        offer=OFFER,
        offer_candidates=frozenset({C1}),
        answer=ANSWER,
        answer_candidates=frozenset({C2}),
    )
    assert peer_values(Role.INITIATOR, record) == (ANSWER, {C2})
    assert peer_values(Role.RESPONDER, record) == (OFFER, {C1})


def test_plan_missing_record() -> None:
    assert plan(ExchangeState(Role.RESPONDER), None).is_empty()


def test_plan_holds_candidates_until_description() -> None:
    state = ExchangeState(Role.INITIATOR)
    record = RendezvousRecord(
        offer=OFFER,
        offer_candidates=frozenset({C1}),
        answer_candidates=frozenset({C2}),
    )
    assert plan(state, record).is_empty()


def test_plan_description_then_candidates() -> None:
    state = ExchangeState(Role.RESPONDER)
    record = RendezvousRecord(
        offer=OFFER,
        offer_candidates=frozenset({C3, C2, C1}),
    )
    todo = plan(state, record)
    assert todo.remote_description == OFFER
    assert todo.candidates == (C1, C2, C3)


def test_plan_skips_applied_values() -> None:
    state = ExchangeState(Role.INITIATOR).with_description().with_candidate(C1)
    record = RendezvousRecord(
        offer=OFFER,
        answer=ANSWER,
        answer_candidates=frozenset({C1, C2}),
    )
    todo = plan(state, record)
    assert todo.remote_description is None
    assert todo.candidates == (C2,)

    state = state.with_candidate(C2)
    assert plan(state, record).is_empty()


def test_plan_is_idempotent() -> None:
    state = ExchangeState(Role.RESPONDER)
    record = RendezvousRecord(offer=OFFER, offer_candidates=frozenset({C1}))
    assert plan(state, record) == plan(state, record)


async def _connect(
    initiator: InitiatorExchange,
    responder: ResponderExchange,
) -> None:
    first, second = await asyncio.gather(
        initiator.wait_channel(TIMEOUT),
        responder.wait_channel(TIMEOUT),
    )
    assert first.label == CHANNEL_LABEL
    assert second.label == CHANNEL_LABEL
    assert first.ready_state == 'open'
    assert second.ready_state == 'open'


@pytest.mark.asyncio()
async def test_exchange_connects(
    store_pair: tuple[RecordStore, RecordStore],
) -> None:
    network = FakeNetwork()
    sender_store, receiver_store = store_pair
    sender_statuses: list[str] = []
    receiver_statuses: list[str] = []

    initiator = InitiatorExchange(
        sender_store,
        network.transport(),
        on_status=sender_statuses.append,
        code_factory=lambda: '531204',
    )
    code = await initiator.start()
    assert code == '531204'
    assert initiator.share_code == '531204'

    responder = ResponderExchange(
        receiver_store,
        network.transport(),
        on_status=receiver_statuses.append,
    )
    await responder.start(code)

    await _connect(initiator, responder)

    assert sender_statuses[:2] == [
        'Generating share code...',
        'Share code generated. Waiting for receiver...',
    ]
    assert receiver_statuses[0] == 'Connecting with code: 531204...'
    assert 'Offer received. Creating answer...' in receiver_statuses
    assert 'Answer sent. Establishing connection...' in receiver_statuses

    await initiator.close()
    await responder.close()


@pytest.mark.asyncio()
async def test_responder_waits_for_sender(
    store_pair: tuple[RecordStore, RecordStore],
) -> None:
    network = FakeNetwork()
    sender_store, receiver_store = store_pair
    statuses: list[str] = []

    responder = ResponderExchange(
        receiver_store,
        network.transport(),
        on_status=statuses.append,
    )
    await responder.start('482913')
    for _ in range(10):
        await asyncio.sleep(0)
    assert statuses == [
        'Connecting with code: 482913...',
        'No transfer found yet. Waiting for sender...',
    ]

    initiator = InitiatorExchange(
        sender_store,
        network.transport(),
        code_factory=lambda: '482913',
    )
    await initiator.start()
    await _connect(initiator, responder)

    await initiator.close()
    await responder.close()


@pytest.mark.asyncio()
async def test_candidates_applied_once(
    store_pair: tuple[RecordStore, RecordStore],
) -> None:
    network = FakeNetwork()
    sender = network.transport(candidates=3)
    receiver = network.transport(candidates=3)

    initiator = InitiatorExchange(store_pair[0], sender)
    code = await initiator.start()
    responder = ResponderExchange(store_pair[1], receiver)
    await responder.start(code)
    await _connect(initiator, responder)

    # Let any remaining snapshots drain
    for _ in range(20):
        await asyncio.sleep(0)

    assert receiver.remote_description_calls == 1
    assert sender.remote_description_calls == 1
    assert len(receiver.remote_candidates) == len(
        set(receiver.remote_candidates),
    )
    assert len(sender.remote_candidates) == len(set(sender.remote_candidates))
    assert responder.state.applied_candidates == set(receiver.remote_candidates)

    await initiator.close()
    await responder.close()


@pytest.mark.asyncio()
async def test_rejected_candidates_are_retried(
    store_pair: tuple[RecordStore, RecordStore],
) -> None:
    network = FakeNetwork()
    sender = network.transport(candidates=2)
    receiver = network.transport(candidates=2, reject_candidates=2)

    initiator = InitiatorExchange(store_pair[0], sender)
    code = await initiator.start()
    responder = ResponderExchange(store_pair[1], receiver)
    await responder.start(code)
    await _connect(initiator, responder)

    assert len(receiver.candidate_attempts) > len(receiver.remote_candidates)
    assert set(receiver.remote_candidates) & set(sender.local_candidates)

    await initiator.close()
    await responder.close()


@pytest.mark.asyncio()
async def test_share_code_collision() -> None:
    store = MemoryRecordStore()
    await store.create('111111', RendezvousRecord(offer=OFFER))
    codes = iter(['111111', '222222'])

    initiator = InitiatorExchange(
        store,
        FakeNetwork().transport(),
        code_factory=lambda: next(codes),
    )
    assert await initiator.start() == '222222'
    assert await store.get('111111') == RendezvousRecord(offer=OFFER)
    await initiator.close()


@pytest.mark.asyncio()
async def test_share_codes_exhausted() -> None:
    store = MemoryRecordStore()
    await store.create('111111', RendezvousRecord(offer=OFFER))
    counter = itertools.count()

    def _code() -> str:
        next(counter)
        return '111111'

    initiator = InitiatorExchange(
        store,
        FakeNetwork().transport(),
        code_factory=_code,
        max_attempts=3,
    )
    with pytest.raises(ShareCodeExhaustedError):
        await initiator.start()
    assert next(counter) == 3
    await initiator.close()


@pytest.mark.asyncio()
async def test_record_deleted_before_answer() -> None:
    store = MemoryRecordStore()
    await store.create(
        '531204',
        RendezvousRecord(offer=SessionDescription('offer', 'fake-offer-9')),
    )
    responder = ResponderExchange(store, FakeNetwork().transport())

    with mock.patch.object(
        store,
        'update',
        side_effect=RecordNotFoundError('gone'),
    ):
        await responder.start('531204')
        with pytest.raises(SignalingError):
            await responder.wait_channel(TIMEOUT)

    await responder.close()


@pytest.mark.asyncio()
async def test_wait_channel_timeout() -> None:
    responder = ResponderExchange(
        MemoryRecordStore(),
        FakeNetwork().transport(),
    )
    await responder.start('531204')
    with pytest.raises(asyncio.TimeoutError):
        await responder.wait_channel(0.01)
    await responder.close()


@pytest.mark.asyncio()
async def test_close_cancels_wait() -> None:
    responder = ResponderExchange(
        MemoryRecordStore(),
        FakeNetwork().transport(),
    )
    await responder.start('531204')
    await responder.close()
    # Closing twice is fine
    await responder.close()

    with pytest.raises(asyncio.CancelledError):
        await responder.wait_channel()


@pytest.mark.asyncio()
async def test_malformed_record_is_not_fatal() -> None:
    writer, reader = mock_redis_stores(2)
    offer = SessionDescription('offer', 'fake-offer-9')
    await writer.create('531204', RendezvousRecord(offer=offer))
    record = writer._client.data['sharecode:531204']
    valid = record['offer']
    record['offer'] = b'{not json'

    statuses: list[str] = []
    responder = ResponderExchange(
        reader,
        FakeNetwork().transport(),
        on_status=statuses.append,
    )
    await responder.start('531204')
    for _ in range(10):
        await asyncio.sleep(0)
    assert statuses[-1] == (
        'Received an invalid record. Waiting for an update...'
    )

    record['offer'] = valid
    await writer._client.publish('sharecode:531204:updates', 'updated')
    for _ in range(10):
        await asyncio.sleep(0)
    assert 'Answer sent. Establishing connection...' in statuses

    await responder.close()
    await writer.close()
    await reader.close()


@pytest.mark.asyncio()
async def test_store_unavailable_is_not_fatal() -> None:
    writer, reader = mock_redis_stores(2)
    offer = SessionDescription('offer', 'fake-offer-9')
    await writer.create('531204', RendezvousRecord(offer=offer))

    real_get = reader.get
    calls = 0

    async def _flaky_get(key: str) -> RendezvousRecord | None:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise StoreUnavailableError('Cannot reach Redis')
        return await real_get(key)

    statuses: list[str] = []
    responder = ResponderExchange(
        reader,
        FakeNetwork().transport(),
        on_status=statuses.append,
    )
    responder.retry_delay = 0
    with mock.patch.object(reader, 'get', side_effect=_flaky_get):
        await responder.start('531204')
        for _ in range(10):
            await asyncio.sleep(0)
        assert statuses[-1] == 'Record store unavailable. Retrying...'

        await writer._client.publish('sharecode:531204:updates', 'updated')
        for _ in range(10):
            await asyncio.sleep(0)
    assert 'Offer received. Creating answer...' in statuses

    await responder.close()
    await writer.close()
    await reader.close()
