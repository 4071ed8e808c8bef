from __future__ import annotations

import logging

import pytest

from sharecode.transfer.exceptions import TransferSizeError
from sharecode.transfer.metadata import encode_metadata
from sharecode.transfer.metadata import FileMetadata
from sharecode.transfer.receiver import ChunkReceived
from sharecode.transfer.receiver import MessageIgnored
from sharecode.transfer.receiver import MetadataReceived
from sharecode.transfer.receiver import TransferComplete
from sharecode.transfer.receiver import TransferFailed
from sharecode.transfer.receiver import TransferPhase
from sharecode.transfer.receiver import TransferReceiver


def _metadata(name: str = 'a.bin', size: int = 10) -> str:
    return encode_metadata(FileMetadata(name, size))


def test_initial_state() -> None:
    receiver = TransferReceiver()
    assert receiver.phase is TransferPhase.AWAITING_METADATA
    assert receiver.metadata is None
    assert receiver.received == 0


def test_full_transfer() -> None:
    receiver = TransferReceiver()

    events = receiver.feed(_metadata(size=10))
    assert events == [MetadataReceived(FileMetadata('a.bin', 10))]
    assert receiver.phase is TransferPhase.RECEIVING

    events = receiver.feed(b'01234')
    assert events == [ChunkReceived(5, 10, 50)]
    assert receiver.buffered_chunks == 1

    events = receiver.feed(b'56789')
    assert events[0] == ChunkReceived(10, 10, 100)
    complete = events[1]
    assert isinstance(complete, TransferComplete)
    assert complete.data == b'0123456789'
    assert complete.metadata == FileMetadata('a.bin', 10)

    assert receiver.phase is TransferPhase.COMPLETE
    assert receiver.buffered_chunks == 0


def test_empty_file_completes_on_metadata() -> None:
    receiver = TransferReceiver()

    events = receiver.feed(_metadata(size=0))

    assert isinstance(events[0], MetadataReceived)
    assert events[1] == ChunkReceived(0, 0, 100)
    assert isinstance(events[2], TransferComplete)
    assert events[2].data == b''
    assert receiver.phase is TransferPhase.COMPLETE


def test_binary_before_metadata_is_ignored(caplog) -> None:
    caplog.set_level(logging.WARNING)
    receiver = TransferReceiver()

    events = receiver.feed(b'stray')

    assert len(events) == 1
    assert isinstance(events[0], MessageIgnored)
    assert receiver.phase is TransferPhase.AWAITING_METADATA
    assert receiver.received == 0
    assert any('before metadata' in r.message for r in caplog.records)


def test_malformed_metadata_is_ignored() -> None:
    receiver = TransferReceiver()

    events = receiver.feed('{"name": "a.bin"}')

    assert isinstance(events[0], MessageIgnored)
    assert receiver.phase is TransferPhase.AWAITING_METADATA

    # A later valid metadata message is still accepted
    events = receiver.feed(_metadata())
    assert isinstance(events[0], MetadataReceived)


def test_duplicate_metadata_while_receiving_is_ignored() -> None:
    receiver = TransferReceiver()
    receiver.feed(_metadata(size=10))
    receiver.feed(b'abcd')

    events = receiver.feed(_metadata(name='other.bin', size=99))

    assert isinstance(events[0], MessageIgnored)
    assert receiver.phase is TransferPhase.RECEIVING
    assert receiver.metadata == FileMetadata('a.bin', 10)
    assert receiver.received == 4
    assert receiver.buffered_chunks == 1

    events = receiver.feed(b'efghij')
    assert isinstance(events[-1], TransferComplete)
    assert events[-1].data == b'abcdefghij'


def test_messages_after_complete_are_ignored() -> None:
    receiver = TransferReceiver()
    receiver.feed(_metadata(size=3))
    receiver.feed(b'abc')

    assert isinstance(receiver.feed(b'd')[0], MessageIgnored)
    assert isinstance(receiver.feed(_metadata())[0], MessageIgnored)
    assert receiver.phase is TransferPhase.COMPLETE


def test_overflow_fails() -> None:
    receiver = TransferReceiver()
    receiver.feed(_metadata(size=4))
    receiver.feed(b'ab')

    events = receiver.feed(b'cdef')

    assert len(events) == 1
    assert isinstance(events[0], TransferFailed)
    assert isinstance(events[0].error, TransferSizeError)
    assert receiver.phase is TransferPhase.FAILED
    assert receiver.buffered_chunks == 0

    assert isinstance(receiver.feed(b'x')[0], MessageIgnored)


def test_reset() -> None:
    receiver = TransferReceiver()
    receiver.feed(_metadata(size=10))
    receiver.feed(b'abc')

    receiver.reset()

    assert receiver.phase is TransferPhase.AWAITING_METADATA
    assert receiver.metadata is None
    assert receiver.received == 0
    assert receiver.buffered_chunks == 0


@pytest.mark.parametrize('chunk_size', (1, 3, 7, 10))
def test_progress_is_reported_per_chunk(chunk_size: int) -> None:
    data = b'0123456789'
    receiver = TransferReceiver()
    receiver.feed(_metadata(size=len(data)))

    percents = []
    for offset in range(0, len(data), chunk_size):
        for event in receiver.feed(data[offset : offset + chunk_size]):
            if isinstance(event, ChunkReceived):
                percents.append(event.percent)

    assert percents == sorted(percents)
    assert percents[-1] == 100
    assert receiver.phase is TransferPhase.COMPLETE
