"""File chunking utilities.

Files are moved as a sequence of contiguous binary slices. The slices are
small enough to stay well under the message size limits of a WebRTC data
channel while still amortizing the per-message overhead.
"""
from __future__ import annotations

import os
from typing import BinaryIO
from typing import Generator
from typing import Iterable
from typing import Union

DEFAULT_CHUNK_SIZE = 64 * 1024

ChunkSource = Union[str, os.PathLike, BinaryIO, bytes, bytearray, memoryview]


def chunk_count(size: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
    """Number of chunks needed to cover `size` bytes.

    Raises:
        ValueError: If `size` is negative or `chunk_size` is not positive.
    """
    if size < 0:
        raise ValueError(f'Size ({size}) cannot be negative.')
    _check_chunk_size(chunk_size)
    return -(-size // chunk_size)


def iter_chunks(
    source: ChunkSource,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Generator[bytes, None, None]:
    """Yield contiguous slices of a file in order.

    The generator is lazy: a slice is only read from `source` when the
    consumer asks for it, so at most one read is in flight and the next
    read starts only after the previous slice has been handed off. Call
    again to restart from the beginning (file objects are read from their
    current position).

    Args:
        source: Path to a file, an open binary file object, or raw bytes.
        chunk_size: Maximum size in bytes of each slice. The final slice
            may be smaller.

    Yields:
        Slices of `source`. Nothing is yielded for empty input.

    Raises:
        ValueError: If `chunk_size` is not positive.
    """
    _check_chunk_size(chunk_size)

    if isinstance(source, (bytes, bytearray, memoryview)):
        view = memoryview(source)
        for offset in range(0, len(view), chunk_size):
            yield bytes(view[offset : offset + chunk_size])
    elif isinstance(source, (str, os.PathLike)):
        with open(source, 'rb') as f:
            yield from _read_slices(f, chunk_size)
    else:
        yield from _read_slices(source, chunk_size)


def reassemble(chunks: Iterable[bytes]) -> bytes:
    """Join chunks in the order they were received.

    Chunks are not reordered or deduplicated; the transport is required to
    deliver messages in the order they were sent.
    """
    return b''.join(chunks)


def progress(received: int, total: int) -> int:
    """Integer percentage of `total` that has been `received`.

    Rounds half up to the nearest integer and clamps to `[0, 100]`.

    Returns:
        Percentage, or `0` if `total` is zero.
    """
    if total <= 0:
        return 0
    percent = (200 * received + total) // (2 * total)
    return max(0, min(100, percent))


def _check_chunk_size(chunk_size: int) -> None:
    if chunk_size <= 0:
        raise ValueError(f'Chunk size must be positive, got {chunk_size}.')


def _read_slices(
    f: BinaryIO,
    chunk_size: int,
) -> Generator[bytes, None, None]:
    while True:
        data = f.read(chunk_size)
        if not data:
            return
        yield data
