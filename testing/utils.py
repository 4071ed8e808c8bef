"""Fixtures and utilities for testing."""
from __future__ import annotations

import os
import pathlib


def write_file(path: pathlib.Path, size: int) -> bytes:
    """Write `size` random bytes to `path` and return them."""
    data = os.urandom(size)
    path.write_bytes(data)
    return data


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
