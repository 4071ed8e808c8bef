"""Chunked file transfer over an open data channel."""
from __future__ import annotations
