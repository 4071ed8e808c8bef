"""Peer-to-peer file sharing with short numeric share codes."""
from __future__ import annotations

import importlib.metadata as importlib_metadata

__version__ = importlib_metadata.version('sharecode')
