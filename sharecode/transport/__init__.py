"""Direct peer transport capability.

The [`PeerTransport`][sharecode.transport.protocols.PeerTransport] protocol
describes what the signaling and transfer layers need from a WebRTC-like
peer connection. [`RtcTransport`][sharecode.transport.rtc.RtcTransport]
implements it with [aiortc](https://aiortc.readthedocs.io/){target=_blank}.
"""
from __future__ import annotations
