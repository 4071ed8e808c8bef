"""Rendezvous signaling over a shared record store.

Two peers find each other with a short numeric share code. The initiator
publishes a session description and network candidates into a
[`RendezvousRecord`][sharecode.signaling.record.RendezvousRecord] keyed by
the code and the responder answers into the same record. The
[`SignalingExchange`][sharecode.signaling.exchange.SignalingExchange]
implementations drive a
[`PeerTransport`][sharecode.transport.protocols.PeerTransport] from the
record snapshots until a data channel opens.
"""
from __future__ import annotations
