"""Opaque values produced by a peer transport and exchanged via signaling."""
from __future__ import annotations

import dataclasses
from typing import Any
from typing import Literal


class ModelDecodeError(Exception):
    """Error raised when a transport value cannot be decoded."""

    pass


@dataclasses.dataclass(frozen=True)
class SessionDescription:
    """Negotiated capabilities of one side of a peer connection.

    Attributes:
        type: Either `'offer'` or `'answer'`.
        sdp: Session description protocol body.
    """

    type: Literal['offer', 'answer']
    sdp: str

    def to_dict(self) -> dict[str, Any]:
        """Get the JSON compatible form used by browsers and records."""
        return {'type': self.type, 'sdp': self.sdp}

    @classmethod
    def from_dict(cls, data: Any) -> SessionDescription:
        """Decode a description from its JSON compatible form.

        Raises:
            ModelDecodeError: If `data` is not a mapping with a valid
                `type` and a string `sdp`.
        """
        if not isinstance(data, dict):
            raise ModelDecodeError(
                f'Session description must be an object, got '
                f'{type(data).__name__}.',
            )
        kind = data.get('type')
        sdp = data.get('sdp')
        if kind not in ('offer', 'answer'):
            raise ModelDecodeError(f'Unknown session description type {kind!r}.')
        if not isinstance(sdp, str):
            raise ModelDecodeError('Session description sdp must be a string.')
        return cls(type=kind, sdp=sdp)


@dataclasses.dataclass(frozen=True)
class Candidate:
    """Network reachability path discovered by a transport.

    Candidates compare and hash by value so the same candidate seen in
    several record snapshots collapses to one set member.

    Attributes:
        candidate: Candidate attribute string, e.g.
            `'candidate:1 1 udp 2130706431 192.0.2.1 5000 typ host'`.
        sdp_mid: Media stream identifier the candidate belongs to.
        sdp_mline_index: Index of the media description the candidate
            belongs to.
    """

    candidate: str
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Get the JSON compatible form (browser `toJSON()` field names)."""
        return {
            'candidate': self.candidate,
            'sdpMid': self.sdp_mid,
            'sdpMLineIndex': self.sdp_mline_index,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Candidate:
        """Decode a candidate from its JSON compatible form.

        Unknown keys (such as `usernameFragment`) are ignored.

        Raises:
            ModelDecodeError: If `data` is not a mapping with a string
                `candidate` and well-typed optional fields.
        """
        if not isinstance(data, dict):
            raise ModelDecodeError(
                f'Candidate must be an object, got {type(data).__name__}.',
            )
        candidate = data.get('candidate')
        sdp_mid = data.get('sdpMid')
        sdp_mline_index = data.get('sdpMLineIndex')
        if not isinstance(candidate, str):
            raise ModelDecodeError('Candidate attribute must be a string.')
        if sdp_mid is not None and not isinstance(sdp_mid, str):
            raise ModelDecodeError('Candidate sdpMid must be a string.')
        if sdp_mline_index is not None and (
            isinstance(sdp_mline_index, bool)
            or not isinstance(sdp_mline_index, int)
        ):
            raise ModelDecodeError('Candidate sdpMLineIndex must be an int.')
        return cls(
            candidate=candidate,
            sdp_mid=sdp_mid,
            sdp_mline_index=sdp_mline_index,
        )

    def sort_key(self) -> tuple[int, str, str]:
        """Deterministic ordering for applying an unordered set."""
        index = -1 if self.sdp_mline_index is None else self.sdp_mline_index
        return (index, self.sdp_mid or '', self.candidate)
