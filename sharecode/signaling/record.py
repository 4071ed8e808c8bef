"""Rendezvous record shared by the two parties of a transfer.

A record is keyed by a share code and holds at most one offer, at most one
answer, and a growing set of candidates for each side. Candidate fields only
ever grow: every write is merged into the stored record by set union so
concurrent writers cannot lose each other's candidates.
"""
from __future__ import annotations

import dataclasses
from typing import Any
from typing import Iterable

from sharecode.signaling.exceptions import RecordConflictError
from sharecode.signaling.exceptions import RecordDecodeError
from sharecode.transport.models import Candidate
from sharecode.transport.models import ModelDecodeError
from sharecode.transport.models import SessionDescription

CandidateSet = frozenset[Candidate]


@dataclasses.dataclass(frozen=True)
class RecordUpdate:
    """Partial write to a rendezvous record.

    Attributes:
        offer: Offer to set, if any.
        answer: Answer to set, if any.
        offer_candidates: Candidates to add to the initiator's set.
        answer_candidates: Candidates to add to the responder's set.
    """

    offer: SessionDescription | None = None
    answer: SessionDescription | None = None
    offer_candidates: CandidateSet = frozenset()
    answer_candidates: CandidateSet = frozenset()

    def is_empty(self) -> bool:
        """Check if the update would not change any record."""
        return (
            self.offer is None
            and self.answer is None
            and not self.offer_candidates
            and not self.answer_candidates
        )


@dataclasses.dataclass(frozen=True)
class RendezvousRecord:
    """Snapshot of a rendezvous record.

    Attributes:
        offer: Initiator's session description.
        offer_candidates: Candidates gathered by the initiator.
        answer: Responder's session description.
        answer_candidates: Candidates gathered by the responder.
    """

    offer: SessionDescription | None = None
    offer_candidates: CandidateSet = frozenset()
    answer: SessionDescription | None = None
    answer_candidates: CandidateSet = frozenset()

    def merge(self, update: RecordUpdate) -> RendezvousRecord:
        """Get the record that results from applying an update.

        Candidate fields are merged by union. The offer and answer are
        write-once: writing the value already stored is a no-op.

        Raises:
            RecordConflictError: If the update sets an offer or answer that
                differs from the one already stored.
        """
        return RendezvousRecord(
            offer=_write_once('offer', self.offer, update.offer),
            offer_candidates=self.offer_candidates | update.offer_candidates,
            answer=_write_once('answer', self.answer, update.answer),
            answer_candidates=(
                self.answer_candidates | update.answer_candidates
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        """Get the JSON compatible form of the record.

        Candidates are written in a deterministic order.
        """
        data: dict[str, Any] = {
            'offerCandidates': _candidates_to_list(self.offer_candidates),
            'answerCandidates': _candidates_to_list(self.answer_candidates),
        }
        if self.offer is not None:
            data['offer'] = self.offer.to_dict()
        if self.answer is not None:
            data['answer'] = self.answer.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Any) -> RendezvousRecord:
        """Decode a record from its JSON compatible form.

        Raises:
            RecordDecodeError: If `data` is malformed.
        """
        if not isinstance(data, dict):
            raise RecordDecodeError(
                f'Record must be an object, got {type(data).__name__}.',
            )
        try:
            offer = _description_or_none(data.get('offer'))
            answer = _description_or_none(data.get('answer'))
            offer_candidates = _candidates_from_list(
                data.get('offerCandidates', []),
            )
            answer_candidates = _candidates_from_list(
                data.get('answerCandidates', []),
            )
        except ModelDecodeError as e:
            raise RecordDecodeError(f'Malformed record: {e}') from e

        if offer is not None and offer.type != 'offer':
            raise RecordDecodeError(f'Record offer has type {offer.type!r}.')
        if answer is not None and answer.type != 'answer':
            raise RecordDecodeError(
                f'Record answer has type {answer.type!r}.',
            )

        return cls(
            offer=offer,
            offer_candidates=offer_candidates,
            answer=answer,
            answer_candidates=answer_candidates,
        )


def _write_once(
    field: str,
    current: SessionDescription | None,
    new: SessionDescription | None,
) -> SessionDescription | None:
    if new is None or current == new:
        return current
    if current is not None:
        raise RecordConflictError(f'Record already has a different {field}.')
    return new


def _description_or_none(data: Any) -> SessionDescription | None:
    return None if data is None else SessionDescription.from_dict(data)


def _candidates_to_list(candidates: Iterable[Candidate]) -> list[Any]:
    return [c.to_dict() for c in sorted(candidates, key=Candidate.sort_key)]


def _candidates_from_list(data: Any) -> CandidateSet:
    if not isinstance(data, list):
        raise ModelDecodeError(
            f'Candidates must be a list, got {type(data).__name__}.',
        )
    return frozenset(Candidate.from_dict(item) for item in data)
