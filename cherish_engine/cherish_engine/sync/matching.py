"""Deterministic scoring of remote people against local people.

Scoring only proposes; it never links anything.  For each remote person
the single best local match wins, with the earliest local person in
iteration order winning ties.

Scores, highest rule first:

============================  ==========  =====================
Rule                          Confidence  Reason
============================  ==========  =====================
identical ``person_uid``      0.99        Same person ID
exact name (case-insensitive) 0.95        Exact name match
same first name (>= 2 chars)  0.70        First name match
one name contains the other   0.50        Partial name match
============================  ==========  =====================
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

SAME_UID = (0.99, "Same person ID")
EXACT_NAME = (0.95, "Exact name match")
FIRST_NAME = (0.70, "First name match")
PARTIAL_NAME = (0.50, "Partial name match")

_MIN_FIRST_NAME_LEN = 2


@dataclass(frozen=True)
class LocalPerson:
    id: str
    name: str
    person_uid: str | None = None


@dataclass(frozen=True)
class RemotePerson:
    person_uid: str
    name: str
    relationship_label: str | None = None


@dataclass(frozen=True)
class MatchSuggestion:
    remote_person_uid: str
    remote_person_name: str
    local_person_id: str | None
    local_person_name: str | None
    confidence: float
    reasons: tuple[str, ...] = field(default_factory=tuple)

    def as_dict(self) -> dict[str, object]:
        return {
            "remote_person_uid": self.remote_person_uid,
            "remote_person_name": self.remote_person_name,
            "local_person_id": self.local_person_id,
            "local_person_name": self.local_person_name,
            "confidence": self.confidence,
            "reasons": list(self.reasons),
        }


def _norm(name: str) -> str:
    return " ".join(name.lower().split())


def score_pair(remote: RemotePerson, local: LocalPerson) -> tuple[float, str | None]:
    """Return ``(confidence, reason)`` for one remote/local pair."""
    if local.person_uid and remote.person_uid == local.person_uid:
        return SAME_UID

    remote_name = _norm(remote.name)
    local_name = _norm(local.name)
    if not remote_name or not local_name:
        return 0.0, None

    if remote_name == local_name:
        return EXACT_NAME

    remote_first = remote_name.split(" ", 1)[0]
    local_first = local_name.split(" ", 1)[0]
    if len(remote_first) >= _MIN_FIRST_NAME_LEN and remote_first == local_first:
        return FIRST_NAME

    if remote_name in local_name or local_name in remote_name:
        return PARTIAL_NAME

    return 0.0, None


def best_match(remote: RemotePerson, local_people: Sequence[LocalPerson]) -> MatchSuggestion:
    best: LocalPerson | None = None
    best_score = 0.0
    best_reason: str | None = None
    for local in local_people:
        score, reason = score_pair(remote, local)
        if score > best_score:
            best, best_score, best_reason = local, score, reason

    return MatchSuggestion(
        remote_person_uid=remote.person_uid,
        remote_person_name=remote.name,
        local_person_id=best.id if best else None,
        local_person_name=best.name if best else None,
        confidence=best_score,
        reasons=(best_reason,) if best_reason else (),
    )


def suggest_matches(
    remote_people: Iterable[RemotePerson],
    local_people: Sequence[LocalPerson],
    *,
    skip_remote_uids: Iterable[str] = (),
) -> list[MatchSuggestion]:
    """Score every remote person against *local_people*.

    Remote people whose uid is in *skip_remote_uids* (already linked or
    excluded) and remote people with a blank name are left out entirely.
    Output order follows the input order of *remote_people*.
    """
    skip = set(skip_remote_uids)
    suggestions: list[MatchSuggestion] = []
    for remote in remote_people:
        if remote.person_uid in skip or not remote.name.strip():
            continue
        suggestions.append(best_match(remote, local_people))
    return suggestions
