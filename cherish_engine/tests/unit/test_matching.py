"""Unit tests for cherish_engine.sync.matching."""

from __future__ import annotations

import pytest

from cherish_engine.sync.matching import (
    EXACT_NAME,
    FIRST_NAME,
    PARTIAL_NAME,
    SAME_UID,
    LocalPerson,
    RemotePerson,
    best_match,
    score_pair,
    suggest_matches,
)

# ---------------------------------------------------------------------------
# score_pair
# ---------------------------------------------------------------------------


class TestScorePair:
    def test_same_uid_beats_everything(self):
        remote = RemotePerson(person_uid="uid-1", name="Someone Else")
        local = LocalPerson(id="p1", name="Alex Smith", person_uid="uid-1")
        assert score_pair(remote, local) == SAME_UID

    def test_exact_name_case_insensitive(self):
        remote = RemotePerson(person_uid="r1", name="ALEX  Smith")
        local = LocalPerson(id="p1", name="alex smith")
        assert score_pair(remote, local) == EXACT_NAME

    def test_first_name(self):
        remote = RemotePerson(person_uid="r1", name="Alex Smith")
        local = LocalPerson(id="p1", name="Alex Jones")
        assert score_pair(remote, local) == FIRST_NAME

    def test_single_letter_first_name_is_not_a_first_name_match(self):
        remote = RemotePerson(person_uid="r1", name="J Smith")
        local = LocalPerson(id="p1", name="J Jones")
        assert score_pair(remote, local) == (0.0, None)

    def test_partial_name(self):
        remote = RemotePerson(person_uid="r1", name="Sam")
        local = LocalPerson(id="p1", name="Big Sam")
        assert score_pair(remote, local) == PARTIAL_NAME

    def test_no_match(self):
        remote = RemotePerson(person_uid="r1", name="Jordan")
        local = LocalPerson(id="p1", name="Casey")
        assert score_pair(remote, local) == (0.0, None)

    def test_blank_local_name(self):
        remote = RemotePerson(person_uid="r1", name="Jordan")
        local = LocalPerson(id="p1", name="   ")
        assert score_pair(remote, local) == (0.0, None)

    @pytest.mark.parametrize(
        "confidence",
        [SAME_UID[0], EXACT_NAME[0], FIRST_NAME[0], PARTIAL_NAME[0]],
    )
    def test_confidences_within_unit_interval(self, confidence):
        assert 0.0 < confidence <= 1.0


# ---------------------------------------------------------------------------
# best_match / suggest_matches
# ---------------------------------------------------------------------------


class TestBestMatch:
    def test_highest_score_wins(self):
        remote = RemotePerson(person_uid="r1", name="Alex Smith")
        people = [
            LocalPerson(id="p1", name="Alex Jones"),
            LocalPerson(id="p2", name="Alex Smith"),
        ]
        match = best_match(remote, people)
        assert match.local_person_id == "p2"
        assert match.confidence == 0.95
        assert match.reasons == ("Exact name match",)

    def test_tie_keeps_earliest_local(self):
        remote = RemotePerson(person_uid="r1", name="Alex Smith")
        people = [
            LocalPerson(id="p1", name="Alex Jones"),
            LocalPerson(id="p2", name="Alex Brown"),
        ]
        assert best_match(remote, people).local_person_id == "p1"

    def test_no_candidate(self):
        remote = RemotePerson(person_uid="r1", name="Jordan")
        match = best_match(remote, [LocalPerson(id="p1", name="Casey")])
        assert match.local_person_id is None
        assert match.local_person_name is None
        assert match.confidence == 0.0
        assert match.reasons == ()

    def test_as_dict(self):
        remote = RemotePerson(person_uid="r1", name="Casey")
        match = best_match(remote, [LocalPerson(id="p1", name="Casey")])
        assert match.as_dict() == {
            "remote_person_uid": "r1",
            "remote_person_name": "Casey",
            "local_person_id": "p1",
            "local_person_name": "Casey",
            "confidence": 0.95,
            "reasons": ["Exact name match"],
        }


class TestSuggestMatches:
    def test_skips_linked_and_blank_names(self):
        remote = [
            RemotePerson(person_uid="r1", name="Alex"),
            RemotePerson(person_uid="r2", name="Casey"),
            RemotePerson(person_uid="r3", name="  "),
        ]
        local = [LocalPerson(id="p1", name="Alex"), LocalPerson(id="p2", name="Casey")]

        suggestions = suggest_matches(remote, local, skip_remote_uids={"r1"})
        assert [s.remote_person_uid for s in suggestions] == ["r2"]

    def test_deterministic_and_ordered(self):
        remote = [RemotePerson(person_uid=f"r{i}", name=n) for i, n in enumerate(["Sam", "Alex Lee", "Jo"])]
        local = [LocalPerson(id="p1", name="Big Sam"), LocalPerson(id="p2", name="Alex Kim")]

        first = suggest_matches(remote, local)
        second = suggest_matches(list(reversed(remote))[::-1], local)
        assert first == second
        assert [s.remote_person_uid for s in first] == ["r0", "r1", "r2"]
        assert [s.local_person_id for s in first] == ["p1", "p2", None]
