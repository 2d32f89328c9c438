"""Tests for the per-track selection stager."""

import random
from datetime import date, time

import pytest

from clinic_os.scheduling.models import CandidateSlot, SlotKey
from clinic_os.scheduling.selection import SelectionStager


def _make_slot(
    day: int = 3,
    hour: int = 9,
    therapist_id: str = "th-1",
    track_id: str = "pt",
) -> CandidateSlot:
    return CandidateSlot(
        track_id=track_id,
        date=date(2025, 3, day),
        time=time(hour, 0),
        therapist_id=therapist_id,
    )


@pytest.fixture
def stager():
    return SelectionStager()


@pytest.fixture
def candidates():
    return [_make_slot(day=d, hour=h) for d in (3, 4, 5) for h in (9, 14)]


class TestToggle:
    def test_toggle_adds_then_removes(self, stager: SelectionStager):
        slot = _make_slot()
        assert stager.toggle("pt", slot) is True
        assert stager.is_selected("pt", slot)
        assert stager.toggle("pt", slot) is False
        assert not stager.is_selected("pt", slot)
        assert stager.total_selected() == 0

    def test_membership_is_by_key_not_identity(self, stager: SelectionStager):
        stager.toggle("pt", _make_slot())
        # same slot, different object and flags
        same = _make_slot().model_copy(update={"is_preferred": True})
        assert stager.is_selected("pt", same)
        stager.toggle("pt", same)
        assert stager.total_selected() == 0

    def test_tracks_are_independent(self, stager: SelectionStager):
        slot = _make_slot()
        stager.toggle("pt", slot)
        stager.toggle("ot", slot)
        assert stager.total_selected() == 2
        stager.toggle("pt", slot)
        assert stager.is_selected("ot", slot)
        assert not stager.is_selected("pt", slot)

    def test_different_therapist_is_different_slot(self, stager: SelectionStager):
        stager.toggle("pt", _make_slot(therapist_id="th-1"))
        stager.toggle("pt", _make_slot(therapist_id="th-2"))
        assert len(stager.selected("pt")) == 2

    @pytest.mark.parametrize("seed", range(15))
    def test_double_toggle_is_identity(self, stager: SelectionStager, candidates, seed: int):
        rng = random.Random(seed)
        for slot in rng.sample(candidates, rng.randint(0, len(candidates))):
            stager.toggle("pt", slot)
        before = stager.selection_set()

        slot = rng.choice(candidates)
        stager.toggle("pt", slot)
        stager.toggle("pt", slot)

        after = stager.selection_set()
        assert {s.key for s in after.get("pt", [])} == {s.key for s in before.get("pt", [])}

    @pytest.mark.parametrize("seed", range(15))
    def test_never_holds_duplicates(self, stager: SelectionStager, candidates, seed: int):
        rng = random.Random(seed)
        for _ in range(40):
            if rng.random() < 0.3:
                stager.select_all("pt", rng.sample(candidates, 3))
            else:
                stager.toggle("pt", rng.choice(candidates))
        keys = [s.key for s in stager.selected("pt")]
        assert len(keys) == len(set(keys))
        assert stager.total_selected() == len(keys)


class TestBulkSelection:
    def test_select_all_is_idempotent(self, stager: SelectionStager, candidates):
        stager.select_all("pt", candidates)
        stager.select_all("pt", candidates)
        assert stager.total_selected() == len(candidates)

    def test_select_all_keeps_existing(self, stager: SelectionStager, candidates):
        extra = _make_slot(day=10)
        stager.toggle("pt", extra)
        stager.select_all("pt", candidates)
        assert stager.is_selected("pt", extra)
        assert stager.total_selected() == len(candidates) + 1

    def test_toggle_all_selects_then_deselects(self, stager: SelectionStager, candidates):
        assert stager.toggle_all("pt", candidates) is True
        assert stager.total_selected() == len(candidates)
        assert stager.toggle_all("pt", candidates) is False
        assert stager.total_selected() == 0

    def test_toggle_all_with_partial_selection_selects(self, stager: SelectionStager, candidates):
        stager.toggle("pt", candidates[0])
        assert stager.toggle_all("pt", candidates) is True
        assert stager.total_selected() == len(candidates)

    def test_deselect_all_only_touches_given(self, stager: SelectionStager, candidates):
        stager.select_all("pt", candidates)
        stager.deselect_all("pt", candidates[:2])
        assert stager.total_selected() == len(candidates) - 2

    def test_deselect_unknown_track(self, stager: SelectionStager, candidates):
        stager.deselect_all("speech", candidates)
        assert stager.total_selected() == 0


class TestClearAndSnapshot:
    def test_clear_one_track(self, stager: SelectionStager):
        stager.toggle("pt", _make_slot())
        stager.toggle("ot", _make_slot(therapist_id="th-2"))
        stager.clear("pt")
        assert stager.tracks() == ["ot"]
        assert stager.selected("pt") == []

    def test_clear_all(self, stager: SelectionStager, candidates):
        stager.select_all("pt", candidates)
        stager.select_all("ot", candidates)
        stager.clear_all()
        assert len(stager) == 0
        assert stager.selection_set() == {}

    def test_selection_set_skips_empty_tracks(self, stager: SelectionStager):
        slot = _make_slot()
        stager.toggle("pt", slot)
        stager.toggle("ot", slot)
        stager.toggle("ot", slot)
        assert list(stager.selection_set()) == ["pt"]

    def test_selection_set_is_a_snapshot(self, stager: SelectionStager):
        stager.toggle("pt", _make_slot())
        snapshot = stager.selection_set()
        stager.clear_all()
        assert len(snapshot["pt"]) == 1

    def test_sorted_slots(self, stager: SelectionStager):
        stager.toggle("pt", _make_slot(day=5, hour=9))
        stager.toggle("ot", _make_slot(day=3, hour=14))
        stager.toggle("pt", _make_slot(day=3, hour=9))

        ordered = [(t, s.date.day, s.time.hour) for t, s in stager.sorted_slots()]
        assert ordered == [("pt", 3, 9), ("ot", 3, 14), ("pt", 5, 9)]

    def test_key_matches_slot_key(self):
        slot = _make_slot(track_id="ot")
        assert slot.key == SlotKey("ot", date(2025, 3, 3), time(9, 0), "th-1")
