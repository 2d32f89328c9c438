"""In-memory staging of selected candidate slots, grouped by track."""

from typing import Iterable

from clinic_os.scheduling.models import CandidateSlot, SlotKey


class SelectionStager:
    """Accumulates chosen slots per track (discipline) before commit.

    Membership is by :class:`SlotKey`, so selecting the same slot twice in a
    track keeps a single entry. Insertion order is preserved per track.
    """

    def __init__(self) -> None:
        self._tracks: dict[str, dict[SlotKey, CandidateSlot]] = {}

    def toggle(self, track_id: str, slot: CandidateSlot) -> bool:
        """Add *slot* if absent, remove it if present. Returns new membership."""
        selected = self._tracks.setdefault(track_id, {})
        key = SlotKey.for_slot(track_id, slot)
        if key in selected:
            del selected[key]
            return False
        selected[key] = slot
        return True

    def select_all(self, track_id: str, candidates: Iterable[CandidateSlot]) -> None:
        selected = self._tracks.setdefault(track_id, {})
        for slot in candidates:
            selected.setdefault(SlotKey.for_slot(track_id, slot), slot)

    def deselect_all(self, track_id: str, candidates: Iterable[CandidateSlot]) -> None:
        selected = self._tracks.get(track_id)
        if not selected:
            return
        for slot in candidates:
            selected.pop(SlotKey.for_slot(track_id, slot), None)

    def toggle_all(self, track_id: str, candidates: Iterable[CandidateSlot]) -> bool:
        """Select every candidate, or deselect them all if all were selected.

        Returns True when the candidates end up selected.
        """
        candidates = list(candidates)
        if candidates and all(self.is_selected(track_id, s) for s in candidates):
            self.deselect_all(track_id, candidates)
            return False
        self.select_all(track_id, candidates)
        return True

    def clear(self, track_id: str) -> None:
        self._tracks.pop(track_id, None)

    def clear_all(self) -> None:
        self._tracks.clear()

    def is_selected(self, track_id: str, slot: CandidateSlot) -> bool:
        return SlotKey.for_slot(track_id, slot) in self._tracks.get(track_id, {})

    def selected(self, track_id: str) -> list[CandidateSlot]:
        return list(self._tracks.get(track_id, {}).values())

    def tracks(self) -> list[str]:
        """Tracks with at least one selected slot."""
        return [t for t, slots in self._tracks.items() if slots]

    def total_selected(self) -> int:
        """Number of staged slots across all tracks; commit needs at least one."""
        return sum(len(slots) for slots in self._tracks.values())

    def selection_set(self) -> dict[str, list[CandidateSlot]]:
        """Snapshot of the staged selection, safe to hand to the committer."""
        return {t: list(slots.values()) for t, slots in self._tracks.items() if slots}

    def sorted_slots(self) -> list[tuple[str, CandidateSlot]]:
        """Every staged ``(track_id, slot)`` ordered by date then time."""
        pairs = [(t, s) for t, slots in self._tracks.items() for s in slots.values()]
        return sorted(pairs, key=lambda p: (p[1].date, p[1].time, p[0], p[1].therapist_id))

    def __len__(self) -> int:
        return self.total_selected()
