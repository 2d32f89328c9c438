"""Pydantic models for the recurrence and slot-selection engine."""

from dataclasses import dataclass
from datetime import date, time
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from clinic_os.scheduling.errors import InvalidRuleError

# Hard cap on afterCount rules: roughly ten years of weekly sessions.
MAX_OCCURRENCES = 520


class RecurrencePattern(str, Enum):
    """How far apart consecutive occurrences are."""

    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class OccurrenceStatus(str, Enum):
    """Occurrence lifecycle statuses."""

    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"
    PAUSED = "paused"


# ----------------------------------------------------------------------
# Recurrence rule
# ----------------------------------------------------------------------


class OnDate(BaseModel):
    """Series ends on (and includes) a given date."""

    kind: Literal["onDate"] = "onDate"
    date: date


class AfterCount(BaseModel):
    """Series ends after a fixed number of occurrences, anchor included."""

    kind: Literal["afterCount"] = "afterCount"
    count: int


class Indefinite(BaseModel):
    """Series has no end; callers must bound any materialization."""

    kind: Literal["indefinite"] = "indefinite"


EndCondition = Annotated[Union[OnDate, AfterCount, Indefinite], Field(discriminator="kind")]


class RecurrenceRule(BaseModel):
    """Repeat pattern plus termination condition."""

    pattern: RecurrencePattern
    end_condition: EndCondition = Field(default_factory=Indefinite)

    @classmethod
    def after_count(cls, pattern: RecurrencePattern, count: int) -> "RecurrenceRule":
        return cls(pattern=pattern, end_condition=AfterCount(count=count))

    @classmethod
    def until(cls, pattern: RecurrencePattern, end_date: date) -> "RecurrenceRule":
        return cls(pattern=pattern, end_condition=OnDate(date=end_date))

    @classmethod
    def indefinite(cls, pattern: RecurrencePattern) -> "RecurrenceRule":
        return cls(pattern=pattern, end_condition=Indefinite())

    @property
    def is_indefinite(self) -> bool:
        return isinstance(self.end_condition, Indefinite)

    def ensure_valid(
        self,
        anchor_date: Optional[date] = None,
        max_occurrences: int = MAX_OCCURRENCES,
    ) -> "RecurrenceRule":
        """Raise InvalidRuleError if the rule is malformed.

        The end-date check needs an anchor and is skipped when none is given.
        """
        end = self.end_condition
        if isinstance(end, AfterCount):
            if end.count < 1:
                raise InvalidRuleError(
                    f"Occurrence count must be at least 1, got {end.count}",
                    rule=self,
                    anchor_date=anchor_date,
                )
            if end.count > max_occurrences:
                raise InvalidRuleError(
                    f"Occurrence count {end.count} exceeds the limit of {max_occurrences}",
                    rule=self,
                    anchor_date=anchor_date,
                )
        elif isinstance(end, OnDate) and anchor_date is not None and end.date < anchor_date:
            raise InvalidRuleError(
                f"End date {end.date.isoformat()} is before the anchor date "
                f"{anchor_date.isoformat()}",
                rule=self,
                anchor_date=anchor_date,
            )
        return self


# ----------------------------------------------------------------------
# Slots and occurrences
# ----------------------------------------------------------------------


@dataclass(frozen=True, order=True)
class SlotKey:
    """Identity of a candidate slot within a track."""

    track_id: str
    date: date
    time: time
    therapist_id: str

    @classmethod
    def for_slot(cls, track_id: str, slot: "CandidateSlot") -> "SlotKey":
        return cls(track_id, slot.date, slot.time, slot.therapist_id)


class CandidateSlot(BaseModel):
    """A bookable slot suggested by the availability search."""

    track_id: str
    date: date
    time: time
    duration_minutes: int = Field(default=60, gt=0)
    therapist_id: str
    room_id: Optional[str] = None
    has_specialty: bool = False
    is_preferred: bool = False

    @property
    def key(self) -> SlotKey:
        return SlotKey.for_slot(self.track_id, self)


class Occurrence(BaseModel):
    """A single dated session, standalone or part of a series."""

    occurrence_id: Optional[str] = None
    series_id: Optional[str] = None
    sequence_index: int = Field(default=0, ge=0)
    date: date
    time: time
    duration_minutes: int = Field(default=60, gt=0)
    therapist_id: str
    room_id: Optional[str] = None
    track_id: Optional[str] = None
    patient_id: Optional[str] = None
    status: OccurrenceStatus = OccurrenceStatus.SCHEDULED
    cancel_reason: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_active(self) -> bool:
        """Scheduled or paused occurrences still hold their slot."""
        return self.status != OccurrenceStatus.CANCELLED


class Series(BaseModel):
    """A recurring appointment and its materialized occurrences."""

    series_id: str
    recurrence_rule: RecurrenceRule
    occurrences: list[Occurrence]

    @model_validator(mode="after")
    def _check_ordering(self) -> "Series":
        if not self.occurrences:
            raise ValueError("A series needs at least its anchor occurrence")
        if self.occurrences[0].sequence_index != 0:
            raise ValueError("The first occurrence of a series must have sequence_index 0")
        for prev, curr in zip(self.occurrences, self.occurrences[1:]):
            if curr.sequence_index <= prev.sequence_index or curr.date <= prev.date:
                raise ValueError(
                    "Occurrences must be strictly increasing by sequence_index and date "
                    f"(index {prev.sequence_index} on {prev.date} then "
                    f"{curr.sequence_index} on {curr.date})"
                )
        for occ in self.occurrences:
            if occ.series_id is not None and occ.series_id != self.series_id:
                raise ValueError(
                    f"Occurrence {occ.sequence_index} belongs to series {occ.series_id}"
                )
        return self

    @property
    def anchor(self) -> Occurrence:
        return self.occurrences[0]

    def occurrence_on(self, day: date) -> Optional[Occurrence]:
        return next((o for o in self.occurrences if o.date == day), None)


# ----------------------------------------------------------------------
# Lifecycle
# ----------------------------------------------------------------------


class RecurrenceAction(str, Enum):
    """Mutations that can be applied to a live series."""

    CANCEL_SINGLE = "cancel_single"
    CANCEL_FUTURE = "cancel_future"
    CANCEL_RANGE = "cancel_range"
    END_RECURRENCE = "end_recurrence"
    PAUSE = "pause"
    RESUME = "resume"


class ManageAction(BaseModel):
    """An already-confirmed request to mutate a series.

    ``reference_date`` is the occurrence the user acted on (cancel_single,
    cancel_future). ``start_date``/``end_date`` bound range operations;
    end_recurrence uses ``end_date`` as the last kept date.
    """

    action: RecurrenceAction
    reference_date: Optional[date] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    reason: Optional[str] = None


class StatusChange(BaseModel):
    """One row whose status changed; what the store must persist."""

    occurrence_id: Optional[str] = None
    series_id: Optional[str] = None
    sequence_index: int
    date: date
    previous_status: OccurrenceStatus
    new_status: OccurrenceStatus
    reason: Optional[str] = None


class LifecycleResult(BaseModel):
    """Updated series plus only the occurrences whose status changed."""

    series: Series
    changes: list[StatusChange] = []
    end_condition: Optional[EndCondition] = None

    @property
    def affected_dates(self) -> list[date]:
        return [c.date for c in self.changes]

    def _count(self, status: OccurrenceStatus) -> int:
        return sum(1 for c in self.changes if c.new_status == status)

    @property
    def cancelled_count(self) -> int:
        return self._count(OccurrenceStatus.CANCELLED)

    @property
    def paused_count(self) -> int:
        return self._count(OccurrenceStatus.PAUSED)

    @property
    def resumed_count(self) -> int:
        return sum(
            1
            for c in self.changes
            if c.previous_status == OccurrenceStatus.PAUSED
            and c.new_status == OccurrenceStatus.SCHEDULED
        )


class TerminationResult(BaseModel):
    """Outcome of cancelling every upcoming session of a patient."""

    occurrences: list[Occurrence] = []
    changes: list[StatusChange] = []
    tracks_affected: list[str] = []
    therapists_affected: list[str] = []

    @property
    def cancelled_count(self) -> int:
        return len(self.changes)


# ----------------------------------------------------------------------
# Commit
# ----------------------------------------------------------------------


class CreateSingleAppointmentRequest(BaseModel):
    """Book one standalone appointment (no series)."""

    kind: Literal["single"] = "single"
    slot_key: SlotKey
    slot: CandidateSlot
    patient_id: Optional[str] = None
    notes: Optional[str] = None


class CreateSeriesRequest(BaseModel):
    """Book a recurring series anchored at the slot's date."""

    kind: Literal["series"] = "series"
    slot_key: SlotKey
    slot: CandidateSlot
    recurrence_rule: RecurrenceRule
    patient_id: Optional[str] = None
    notes: Optional[str] = None

    @property
    def anchor_date(self) -> date:
        return self.slot.date


BookingRequest = Union[CreateSingleAppointmentRequest, CreateSeriesRequest]


class BookingReceipt(BaseModel):
    """What the store returns for a successful create."""

    series_id: Optional[str] = None
    occurrence_ids: list[str] = []


class CommitOutcome(str, Enum):
    CREATED = "created"
    CONFLICT = "conflict"
    FAILED = "failed"


class CommitItemResult(BaseModel):
    """Result of one create request, keyed by the slot it came from."""

    slot_key: SlotKey
    request_kind: Literal["single", "series"]
    outcome: CommitOutcome
    series_id: Optional[str] = None
    occurrence_ids: list[str] = []
    error: Optional[str] = None


class CommitReport(BaseModel):
    """Per-slot results of a batch commit, in request order."""

    results: list[CommitItemResult] = []

    def _with(self, outcome: CommitOutcome) -> list[CommitItemResult]:
        return [r for r in self.results if r.outcome == outcome]

    @property
    def succeeded(self) -> list[CommitItemResult]:
        return self._with(CommitOutcome.CREATED)

    @property
    def conflicts(self) -> list[CommitItemResult]:
        return self._with(CommitOutcome.CONFLICT)

    @property
    def failed(self) -> list[CommitItemResult]:
        return self._with(CommitOutcome.FAILED)

    def by_key(self, key: SlotKey) -> Optional[CommitItemResult]:
        return next((r for r in self.results if r.slot_key == key), None)
