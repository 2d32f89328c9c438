"""Occurrence generation for recurring appointments.

All functions are pure: the same ``(anchor_date, rule)`` always yields the
same dates, and nothing here reads the wall clock. Indefinite rules produce
unbounded iterators, so callers bound them with :meth:`take`,
:meth:`generate_from` or a materialization horizon.
"""

import logging
import uuid
from datetime import date, timedelta
from itertools import count, dropwhile, islice
from typing import Iterator, Optional

from dateutil.relativedelta import relativedelta

from clinic_os.scheduling.errors import InvalidRuleError
from clinic_os.scheduling.models import (
    MAX_OCCURRENCES,
    AfterCount,
    CandidateSlot,
    OccurrenceStatus,
    OnDate,
    Occurrence,
    RecurrencePattern,
    RecurrenceRule,
    Series,
)

logger = logging.getLogger(__name__)


def step_date(anchor_date: date, pattern: RecurrencePattern, index: int) -> date:
    """Return the date of occurrence *index* counted from *anchor_date*.

    Monthly steps are always taken from the anchor, so a day clamped to the
    end of a short month does not drift the rest of the series
    (01-31 -> 02-29 -> 03-31).
    """
    if pattern == RecurrencePattern.WEEKLY:
        return anchor_date + timedelta(weeks=index)
    if pattern == RecurrencePattern.BIWEEKLY:
        return anchor_date + timedelta(weeks=2 * index)
    # relativedelta clamps to the last day of shorter months
    return anchor_date + relativedelta(months=index)


def step_within_range(
    anchor_date: date, pattern: RecurrencePattern, index: int
) -> Optional[date]:
    """Like :func:`step_date` but None when the step passes ``date.max``."""
    try:
        return step_date(anchor_date, pattern, index)
    except (OverflowError, ValueError):
        return None


def rule_end_date(anchor_date: date, rule: RecurrenceRule) -> Optional[date]:
    """Latest date *rule* can reach from *anchor_date*; None when unbounded."""
    end = rule.end_condition
    if isinstance(end, OnDate):
        return end.date
    if isinstance(end, AfterCount):
        return step_within_range(anchor_date, rule.pattern, max(end.count - 1, 0))
    return None


class OccurrenceGenerator:
    """Expands a recurrence rule into dates and materialized series."""

    def __init__(self, max_occurrences: int = MAX_OCCURRENCES) -> None:
        self.max_occurrences = max_occurrences

    # ------------------------------------------------------------------
    # Date sequences
    # ------------------------------------------------------------------

    def validate(self, anchor_date: date, rule: RecurrenceRule) -> None:
        """Raise InvalidRuleError for a malformed rule or one that exceeds the cap.

        An onDate rule counts against the cap too: its end date may not admit
        more than ``max_occurrences`` dates from *anchor_date*.
        """
        rule.ensure_valid(anchor_date, max_occurrences=self.max_occurrences)
        end = rule.end_condition
        if isinstance(end, OnDate):
            first_over = step_within_range(anchor_date, rule.pattern, self.max_occurrences)
            if first_over is not None and first_over <= end.date:
                raise InvalidRuleError(
                    f"End date {end.date.isoformat()} allows more than "
                    f"{self.max_occurrences} occurrences",
                    rule=rule,
                    anchor_date=anchor_date,
                )

    def generate(self, anchor_date: date, rule: RecurrenceRule) -> Iterator[date]:
        """Return a lazy iterator over the occurrence dates of *rule*.

        The rule is validated before the iterator is returned, so a malformed
        rule raises here and not on first ``next()``.
        """
        self.validate(anchor_date, rule)
        return (d for _, d in self._indexed(anchor_date, rule))

    def indexed(self, anchor_date: date, rule: RecurrenceRule) -> Iterator[tuple[int, date]]:
        """Like :meth:`generate` but yields ``(sequence_index, date)`` pairs."""
        self.validate(anchor_date, rule)
        return self._indexed(anchor_date, rule)

    def take(self, anchor_date: date, rule: RecurrenceRule, limit: int) -> list[date]:
        """First *limit* dates of the sequence (fewer if the rule ends sooner)."""
        if limit < 0:
            raise ValueError(f"limit must be non-negative, got {limit}")
        return list(islice(self.generate(anchor_date, rule), limit))

    def generate_from(
        self,
        anchor_date: date,
        rule: RecurrenceRule,
        cursor: date,
        n: int,
    ) -> list[date]:
        """The next *n* dates strictly after *cursor*, honouring termination."""
        if n < 0:
            raise ValueError(f"n must be non-negative, got {n}")
        after = dropwhile(lambda d: d <= cursor, self.generate(anchor_date, rule))
        return list(islice(after, n))

    def nth(self, anchor_date: date, rule: RecurrenceRule, index: int) -> Optional[date]:
        """Date of occurrence *index*, or None if the rule ends before it."""
        if index < 0:
            raise ValueError(f"index must be non-negative, got {index}")
        return next(islice(self.generate(anchor_date, rule), index, None), None)

    def index_of(self, anchor_date: date, rule: RecurrenceRule, day: date) -> Optional[int]:
        """Sequence index of *day*, or None if *day* is not an occurrence."""
        for index, d in self.indexed(anchor_date, rule):
            if d == day:
                return index
            if d > day:
                return None
        return None

    def remaining_count(
        self,
        anchor_date: date,
        rule: RecurrenceRule,
        reference_date: date,
    ) -> Optional[int]:
        """How many occurrences fall on or after *reference_date*.

        Equals ``len(generate(...)) - sequence_index(reference_date)`` when
        *reference_date* is an occurrence. Indefinite rules have no finite
        count and return None.
        """
        if rule.is_indefinite:
            self.validate(anchor_date, rule)
            return None
        return sum(1 for d in self.generate(anchor_date, rule) if d >= reference_date)

    def _indexed(self, anchor_date: date, rule: RecurrenceRule) -> Iterator[tuple[int, date]]:
        end = rule.end_condition
        for index in count():
            if isinstance(end, AfterCount) and index >= end.count:
                return
            current = step_within_range(anchor_date, rule.pattern, index)
            if current is None:
                return
            if isinstance(end, OnDate) and current > end.date:
                return
            yield index, current

    # ------------------------------------------------------------------
    # Series materialization
    # ------------------------------------------------------------------

    def materialize(
        self,
        slot: CandidateSlot,
        rule: RecurrenceRule,
        series_id: Optional[str] = None,
        horizon: Optional[date] = None,
        patient_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Series:
        """Build a series anchored at *slot*.

        Finite rules are materialized completely. Indefinite rules need a
        *horizon*: occurrences up to and including it are created and the
        rest can be appended later with :meth:`extend`.
        """
        if rule.is_indefinite and horizon is None:
            raise InvalidRuleError(
                "An indefinite rule needs a materialization horizon",
                rule=rule,
                anchor_date=slot.date,
            )
        series_id = series_id or str(uuid.uuid4())
        anchor = Occurrence(
            series_id=series_id,
            sequence_index=0,
            date=slot.date,
            time=slot.time,
            duration_minutes=slot.duration_minutes,
            therapist_id=slot.therapist_id,
            room_id=slot.room_id,
            track_id=slot.track_id,
            patient_id=patient_id,
            notes=notes,
        )
        occurrences = []
        for index, d in self.indexed(slot.date, rule):
            if index > 0 and rule.is_indefinite and d > horizon:
                break
            occurrences.append(_follow(anchor, index, d))

        logger.debug(
            "Materialized series %s: %d occurrences from %s (%s)",
            series_id, len(occurrences), slot.date, rule.pattern.value,
        )
        return Series(series_id=series_id, recurrence_rule=rule, occurrences=occurrences)

    def extend(self, series: Series, until: date) -> Series:
        """Append occurrences after the last materialized one, up to *until*.

        Never goes past the rule's own end condition, so a series whose
        recurrence was ended stops growing. Returns a new series.
        """
        last = series.occurrences[-1]
        added = []
        for index, d in self.indexed(series.anchor.date, series.recurrence_rule):
            if index <= last.sequence_index:
                continue
            if d > until:
                break
            added.append(_follow(series.anchor, index, d))

        if not added:
            return series
        logger.debug("Extended series %s by %d occurrences", series.series_id, len(added))
        return series.model_copy(update={"occurrences": [*series.occurrences, *added]})


def _follow(anchor: Occurrence, index: int, day: date) -> Occurrence:
    """A fresh scheduled occurrence cloned from the anchor's slot details."""
    return anchor.model_copy(
        update={
            "occurrence_id": None,
            "sequence_index": index,
            "date": day,
            "status": OccurrenceStatus.SCHEDULED,
            "cancel_reason": None,
        }
    )
