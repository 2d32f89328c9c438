"""Cancel, pause, resume and end operations over a live series.

Every operation takes already-confirmed intent, validates its arguments
before touching anything, and returns a :class:`LifecycleResult` holding a
new Series plus only the occurrences whose status changed. The caller's
Series is never mutated; the store persists ``result.changes``.

Per-occurrence transitions::

    scheduled -> cancelled | paused
    paused    -> scheduled | cancelled
    cancelled    (terminal)
"""

import logging
from datetime import date
from typing import Callable, Iterable, Optional

from clinic_os.scheduling.errors import InvalidOperationError
from clinic_os.scheduling.models import (
    LifecycleResult,
    ManageAction,
    Occurrence,
    OccurrenceStatus,
    OnDate,
    RecurrenceAction,
    Series,
    StatusChange,
    TerminationResult,
)
from clinic_os.scheduling.recurrence import rule_end_date

logger = logging.getLogger(__name__)

_ALLOWED: dict[OccurrenceStatus, set[OccurrenceStatus]] = {
    OccurrenceStatus.SCHEDULED: {OccurrenceStatus.CANCELLED, OccurrenceStatus.PAUSED},
    OccurrenceStatus.PAUSED: {OccurrenceStatus.SCHEDULED, OccurrenceStatus.CANCELLED},
    OccurrenceStatus.CANCELLED: set(),
}


def can_transition(current: OccurrenceStatus, target: OccurrenceStatus) -> bool:
    return target in _ALLOWED[current]


def _check_range(operation: str, start: date, end: date) -> None:
    if start > end:
        raise InvalidOperationError(
            f"{operation}: start date {start.isoformat()} is after end date {end.isoformat()}",
            operation=operation,
            start=start,
            end=end,
        )


def _transition(
    occurrences: Iterable[Occurrence],
    selector: Callable[[Occurrence], bool],
    target: OccurrenceStatus,
    reason: Optional[str] = None,
) -> tuple[list[Occurrence], list[StatusChange]]:
    """Move every selected occurrence that may legally reach *target*."""
    updated: list[Occurrence] = []
    changes: list[StatusChange] = []
    for occ in occurrences:
        if selector(occ) and can_transition(occ.status, target):
            update: dict = {"status": target}
            if target == OccurrenceStatus.CANCELLED and reason:
                update["cancel_reason"] = reason
            changes.append(
                StatusChange(
                    occurrence_id=occ.occurrence_id,
                    series_id=occ.series_id,
                    sequence_index=occ.sequence_index,
                    date=occ.date,
                    previous_status=occ.status,
                    new_status=target,
                    reason=reason,
                )
            )
            occ = occ.model_copy(update=update)
        updated.append(occ)
    return updated, changes


class SeriesLifecycleManager:
    """Applies lifecycle operations to a series and reports the diff."""

    def _apply(
        self,
        operation: str,
        series: Series,
        selector: Callable[[Occurrence], bool],
        target: OccurrenceStatus,
        reason: Optional[str] = None,
    ) -> LifecycleResult:
        occurrences, changes = _transition(series.occurrences, selector, target, reason)
        logger.debug(
            "%s on series %s: %d of %d occurrences changed",
            operation, series.series_id, len(changes), len(occurrences),
        )
        return LifecycleResult(
            series=series.model_copy(update={"occurrences": occurrences}),
            changes=changes,
        )

    def cancel_single(
        self, series: Series, reference_date: date, reason: Optional[str] = None
    ) -> LifecycleResult:
        return self._apply(
            "cancel_single", series,
            lambda o: o.date == reference_date,
            OccurrenceStatus.CANCELLED, reason,
        )

    def cancel_future(
        self, series: Series, reference_date: date, reason: Optional[str] = None
    ) -> LifecycleResult:
        """Cancel the occurrence on *reference_date* and everything after it."""
        return self._apply(
            "cancel_future", series,
            lambda o: o.date >= reference_date,
            OccurrenceStatus.CANCELLED, reason,
        )

    def cancel_upcoming(
        self, series: Series, today: date, reason: Optional[str] = None
    ) -> LifecycleResult:
        """Cancel everything from *today* on; earlier sessions are left alone."""
        return self.cancel_future(series, today, reason)

    def cancel_range(
        self, series: Series, start: date, end: date, reason: Optional[str] = None
    ) -> LifecycleResult:
        _check_range("cancel_range", start, end)
        return self._apply(
            "cancel_range", series,
            lambda o: start <= o.date <= end,
            OccurrenceStatus.CANCELLED, reason,
        )

    def end_recurrence(self, series: Series, last_date: date) -> LifecycleResult:
        """Keep occurrences up to *last_date* and stop the series there.

        Occurrences after *last_date* are cancelled and the rule's end
        condition becomes ``onDate(last_date)``, so later materialization of
        the series stops at the same point. A rule that already ends on or
        before *last_date* is left alone: ending a series never lengthens it.
        """
        if last_date < series.anchor.date:
            raise InvalidOperationError(
                f"end_recurrence: last date {last_date.isoformat()} is before the "
                f"series anchor {series.anchor.date.isoformat()}",
                operation="end_recurrence",
                end=last_date,
            )
        result = self._apply(
            "end_recurrence", series,
            lambda o: o.date > last_date,
            OccurrenceStatus.CANCELLED,
        )
        current_end = rule_end_date(series.anchor.date, series.recurrence_rule)
        if current_end is not None and current_end <= last_date:
            return result
        end_condition = OnDate(date=last_date)
        rule = series.recurrence_rule.model_copy(update={"end_condition": end_condition})
        return result.model_copy(
            update={
                "series": result.series.model_copy(update={"recurrence_rule": rule}),
                "end_condition": end_condition,
            }
        )

    def pause(
        self, series: Series, start: date, end: date, reason: Optional[str] = None
    ) -> LifecycleResult:
        """Pause scheduled occurrences in ``[start, end]``. Cancelled ones stay cancelled."""
        _check_range("pause", start, end)
        return self._apply(
            "pause", series,
            lambda o: o.status == OccurrenceStatus.SCHEDULED and start <= o.date <= end,
            OccurrenceStatus.PAUSED, reason,
        )

    def resume(self, series: Series, start: date, end: date) -> LifecycleResult:
        """Return paused occurrences in ``[start, end]`` to scheduled."""
        _check_range("resume", start, end)
        return self._apply(
            "resume", series,
            lambda o: o.status == OccurrenceStatus.PAUSED and start <= o.date <= end,
            OccurrenceStatus.SCHEDULED,
        )

    def manage(self, series: Series, request: ManageAction) -> LifecycleResult:
        """Dispatch a :class:`ManageAction`, checking it carries the dates it needs."""
        action = request.action

        def need(value: Optional[date], name: str) -> date:
            if value is None:
                raise InvalidOperationError(
                    f"{action.value} requires {name}", operation=action.value
                )
            return value

        if action == RecurrenceAction.CANCEL_SINGLE:
            ref = need(request.reference_date or request.start_date, "reference_date")
            return self.cancel_single(series, ref, request.reason)
        if action == RecurrenceAction.CANCEL_FUTURE:
            ref = need(request.reference_date or request.start_date, "reference_date")
            return self.cancel_future(series, ref, request.reason)
        if action == RecurrenceAction.CANCEL_RANGE:
            return self.cancel_range(
                series,
                need(request.start_date, "start_date"),
                need(request.end_date, "end_date"),
                request.reason,
            )
        if action == RecurrenceAction.END_RECURRENCE:
            return self.end_recurrence(series, need(request.end_date, "end_date"))
        if action == RecurrenceAction.PAUSE:
            return self.pause(
                series,
                need(request.start_date, "start_date"),
                need(request.end_date, "end_date"),
                request.reason,
            )
        return self.resume(
            series,
            need(request.start_date, "start_date"),
            need(request.end_date, "end_date"),
        )

    def terminate_treatment(
        self,
        occurrences: Iterable[Occurrence],
        today: date,
        reason: Optional[str] = None,
    ) -> TerminationResult:
        """Cancel every active session on or after *today*, across series.

        Used when a patient's treatment ends; standalone bookings are
        included. Sessions before *today* are never touched.
        """
        occurrences = list(occurrences)
        updated, changes = _transition(
            occurrences,
            lambda o: o.date >= today,
            OccurrenceStatus.CANCELLED,
            reason,
        )
        hit = [new for old, new in zip(occurrences, updated) if old.status != new.status]
        tracks = sorted({o.track_id for o in hit if o.track_id})
        therapists = sorted({o.therapist_id for o in hit})

        logger.info(
            "Treatment terminated from %s: %d sessions cancelled across %d tracks",
            today, len(changes), len(tracks),
        )
        return TerminationResult(
            occurrences=updated,
            changes=changes,
            tracks_affected=tracks,
            therapists_affected=therapists,
        )
