"""CRUD repositories for series and occurrences."""

from __future__ import annotations

import uuid
from datetime import date, datetime, time, timezone
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_os.core.models import ACTIVE_STATUSES, OccurrenceDB, SeriesDB
from clinic_os.scheduling.models import (
    AfterCount,
    CandidateSlot,
    EndCondition,
    Indefinite,
    Occurrence,
    OccurrenceStatus,
    OnDate,
    RecurrencePattern,
    RecurrenceRule,
    Series,
    StatusChange,
)


# ---------------------------------------------------------------------------
# Row <-> domain conversion
# ---------------------------------------------------------------------------

def end_condition_columns(end: EndCondition) -> dict[str, Any]:
    return {
        "end_kind": end.kind,
        "end_date": end.date if isinstance(end, OnDate) else None,
        "end_count": end.count if isinstance(end, AfterCount) else None,
    }


def rule_from_row(row: SeriesDB) -> RecurrenceRule:
    if row.end_kind == "onDate":
        end: EndCondition = OnDate(date=row.end_date)
    elif row.end_kind == "afterCount":
        end = AfterCount(count=row.end_count)
    else:
        end = Indefinite()
    return RecurrenceRule(pattern=RecurrencePattern(row.pattern), end_condition=end)


def occurrence_from_row(row: OccurrenceDB) -> Occurrence:
    return Occurrence(
        occurrence_id=str(row.id),
        series_id=str(row.series_id) if row.series_id else None,
        sequence_index=row.sequence_index,
        date=row.scheduled_date,
        time=row.scheduled_time,
        duration_minutes=row.duration_minutes,
        therapist_id=row.therapist_id,
        room_id=row.room_id,
        track_id=row.track_id,
        patient_id=row.patient_id,
        status=OccurrenceStatus(row.status),
        cancel_reason=row.cancel_reason,
        notes=row.notes,
    )


def series_from_row(row: SeriesDB) -> Series:
    return Series(
        series_id=str(row.id),
        recurrence_rule=rule_from_row(row),
        occurrences=[occurrence_from_row(o) for o in row.occurrences],
    )


def _occurrence_row(occ: Occurrence, series_id: Optional[uuid.UUID] = None) -> OccurrenceDB:
    return OccurrenceDB(
        series_id=series_id,
        sequence_index=occ.sequence_index,
        patient_id=occ.patient_id,
        track_id=occ.track_id,
        therapist_id=occ.therapist_id,
        room_id=occ.room_id,
        scheduled_date=occ.date,
        scheduled_time=occ.time,
        duration_minutes=occ.duration_minutes,
        status=occ.status.value,
        cancel_reason=occ.cancel_reason,
        notes=occ.notes,
    )


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------

class SeriesRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, series: Series, notes: Optional[str] = None) -> SeriesDB:
        """Persist a materialized series with all of its occurrences."""
        anchor = series.anchor
        row = SeriesDB(
            id=uuid.UUID(series.series_id),
            patient_id=anchor.patient_id,
            track_id=anchor.track_id or "",
            therapist_id=anchor.therapist_id,
            pattern=series.recurrence_rule.pattern.value,
            anchor_date=anchor.date,
            notes=notes,
            **end_condition_columns(series.recurrence_rule.end_condition),
        )
        row.occurrences = [_occurrence_row(o, row.id) for o in series.occurrences]
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_by_id(self, series_id: uuid.UUID) -> Optional[SeriesDB]:
        return await self.session.get(SeriesDB, series_id)

    async def list_by_patient(self, patient_id: str) -> Sequence[SeriesDB]:
        stmt = (
            select(SeriesDB)
            .where(SeriesDB.patient_id == patient_id)
            .order_by(SeriesDB.anchor_date)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def update_end_condition(self, series_id: uuid.UUID, end: EndCondition) -> Optional[SeriesDB]:
        row = await self.get_by_id(series_id)
        if not row:
            return None
        for key, value in end_condition_columns(end).items():
            setattr(row, key, value)
        row.updated_at = datetime.now(timezone.utc)
        await self.session.flush()
        return row

    async def append_occurrences(self, row: SeriesDB, occurrences: Iterable[Occurrence]) -> list[OccurrenceDB]:
        new_rows = [_occurrence_row(o, row.id) for o in occurrences]
        row.occurrences.extend(new_rows)
        await self.session.flush()
        return new_rows


class OccurrenceRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_from_domain(self, occ: Occurrence) -> OccurrenceDB:
        row = _occurrence_row(occ)
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_by_id(self, occurrence_id: uuid.UUID) -> Optional[OccurrenceDB]:
        return await self.session.get(OccurrenceDB, occurrence_id)

    async def list_by_series(self, series_id: uuid.UUID) -> Sequence[OccurrenceDB]:
        stmt = (
            select(OccurrenceDB)
            .where(OccurrenceDB.series_id == series_id)
            .order_by(OccurrenceDB.sequence_index)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_for_patient(
        self, patient_id: str, from_date: Optional[date] = None
    ) -> Sequence[OccurrenceDB]:
        stmt = select(OccurrenceDB).where(OccurrenceDB.patient_id == patient_id)
        if from_date is not None:
            stmt = stmt.where(OccurrenceDB.scheduled_date >= from_date)
        stmt = stmt.order_by(OccurrenceDB.scheduled_date, OccurrenceDB.scheduled_time)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def find_conflict(
        self, therapist_id: str, day: date, at: time
    ) -> Optional[OccurrenceDB]:
        """Active occurrence already holding the therapist's slot, if any."""
        stmt = (
            select(OccurrenceDB)
            .where(
                OccurrenceDB.therapist_id == therapist_id,
                OccurrenceDB.scheduled_date == day,
                OccurrenceDB.scheduled_time == at,
                OccurrenceDB.status.in_(ACTIVE_STATUSES),
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def check_conflict(self, therapist_id: str, day: date, at: time) -> bool:
        return await self.find_conflict(therapist_id, day, at) is not None

    async def patient_conflicts(
        self, patient_id: str, slots: Iterable[CandidateSlot]
    ) -> list[tuple[CandidateSlot, OccurrenceDB]]:
        """Slots at which the patient already has an active session."""
        conflicts: list[tuple[CandidateSlot, OccurrenceDB]] = []
        for slot in slots:
            stmt = (
                select(OccurrenceDB)
                .where(
                    OccurrenceDB.patient_id == patient_id,
                    OccurrenceDB.scheduled_date == slot.date,
                    OccurrenceDB.scheduled_time == slot.time,
                    OccurrenceDB.status.in_(ACTIVE_STATUSES),
                )
                .limit(1)
            )
            existing = (await self.session.execute(stmt)).scalar_one_or_none()
            if existing is not None:
                conflicts.append((slot, existing))
        return conflicts

    async def apply_status_changes(self, changes: Iterable[StatusChange]) -> int:
        """Persist every change; a change whose row is missing raises LookupError."""
        updated = 0
        now = datetime.now(timezone.utc)
        for change in changes:
            row = await self._row_for(change)
            if row is None:
                raise LookupError(
                    f"No occurrence for change on {change.date.isoformat()} "
                    f"(series={change.series_id}, index={change.sequence_index})"
                )
            row.status = change.new_status.value
            if change.new_status == OccurrenceStatus.CANCELLED and change.reason:
                row.cancel_reason = change.reason
            row.updated_at = now
            updated += 1
        await self.session.flush()
        return updated

    async def _row_for(self, change: StatusChange) -> Optional[OccurrenceDB]:
        if change.occurrence_id:
            return await self.get_by_id(uuid.UUID(change.occurrence_id))
        if change.series_id is None:
            return None
        stmt = select(OccurrenceDB).where(
            OccurrenceDB.series_id == uuid.UUID(change.series_id),
            OccurrenceDB.sequence_index == change.sequence_index,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def future_sessions_summary(self, patient_id: str, today: date) -> list[dict[str, Any]]:
        """Upcoming active sessions grouped by track, therapist and time of day."""
        stmt = (
            select(
                OccurrenceDB.track_id,
                OccurrenceDB.therapist_id,
                OccurrenceDB.scheduled_time,
                func.count().label("session_count"),
                func.min(OccurrenceDB.scheduled_date).label("next_session_date"),
                func.max(OccurrenceDB.scheduled_date).label("last_session_date"),
            )
            .where(
                OccurrenceDB.patient_id == patient_id,
                OccurrenceDB.status.in_(ACTIVE_STATUSES),
                OccurrenceDB.scheduled_date >= today,
            )
            .group_by(
                OccurrenceDB.track_id,
                OccurrenceDB.therapist_id,
                OccurrenceDB.scheduled_time,
            )
            .order_by(func.min(OccurrenceDB.scheduled_date))
        )
        result = await self.session.execute(stmt)
        return [dict(r._mapping) for r in result.all()]
