"""SQL-backed booking store used by the commit and lifecycle endpoints."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import date, timedelta
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_os.core.models import ACTIVE_SLOT_INDEX
from clinic_os.core.repository import (
    OccurrenceRepository,
    SeriesRepository,
    series_from_row,
)
from clinic_os.scheduling.committer import BookingStore
from clinic_os.scheduling.errors import SlotConflictError
from clinic_os.scheduling.models import (
    BookingReceipt,
    CreateSeriesRequest,
    CreateSingleAppointmentRequest,
    LifecycleResult,
    Occurrence,
    Series,
    SlotKey,
)
from clinic_os.scheduling.recurrence import OccurrenceGenerator

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_slot_collision(exc: IntegrityError) -> bool:
    """True when *exc* comes from the active-slot unique index."""
    message = str(exc.orig)
    # PostgreSQL names the index, SQLite lists its columns
    return ACTIVE_SLOT_INDEX in message or "appointment_occurrences.therapist_id" in message


class SqlBookingStore(BookingStore):
    """Books appointments through one AsyncSession.

    Creates are serialized with a lock (an AsyncSession is not safe for
    concurrent use) and each one checks the therapist's slots before
    inserting. The partial unique index on active slots backs this up
    against writers in other processes: every write runs in a SAVEPOINT, so
    a collision caught by the index rolls back only that write and is
    reported as a :class:`SlotConflictError`. Earlier and later writes in
    the same session are unaffected.
    """

    def __init__(
        self,
        session: AsyncSession,
        generator: Optional[OccurrenceGenerator] = None,
        weeks_ahead: int = 4,
    ) -> None:
        self.session = session
        self.generator = generator or OccurrenceGenerator()
        self.weeks_ahead = weeks_ahead
        self.series_repo = SeriesRepository(session)
        self.occurrence_repo = OccurrenceRepository(session)
        self._lock = asyncio.Lock()

    async def _ensure_free(self, occ: Occurrence, slot_key: Optional[SlotKey] = None) -> None:
        if await self.occurrence_repo.check_conflict(occ.therapist_id, occ.date, occ.time):
            raise SlotConflictError(occ.therapist_id, occ.date, occ.time, slot_key=slot_key)

    async def _write(
        self,
        write: Callable[[], Awaitable[T]],
        occurrences: Sequence[Occurrence],
        slot_key: Optional[SlotKey] = None,
    ) -> T:
        """Run *write* in a savepoint, turning an active-slot collision into a conflict."""
        try:
            async with self.session.begin_nested():
                return await write()
        except IntegrityError as e:
            if not is_slot_collision(e):
                raise
            logger.warning(f"Active-slot index rejected a write for {slot_key}: {e.orig}")
            raise await self._collision(occurrences, slot_key) from e

    async def _collision(
        self, occurrences: Sequence[Occurrence], slot_key: Optional[SlotKey]
    ) -> SlotConflictError:
        for occ in occurrences:
            if await self.occurrence_repo.find_conflict(occ.therapist_id, occ.date, occ.time):
                return SlotConflictError(occ.therapist_id, occ.date, occ.time, slot_key=slot_key)
        first = occurrences[0]
        return SlotConflictError(first.therapist_id, first.date, first.time, slot_key=slot_key)

    async def create_single(self, request: CreateSingleAppointmentRequest) -> BookingReceipt:
        slot = request.slot
        occ = Occurrence(
            date=slot.date,
            time=slot.time,
            duration_minutes=slot.duration_minutes,
            therapist_id=slot.therapist_id,
            room_id=slot.room_id,
            track_id=request.slot_key.track_id,
            patient_id=request.patient_id,
            notes=request.notes,
        )
        async with self._lock:
            await self._ensure_free(occ, request.slot_key)
            row = await self._write(
                lambda: self.occurrence_repo.create_from_domain(occ), [occ], request.slot_key
            )
        logger.info(f"Booked single appointment {row.id} for therapist {slot.therapist_id}")
        return BookingReceipt(occurrence_ids=[str(row.id)])

    async def create_series(self, request: CreateSeriesRequest) -> BookingReceipt:
        """Materialize and persist a series; any colliding occurrence rejects it whole.

        Indefinite rules are materialized ``weeks_ahead`` weeks past the anchor.
        """
        slot = request.slot.model_copy(update={"track_id": request.slot_key.track_id})
        try:
            horizon = request.anchor_date + timedelta(weeks=self.weeks_ahead)
        except OverflowError:
            horizon = date.max
        series = self.generator.materialize(
            slot,
            request.recurrence_rule,
            series_id=str(uuid.uuid4()),
            horizon=horizon,
            patient_id=request.patient_id,
            notes=request.notes,
        )
        async with self._lock:
            for occ in series.occurrences:
                await self._ensure_free(occ, request.slot_key)
            row = await self._write(
                lambda: self.series_repo.create(series, notes=request.notes),
                series.occurrences,
                request.slot_key,
            )
        logger.info(
            f"Booked series {row.id} with {len(row.occurrences)} occurrences "
            f"for therapist {slot.therapist_id}"
        )
        return BookingReceipt(
            series_id=str(row.id),
            occurrence_ids=[str(o.id) for o in row.occurrences],
        )

    # ------------------------------------------------------------------
    # Existing series
    # ------------------------------------------------------------------

    async def load_series(self, series_id: uuid.UUID) -> Optional[Series]:
        row = await self.series_repo.get_by_id(series_id)
        return series_from_row(row) if row else None

    async def apply(self, result: LifecycleResult) -> int:
        """Persist a lifecycle result: every status change, then any new end condition."""
        async with self._lock:
            updated = await self.occurrence_repo.apply_status_changes(result.changes)
            if result.end_condition is not None:
                await self.series_repo.update_end_condition(
                    uuid.UUID(result.series.series_id), result.end_condition
                )
        return updated

    async def extend_series(self, series_id: uuid.UUID, until: date) -> list[Occurrence]:
        """Materialize further occurrences of a stored series up to *until*.

        Nothing is written if any new occurrence collides with an active booking.
        """
        async with self._lock:
            row = await self.series_repo.get_by_id(series_id)
            if row is None:
                raise LookupError(f"Series {series_id} not found")
            series = series_from_row(row)
            extended = self.generator.extend(series, until)
            added = extended.occurrences[len(series.occurrences):]
            for occ in added:
                await self._ensure_free(occ)
            if not added:
                return []
            new_rows = await self._write(
                lambda: self.series_repo.append_occurrences(row, added), added
            )
        logger.info(f"Extended series {series_id} by {len(new_rows)} occurrences")
        return [o.model_copy(update={"occurrence_id": str(r.id)}) for o, r in zip(added, new_rows)]
