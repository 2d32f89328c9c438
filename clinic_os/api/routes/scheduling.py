"""Scheduling API endpoints: preview, commit and series lifecycle management."""

import logging
import uuid
from datetime import date, time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_os.config import get_settings
from clinic_os.core.database import get_db
from clinic_os.core.repository import OccurrenceRepository, occurrence_from_row
from clinic_os.core.store import SqlBookingStore
from clinic_os.scheduling.committer import BookingCommitter
from clinic_os.scheduling.errors import (
    EmptySelectionError,
    InvalidOperationError,
    InvalidRuleError,
    SlotConflictError,
)
from clinic_os.scheduling.lifecycle import SeriesLifecycleManager
from clinic_os.scheduling.models import (
    CandidateSlot,
    CommitReport,
    EndCondition,
    ManageAction,
    Occurrence,
    RecurrenceAction,
    RecurrenceRule,
    Series,
)
from clinic_os.scheduling.recurrence import OccurrenceGenerator
from clinic_os.scheduling.validation import (
    RetroactiveDateStatus,
    retroactive_message,
    validate_retroactive_date,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scheduling")

_manager = SeriesLifecycleManager()


# ---------------------------------------------------------------------------
# Pydantic request/response schemas
# ---------------------------------------------------------------------------

class PreviewRequest(BaseModel):
    anchor_date: date
    recurrence_rule: RecurrenceRule
    limit: Optional[int] = Field(default=None, ge=1)


class PreviewResponse(BaseModel):
    dates: list[date]
    total: Optional[int] = None
    truncated: bool = False


class CommitRequest(BaseModel):
    patient_id: Optional[str] = None
    selection: dict[str, list[CandidateSlot]]
    recurrence_rule: Optional[RecurrenceRule] = None


class ManageResponse(BaseModel):
    series_id: str
    action: RecurrenceAction
    cancelled_count: int = 0
    paused_count: int = 0
    resumed_count: int = 0
    affected_dates: list[date] = []
    end_condition: Optional[EndCondition] = None
    series: Series


class ExtendRequest(BaseModel):
    until: date


class RemainingResponse(BaseModel):
    series_id: str
    reference_date: date
    remaining: Optional[int] = None


class FutureSessionSummary(BaseModel):
    track_id: Optional[str] = None
    therapist_id: str
    scheduled_time: time
    session_count: int
    next_session_date: date
    last_session_date: date


class TerminateRequest(BaseModel):
    today: date
    reason: Optional[str] = None


class TerminateResponse(BaseModel):
    patient_id: str
    cancelled_count: int
    tracks_affected: list[str] = []
    therapists_affected: list[str] = []
    affected_dates: list[date] = []


class PatientConflictRequest(BaseModel):
    slots: list[CandidateSlot]


class PatientConflict(BaseModel):
    date: date
    time: time
    existing_occurrence: Occurrence


class RetroactiveRequest(BaseModel):
    session_date: date
    today: date


class RetroactiveResponse(BaseModel):
    status: RetroactiveDateStatus
    message: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def get_generator() -> OccurrenceGenerator:
    return OccurrenceGenerator(max_occurrences=get_settings().max_occurrences)


def get_store(
    db: AsyncSession = Depends(get_db),
    generator: OccurrenceGenerator = Depends(get_generator),
) -> SqlBookingStore:
    return SqlBookingStore(db, generator, weeks_ahead=get_settings().generate_weeks_ahead)


def _parse_uuid(value: str, name: str = "ID") -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name}: {value}")


async def _load_series(store: SqlBookingStore, series_id: str) -> Series:
    series = await store.load_series(_parse_uuid(series_id, "series_id"))
    if series is None:
        raise HTTPException(status_code=404, detail="Series not found")
    return series


# ---------------------------------------------------------------------------
# Preview / commit
# ---------------------------------------------------------------------------

@router.post("/preview", response_model=PreviewResponse)
async def preview_occurrences(
    body: PreviewRequest,
    generator: OccurrenceGenerator = Depends(get_generator),
) -> PreviewResponse:
    """First occurrences of a rule, for display before committing."""
    limit = body.limit or get_settings().preview_limit
    try:
        dates = generator.take(body.anchor_date, body.recurrence_rule, limit)
        total = generator.remaining_count(body.anchor_date, body.recurrence_rule, body.anchor_date)
    except InvalidRuleError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return PreviewResponse(
        dates=dates,
        total=total,
        truncated=total is None or total > len(dates),
    )


@router.post("/commit", response_model=CommitReport)
async def commit_selection(
    body: CommitRequest,
    store: SqlBookingStore = Depends(get_store),
) -> CommitReport:
    """Book every selected slot. Conflicting slots are reported per item."""
    committer = BookingCommitter(
        store,
        generator=store.generator,
        concurrency=get_settings().commit_concurrency,
    )
    try:
        return await committer.commit(body.selection, body.recurrence_rule, body.patient_id)
    except (EmptySelectionError, InvalidRuleError) as e:
        raise HTTPException(status_code=400, detail=str(e))


# ---------------------------------------------------------------------------
# Series lifecycle
# ---------------------------------------------------------------------------

@router.get("/series/{series_id}", response_model=Series)
async def get_series(
    series_id: str,
    store: SqlBookingStore = Depends(get_store),
) -> Series:
    return await _load_series(store, series_id)


@router.post("/series/{series_id}/manage", response_model=ManageResponse)
async def manage_series(
    series_id: str,
    body: ManageAction,
    store: SqlBookingStore = Depends(get_store),
) -> ManageResponse:
    """Cancel, pause, resume or end a series. The caller has already confirmed."""
    series = await _load_series(store, series_id)
    try:
        result = _manager.manage(series, body)
    except InvalidOperationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        await store.apply(result)
    except LookupError as e:
        # an occurrence was removed after the series was loaded
        logger.warning(f"Series {series_id}: {body.action.value} not applied: {e}")
        raise HTTPException(status_code=409, detail=str(e))
    logger.info(
        f"Series {series_id}: {body.action.value} changed {len(result.changes)} occurrences"
    )
    return ManageResponse(
        series_id=series_id,
        action=body.action,
        cancelled_count=result.cancelled_count,
        paused_count=result.paused_count,
        resumed_count=result.resumed_count,
        affected_dates=result.affected_dates,
        end_condition=result.end_condition,
        series=result.series,
    )


@router.get("/series/{series_id}/remaining", response_model=RemainingResponse)
async def remaining_occurrences(
    series_id: str,
    reference_date: date,
    store: SqlBookingStore = Depends(get_store),
) -> RemainingResponse:
    """How many occurrences a cancel-future from *reference_date* would cover."""
    series = await _load_series(store, series_id)
    remaining = store.generator.remaining_count(
        series.anchor.date, series.recurrence_rule, reference_date
    )
    return RemainingResponse(
        series_id=series_id, reference_date=reference_date, remaining=remaining
    )


@router.post("/series/{series_id}/extend", response_model=list[Occurrence])
async def extend_series(
    series_id: str,
    body: ExtendRequest,
    store: SqlBookingStore = Depends(get_store),
) -> list[Occurrence]:
    """Materialize more occurrences of a series, up to ``until``."""
    sid = _parse_uuid(series_id, "series_id")
    try:
        return await store.extend_series(sid, body.until)
    except LookupError:
        raise HTTPException(status_code=404, detail="Series not found")
    except SlotConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))


# ---------------------------------------------------------------------------
# Patient-level views
# ---------------------------------------------------------------------------

@router.get("/patients/{patient_id}/future-sessions", response_model=list[FutureSessionSummary])
async def future_sessions(
    patient_id: str,
    today: date,
    db: AsyncSession = Depends(get_db),
) -> list[FutureSessionSummary]:
    """Upcoming sessions grouped by track, therapist and time, for termination preview."""
    rows = await OccurrenceRepository(db).future_sessions_summary(patient_id, today)
    return [FutureSessionSummary(**r) for r in rows]


@router.post("/patients/{patient_id}/terminate", response_model=TerminateResponse)
async def terminate_patient(
    patient_id: str,
    body: TerminateRequest,
    db: AsyncSession = Depends(get_db),
) -> TerminateResponse:
    """Cancel every session of the patient from ``today`` on."""
    repo = OccurrenceRepository(db)
    rows = await repo.list_for_patient(patient_id, from_date=body.today)
    result = _manager.terminate_treatment(
        [occurrence_from_row(r) for r in rows], body.today, body.reason
    )
    await repo.apply_status_changes(result.changes)
    return TerminateResponse(
        patient_id=patient_id,
        cancelled_count=result.cancelled_count,
        tracks_affected=result.tracks_affected,
        therapists_affected=result.therapists_affected,
        affected_dates=[c.date for c in result.changes],
    )


@router.post("/patients/{patient_id}/check-conflicts", response_model=list[PatientConflict])
async def check_patient_conflicts(
    patient_id: str,
    body: PatientConflictRequest,
    db: AsyncSession = Depends(get_db),
) -> list[PatientConflict]:
    """Slots at which the patient is already booked (any therapist)."""
    conflicts = await OccurrenceRepository(db).patient_conflicts(patient_id, body.slots)
    return [
        PatientConflict(date=slot.date, time=slot.time, existing_occurrence=occurrence_from_row(row))
        for slot, row in conflicts
    ]


# ---------------------------------------------------------------------------
# Retroactive sessions
# ---------------------------------------------------------------------------

@router.post("/retroactive/validate", response_model=RetroactiveResponse)
async def validate_retroactive(body: RetroactiveRequest) -> RetroactiveResponse:
    window = get_settings().retroactive_window_days
    status = validate_retroactive_date(body.session_date, body.today, window_days=window)
    return RetroactiveResponse(status=status, message=retroactive_message(status, window))
