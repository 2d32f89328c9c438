"""Turns a staged selection into booking requests and commits them."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Iterable, Mapping, Optional

from clinic_os.scheduling.errors import EmptySelectionError, SlotConflictError
from clinic_os.scheduling.models import (
    BookingReceipt,
    BookingRequest,
    CandidateSlot,
    CommitItemResult,
    CommitOutcome,
    CommitReport,
    CreateSeriesRequest,
    CreateSingleAppointmentRequest,
    RecurrenceRule,
    SlotKey,
)
from clinic_os.scheduling.recurrence import OccurrenceGenerator

logger = logging.getLogger(__name__)


class BookingStore(ABC):
    """Persistence boundary for new bookings.

    Implementations must hold at most one scheduled or paused appointment
    per ``(therapist_id, date, time)`` and raise :class:`SlotConflictError`
    for a request that collides with one. A series request collides if any
    of its occurrences does.
    """

    @abstractmethod
    async def create_single(self, request: CreateSingleAppointmentRequest) -> BookingReceipt:
        """Create a standalone appointment."""
        pass

    @abstractmethod
    async def create_series(self, request: CreateSeriesRequest) -> BookingReceipt:
        """Create a series and its initial occurrences."""
        pass


def booking_notes(slot: CandidateSlot, base: str = "Booked via scheduling assistant") -> str:
    parts = [base]
    if slot.has_specialty:
        parts.append("Specialist therapist")
    if slot.is_preferred:
        parts.append("Preferred therapist")
    return " - ".join(parts)


class BookingCommitter:
    """Commits every selected slot as its own appointment or series.

    Requests go to the store concurrently; each one succeeds, conflicts or
    fails independently and the report is keyed by slot, in request order.
    Conflicted slots are never retried here.
    """

    def __init__(
        self,
        store: BookingStore,
        generator: Optional[OccurrenceGenerator] = None,
        concurrency: int = 5,
    ) -> None:
        self.store = store
        self.generator = generator or OccurrenceGenerator()
        self.concurrency = max(1, concurrency)

    def build_requests(
        self,
        selection: Mapping[str, Iterable[CandidateSlot]],
        rule: Optional[RecurrenceRule] = None,
        patient_id: Optional[str] = None,
    ) -> list[BookingRequest]:
        """One request per selected slot; raises before anything is sent.

        With a *rule*, every slot gets its own series carrying that rule and
        anchored at the slot's date; slots are never merged into one series.
        """
        requests: list[BookingRequest] = []
        seen: set[SlotKey] = set()
        for track_id, slots in selection.items():
            for slot in slots:
                key = SlotKey.for_slot(track_id, slot)
                if key in seen:
                    continue
                seen.add(key)
                if rule is None:
                    requests.append(
                        CreateSingleAppointmentRequest(
                            slot_key=key,
                            slot=slot,
                            patient_id=patient_id,
                            notes=booking_notes(slot),
                        )
                    )
                else:
                    self.generator.validate(slot.date, rule)
                    requests.append(
                        CreateSeriesRequest(
                            slot_key=key,
                            slot=slot,
                            recurrence_rule=rule,
                            patient_id=patient_id,
                            notes=booking_notes(slot),
                        )
                    )

        if not requests:
            raise EmptySelectionError()
        return requests

    async def commit(
        self,
        selection: Mapping[str, Iterable[CandidateSlot]],
        rule: Optional[RecurrenceRule] = None,
        patient_id: Optional[str] = None,
    ) -> CommitReport:
        requests = self.build_requests(selection, rule, patient_id)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(request: BookingRequest) -> CommitItemResult:
            async with semaphore:
                return await self._dispatch(request)

        results = await asyncio.gather(*(run(r) for r in requests))
        report = CommitReport(results=list(results))

        logger.info(
            "Commit finished: %d created, %d conflicts, %d failed",
            len(report.succeeded), len(report.conflicts), len(report.failed),
        )
        return report

    async def _dispatch(self, request: BookingRequest) -> CommitItemResult:
        try:
            if isinstance(request, CreateSeriesRequest):
                receipt = await self.store.create_series(request)
            else:
                receipt = await self.store.create_single(request)
        except SlotConflictError as e:
            logger.warning(f"Slot conflict for {request.slot_key}: {e}")
            return CommitItemResult(
                slot_key=request.slot_key,
                request_kind=request.kind,
                outcome=CommitOutcome.CONFLICT,
                error=str(e),
            )
        except Exception as e:
            logger.exception(f"Booking failed for {request.slot_key}")
            return CommitItemResult(
                slot_key=request.slot_key,
                request_kind=request.kind,
                outcome=CommitOutcome.FAILED,
                error=str(e),
            )

        return CommitItemResult(
            slot_key=request.slot_key,
            request_kind=request.kind,
            outcome=CommitOutcome.CREATED,
            series_id=receipt.series_id,
            occurrence_ids=receipt.occurrence_ids,
        )
