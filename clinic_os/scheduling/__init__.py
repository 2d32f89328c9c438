"""Recurrence and slot-selection engine for ClinicOS."""

from clinic_os.scheduling.committer import BookingCommitter, BookingStore
from clinic_os.scheduling.errors import (
    EmptySelectionError,
    InvalidOperationError,
    InvalidRuleError,
    SchedulingError,
    SlotConflictError,
)
from clinic_os.scheduling.lifecycle import SeriesLifecycleManager
from clinic_os.scheduling.models import (
    AfterCount,
    CandidateSlot,
    CommitReport,
    CreateSeriesRequest,
    CreateSingleAppointmentRequest,
    Indefinite,
    LifecycleResult,
    ManageAction,
    Occurrence,
    OccurrenceStatus,
    OnDate,
    RecurrenceAction,
    RecurrencePattern,
    RecurrenceRule,
    Series,
    SlotKey,
)
from clinic_os.scheduling.recurrence import OccurrenceGenerator
from clinic_os.scheduling.selection import SelectionStager
from clinic_os.scheduling.validation import (
    RetroactiveDateStatus,
    is_valid_retroactive_date,
    validate_retroactive_date,
)

__all__ = [
    "AfterCount",
    "BookingCommitter",
    "BookingStore",
    "CandidateSlot",
    "CommitReport",
    "CreateSeriesRequest",
    "CreateSingleAppointmentRequest",
    "EmptySelectionError",
    "Indefinite",
    "InvalidOperationError",
    "InvalidRuleError",
    "LifecycleResult",
    "ManageAction",
    "Occurrence",
    "OccurrenceGenerator",
    "OccurrenceStatus",
    "OnDate",
    "RecurrenceAction",
    "RecurrencePattern",
    "RecurrenceRule",
    "RetroactiveDateStatus",
    "SchedulingError",
    "SelectionStager",
    "Series",
    "SeriesLifecycleManager",
    "SlotConflictError",
    "SlotKey",
    "is_valid_retroactive_date",
    "validate_retroactive_date",
]
