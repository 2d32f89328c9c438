"""Date validation for retroactively recorded sessions."""

from datetime import date, timedelta
from enum import Enum

RETROACTIVE_WINDOW_DAYS = 7


class RetroactiveDateStatus(str, Enum):
    VALID = "valid"
    TOO_FAR_IN_PAST = "too_far_in_past"
    IN_FUTURE = "in_future"


def validate_retroactive_date(
    session_date: date,
    today: date,
    window_days: int = RETROACTIVE_WINDOW_DAYS,
) -> RetroactiveDateStatus:
    """Check that *session_date* lies in ``[today - window_days, today]``."""
    if session_date > today:
        return RetroactiveDateStatus.IN_FUTURE
    if session_date < today - timedelta(days=window_days):
        return RetroactiveDateStatus.TOO_FAR_IN_PAST
    return RetroactiveDateStatus.VALID


is_valid_retroactive_date = validate_retroactive_date


def retroactive_message(
    status: RetroactiveDateStatus, window_days: int = RETROACTIVE_WINDOW_DAYS
) -> str:
    """User-facing explanation for a validation result."""
    if status == RetroactiveDateStatus.IN_FUTURE:
        return "A retroactive session cannot be dated in the future."
    if status == RetroactiveDateStatus.TOO_FAR_IN_PAST:
        return (
            f"Date too old. Only sessions from the last {window_days} days "
            "can be recorded retroactively."
        )
    return "Date is within the retroactive window."
