from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from dateutil.relativedelta import relativedelta

INTERVAL_WEEKLY = "WEEKLY"
INTERVAL_MONTHLY = "MONTHLY"
INTERVAL_YEARLY = "YEARLY"
INTERVAL_CHOICES = (INTERVAL_WEEKLY, INTERVAL_MONTHLY, INTERVAL_YEARLY)

# Calendar steps, not fixed durations: Jan 31 + 1 month lands on Feb 28/29
_STEPS = {
    INTERVAL_WEEKLY: timedelta(days=7),
    INTERVAL_MONTHLY: relativedelta(months=1),
    INTERVAL_YEARLY: relativedelta(years=1),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_period(interval: str, start: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """
    Return (start, end) of one billing period beginning at `start` (default: now, UTC).
    Raises ValueError for an unknown interval.
    """
    try:
        step = _STEPS[(interval or "").upper()]
    except KeyError:
        raise ValueError(f"Unknown billing interval: {interval!r}")
    start = start or utcnow()
    return start, start + step


def trial_end(start: datetime, trial_days: int) -> Optional[datetime]:
    if not trial_days or trial_days <= 0:
        return None
    return start + timedelta(days=int(trial_days))
