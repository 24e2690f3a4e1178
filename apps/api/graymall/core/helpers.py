"""
Common Helper Functions

Reusable utilities for services and API endpoints.
"""

import calendar
from datetime import date, datetime, timezone
from typing import Optional


# ===========================================
# Timezone-aware datetime utilities
# ===========================================

def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    Always use this instead of datetime.utcnow() which returns
    naive datetime and is deprecated in Python 3.12+.
    """
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def end_of_month(year: int, month: int) -> date:
    """Last calendar day of the given month."""
    return date(year, month, calendar.monthrange(year, month)[1])
