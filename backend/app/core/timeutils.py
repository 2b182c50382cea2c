"""Time helpers shared by models and billing services."""

from datetime import datetime, timedelta, timezone

# Fixed-term plans use a flat 30-day month (not calendar months).
DAYS_PER_BILLING_MONTH = 30


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def term_end(start: datetime, duration_months: int) -> datetime:
    """End of a fixed term starting at `start`, using 30-day months."""
    return start + timedelta(days=duration_months * DAYS_PER_BILLING_MONTH)
