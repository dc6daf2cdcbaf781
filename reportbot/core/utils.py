"""Small time helpers shared by the store, ledger and scheduler."""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_db(dt: datetime | None) -> str | None:
    """Fixed-width UTC ISO string, so stored timestamps compare lexically."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat(timespec="microseconds")


def start_of_month(now: datetime | None = None) -> datetime:
    """Day 1, 00:00:00.000 of the current month, in UTC."""
    now = ensure_utc(now or utcnow())
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
