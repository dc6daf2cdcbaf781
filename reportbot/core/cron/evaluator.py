"""Cron evaluator: decides whether a report schedule is due.

Supports a constrained 5-field grammar (minute hour day-of-month month
day-of-week) in the shapes report schedules actually use:

    M H * * *      daily at H:M            (H may be ``*`` or ``*/N``)
    M H * * D      weekly on weekday D     (D may be a range ``a-b``)
    M H D * *      monthly on day D

Cron fields are interpreted as wall-clock time in the owner's timezone;
results are absolute (UTC) datetimes. Anything else is unsupported and
``next_run_time`` returns None, so callers fall back to a fixed interval.
"""

from __future__ import annotations

import calendar
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger

from reportbot.core.errors import ScheduleParseError
from reportbot.core.utils import ensure_utc, utcnow

FALLBACK_INTERVAL = timedelta(hours=23)

# Defaults when the hour/minute field of a weekly/monthly schedule is "*".
_DEFAULT_HOUR = 9
_DEFAULT_MINUTE = 0

# Two hours plus the widest DST shift covers every hourly schedule.
_HOURLY_SCAN_MINUTES = 3 * 60

_DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


@dataclass(frozen=True)
class CronFields:
    minute: str
    hour: str
    day_of_month: str
    month: str
    day_of_week: str


def parse_expression(expression: str) -> CronFields:
    """Split an expression into its five fields. Raises ScheduleParseError."""
    parts = (expression or "").split()
    if len(parts) != 5:
        raise ScheduleParseError(f"Expected 5 cron fields, got {len(parts)}: {expression!r}")
    return CronFields(*parts)


def resolve_zone(name: str | None) -> ZoneInfo:
    """ZoneInfo for ``name``; unknown or empty names resolve to UTC."""
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, using UTC")
        return ZoneInfo("UTC")


# ════════════════════════════════════════════════════════════
# NEXT RUN
# ════════════════════════════════════════════════════════════


def next_run_time(
    expression: str, from_time: datetime, tz: str | None = "UTC"
) -> datetime | None:
    """Next instant (UTC) the schedule fires strictly after ``from_time``.

    Returns None for unsupported or malformed expressions; never raises.
    """
    try:
        fields = parse_expression(expression)
        zone = resolve_zone(tz)
        start = ensure_utc(from_time)
        if _is_hourly(fields):
            return _next_hourly(fields.minute, start, zone)
        # Wall-clock arithmetic happens on naive local datetimes.
        wall = start.astimezone(zone).replace(tzinfo=None)
        next_wall = _next_wall_time(fields, wall)
    except (ScheduleParseError, ValueError, OverflowError) as e:
        logger.debug(f"Cannot compute next run for {expression!r}: {e}")
        return None

    if next_wall is None:
        return None
    result = next_wall.replace(tzinfo=zone).astimezone(timezone.utc)
    if result <= start:
        # Wall time repeated by a DST fold: take the later occurrence.
        result = next_wall.replace(tzinfo=zone, fold=1).astimezone(timezone.utc)
    return result if result > start else None


def _next_wall_time(f: CronFields, wall: datetime) -> datetime | None:
    if f.day_of_month == "*" and f.month == "*" and f.day_of_week == "*":
        if "/" in f.hour:
            return _next_every_n_hours(f.hour, f.minute, wall)
        return _next_daily(f.hour, f.minute, wall)

    if f.day_of_month == "*" and f.month == "*":
        return _next_weekly(f.day_of_week, f.hour, f.minute, wall)

    if f.month == "*" and f.day_of_week == "*":
        return _next_monthly(f.day_of_month, f.hour, f.minute, wall)

    return None


def _field_int(value: str, low: int, high: int, default: int | None = None) -> int:
    """Parse a literal field. ``*`` maps to ``default`` when one is given."""
    if value == "*" and default is not None:
        return default
    if not value.isdigit():
        raise ScheduleParseError(f"Unsupported cron field: {value!r}")
    number = int(value)
    if not low <= number <= high:
        raise ScheduleParseError(f"Cron field {value!r} out of range {low}-{high}")
    return number


def _is_hourly(f: CronFields) -> bool:
    return f.hour == "*" and f.day_of_month == "*" and f.month == "*" and f.day_of_week == "*"


def _next_hourly(minute: str, start: datetime, zone: ZoneInfo) -> datetime | None:
    """Step absolute minutes so an hour repeated at a DST fold fires twice."""
    target = None if minute == "*" else _field_int(minute, 0, 59)
    candidate = start.replace(second=0, microsecond=0)
    for _ in range(_HOURLY_SCAN_MINUTES):
        candidate += timedelta(minutes=1)
        if target is None or candidate.astimezone(zone).minute == target:
            return candidate
    return None


def _next_every_n_hours(hour: str, minute: str, wall: datetime) -> datetime:
    head, _, step = hour.partition("/")
    if head != "*" or not step.isdigit() or int(step) < 1:
        raise ScheduleParseError(f"Unsupported hour step: {hour!r}")
    interval = int(step)
    target_minute = _field_int(minute, 0, 59, default=0)
    day = datetime(wall.year, wall.month, wall.day)

    target_hour = math.ceil(wall.hour / interval) * interval
    if target_hour > 23:
        day += timedelta(days=1)
        target_hour = 0
    candidate = day.replace(hour=target_hour, minute=target_minute)

    if candidate <= wall:
        next_hour = target_hour + interval
        if next_hour >= 24:
            candidate = (day + timedelta(days=1)).replace(hour=0, minute=target_minute)
        else:
            candidate = candidate.replace(hour=next_hour)
    return candidate


def _next_daily(hour: str, minute: str, wall: datetime) -> datetime:
    candidate = wall.replace(
        hour=_field_int(hour, 0, 23),
        minute=_field_int(minute, 0, 59, default=0),
        second=0,
        microsecond=0,
    )
    if candidate <= wall:
        candidate += timedelta(days=1)
    return candidate


def _cron_weekday(dt: datetime) -> int:
    """0 = Sunday … 6 = Saturday."""
    return (dt.weekday() + 1) % 7


def _next_weekly(day_of_week: str, hour: str, minute: str, wall: datetime) -> datetime:
    candidate = wall.replace(
        hour=_field_int(hour, 0, 23, default=_DEFAULT_HOUR),
        minute=_field_int(minute, 0, 59, default=_DEFAULT_MINUTE),
        second=0,
        microsecond=0,
    )
    current = _cron_weekday(wall)

    if "-" in day_of_week:
        first, _, last = day_of_week.partition("-")
        start, end = _field_int(first, 0, 6), _field_int(last, 0, 6)
        if start > end:
            raise ScheduleParseError(f"Unsupported weekday range: {day_of_week!r}")
        if start <= current <= end:
            if candidate > wall:
                days = 0
            elif current < end:
                days = 1
            else:
                days = (start - current + 7) % 7 or 7
        else:
            days = (start - current + 7) % 7
    else:
        target = _field_int(day_of_week, 0, 7) % 7  # 7 is also Sunday
        days = (target - current + 7) % 7
        if days == 0 and candidate <= wall:
            days = 7

    return candidate + timedelta(days=days)


def _next_monthly(day_of_month: str, hour: str, minute: str, wall: datetime) -> datetime:
    day = _field_int(day_of_month, 1, 31)
    target_hour = _field_int(hour, 0, 23, default=_DEFAULT_HOUR)
    target_minute = _field_int(minute, 0, 59, default=_DEFAULT_MINUTE)

    year, month = wall.year, wall.month
    # Months without that day (e.g. the 31st) are skipped.
    for _ in range(13):
        if day <= calendar.monthrange(year, month)[1]:
            candidate = datetime(year, month, day, target_hour, target_minute)
            if candidate > wall:
                return candidate
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    raise ScheduleParseError(f"No month has day {day}")


# ════════════════════════════════════════════════════════════
# DUE CHECK
# ════════════════════════════════════════════════════════════


def is_due(
    expression: str,
    last_run_at: datetime | None,
    tz: str | None = "UTC",
    now: datetime | None = None,
    fallback_interval: timedelta = FALLBACK_INTERVAL,
) -> bool:
    """True when the schedule's next run after ``last_run_at`` has passed.

    Never-run schedules are always due. Unsupported expressions fall back
    to "due if the last run is older than ``fallback_interval``".
    """
    if last_run_at is None:
        return True

    now = ensure_utc(now or utcnow())
    last_run_at = ensure_utc(last_run_at)
    next_run = next_run_time(expression, last_run_at, tz)
    if next_run is not None:
        return now >= next_run

    logger.warning(
        f"Unsupported schedule {expression!r}, using {fallback_interval} fallback interval"
    )
    return now - last_run_at > fallback_interval


# ════════════════════════════════════════════════════════════
# SCHEDULE CLASSIFICATION
# ════════════════════════════════════════════════════════════


def is_daily_schedule(expression: str) -> bool:
    """Day-of-month and day-of-week are both ``*`` (hourly counts as daily)."""
    parts = (expression or "").split()
    return len(parts) == 5 and parts[2] == "*" and parts[4] == "*"


def is_weekly_schedule(expression: str) -> bool:
    parts = (expression or "").split()
    return len(parts) == 5 and parts[4] != "*"


def period_label(expression: str) -> str:
    """Coarse period passed to the summarizer: ``day`` or ``week``."""
    return "day" if is_daily_schedule(expression) else "week"


def default_lookback(expression: str) -> timedelta:
    """Commit window for a first run: 7 days for weekly schedules, else 1 day."""
    if not is_daily_schedule(expression) and is_weekly_schedule(expression):
        return timedelta(days=7)
    return timedelta(days=1)


def describe_schedule(expression: str) -> str:
    """Human-readable schedule, e.g. ``Weekdays at 09:00``. Falls back to the raw text."""
    try:
        f = parse_expression(expression)
        if f.day_of_month == "*" and f.month == "*" and f.day_of_week == "*":
            if f.hour == "*":
                if f.minute == "*":
                    return "Every minute"
                return f"Every hour at minute {_field_int(f.minute, 0, 59)}"
            if "/" in f.hour:
                _, _, step = f.hour.partition("/")
                return f"Every {int(step)} hours"
            return f"Daily at {_clock(f.hour, f.minute)}"

        if f.day_of_month == "*" and f.month == "*":
            at = _clock(f.hour, f.minute, _DEFAULT_HOUR)
            if f.day_of_week == "1-5":
                return f"Weekdays at {at}"
            if "-" in f.day_of_week:
                first, _, last = f.day_of_week.partition("-")
                return (
                    f"{_DAY_NAMES[_field_int(first, 0, 6)]} to "
                    f"{_DAY_NAMES[_field_int(last, 0, 6)]} at {at}"
                )
            day = _DAY_NAMES[_field_int(f.day_of_week, 0, 7) % 7]
            return f"Weekly on {day} at {at}"

        if f.month == "*" and f.day_of_week == "*":
            day = _field_int(f.day_of_month, 1, 31)
            return f"Monthly on the {_ordinal(day)} at {_clock(f.hour, f.minute, _DEFAULT_HOUR)}"
    except ScheduleParseError:
        pass
    return expression


def _clock(hour: str, minute: str, default_hour: int | None = None) -> str:
    h = _field_int(hour, 0, 23, default=default_hour)
    m = _field_int(minute, 0, 59, default=0)
    return f"{h:02d}:{m:02d}"


def _ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"
