"""Cron expression helpers for agent schedules."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

FREQUENCIES = ("daily", "weekdays", "weekly", "monthly")
DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


class ScheduleError(RuntimeError):
    pass


def _zone(tz: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(tz or "UTC")
    except (ZoneInfoNotFoundError, ValueError, TypeError) as exc:
        raise ScheduleError(f"Invalid timezone: {tz}") from exc


def validate_cron(expr: str) -> None:
    if not isinstance(expr, str) or len(expr.split()) != 5:
        raise ScheduleError("Cron expression must have 5 fields")
    if not croniter.is_valid(expr):
        raise ScheduleError(f"Invalid cron expression: {expr}")


def validate_timezone(tz: str | None) -> str:
    _zone(tz)
    return tz or "UTC"


def next_run_at(expr: str, tz: str | None = "UTC", after: datetime | None = None) -> datetime:
    """Next fire time after ``after``, evaluated in ``tz`` and returned in UTC."""
    validate_cron(expr)
    zone = _zone(tz)
    base = after or datetime.now(timezone.utc)
    if base.tzinfo is None:
        base = base.replace(tzinfo=timezone.utc)
    try:
        nxt = croniter(expr, base.astimezone(zone)).get_next(datetime)
    except (ValueError, KeyError) as exc:
        raise ScheduleError(f"Invalid cron expression: {expr}") from exc
    return nxt.astimezone(timezone.utc)


def _parse_time(value: str) -> tuple[int, int]:
    if not isinstance(value, str):
        raise ScheduleError(f"Invalid time: {value!r}")
    try:
        hour_str, minute_str = value.split(":", 1)
        hour, minute = int(hour_str), int(minute_str)
    except ValueError as exc:
        raise ScheduleError(f"Invalid time: {value}") from exc
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ScheduleError(f"Invalid time: {value}")
    return hour, minute


def build_cron_from_human(
    frequency: str,
    time: str,
    days_of_week: List[int] | None = None,
    day_of_month: int | None = None,
) -> str:
    if frequency not in FREQUENCIES:
        raise ScheduleError(f"Unknown frequency: {frequency!r} (expected one of {', '.join(FREQUENCIES)})")
    hour, minute = _parse_time(time)
    if frequency == "weekdays":
        return f"{minute} {hour} * * 1-5"
    if frequency == "weekly":
        if days_of_week is not None and (
            not isinstance(days_of_week, list) or not all(isinstance(d, int) and 0 <= d <= 6 for d in days_of_week)
        ):
            raise ScheduleError("daysOfWeek must be a list of integers 0-6")
        days = ",".join(str(day) for day in days_of_week) if days_of_week else "1"
        return f"{minute} {hour} * * {days}"
    if frequency == "monthly":
        dom = day_of_month if day_of_month is not None else 1
        return f"{minute} {hour} {dom} * *"
    return f"{minute} {hour} * * *"


def _format_time(hour: int, minute: int) -> str:
    ampm = "PM" if hour >= 12 else "AM"
    display = 12 if hour == 0 else hour - 12 if hour > 12 else hour
    return f"{display}:{minute:02d} {ampm}"


def _ordinal(day: int) -> str:
    if day in (1, 21, 31):
        return "st"
    if day in (2, 22):
        return "nd"
    if day in (3, 23):
        return "rd"
    return "th"


def _int_or_none(value: str) -> int | None:
    try:
        return int(value)
    except ValueError:
        return None


def describe_schedule(expr: str) -> str:
    parts = (expr or "").split()
    if len(parts) < 5:
        return expr
    minute_part, hour_part, dom_part, _month, dow_part = parts[:5]
    minute = _int_or_none(minute_part)
    hourly = hour_part == "*"
    hour = None if hourly else _int_or_none(hour_part)
    if minute is None or (hour is None and not hourly):
        return expr
    time_str = "" if hourly else _format_time(hour, minute)

    if dom_part != "*":
        day = _int_or_none(dom_part)
        if day is None:
            return expr
        if hourly:
            return f"Every hour at :{minute:02d} on the {day}{_ordinal(day)} of each month"
        return f"Monthly on the {day}{_ordinal(day)} at {time_str}"
    if dow_part == "*":
        return f"Every hour at :{minute:02d}" if hourly else f"Every day at {time_str}"
    if dow_part == "1-5":
        return f"Every hour at :{minute:02d} on weekdays" if hourly else f"Every weekday at {time_str}"
    days = [d for d in (_int_or_none(v) for v in dow_part.split(",")) if d is not None]
    if not days:
        return expr
    names = ", ".join(DAY_NAMES[d % 7] for d in days)
    if hourly:
        return f"Every hour at :{minute:02d} on {names}"
    return f"Every {names} at {time_str}"


def describe_with_timezone(expr: str, tz: str | None) -> str:
    description = describe_schedule(expr)
    if tz and tz != "UTC":
        return f"{description} ({tz})"
    return description
