from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

DEFAULT_DUE_TIME = "23:59"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a CRM timestamp (``2026-02-18 10:00:00`` or ISO 8601) as UTC."""
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    return to_utc(parsed)


def add_business_days(start: datetime, business_days: int) -> datetime:
    result = start
    remaining = business_days
    while remaining > 0:
        result = result + timedelta(days=1)
        if result.weekday() < 5:
            remaining -= 1
    return result


def date_to_yyyy_mm_dd(value: datetime) -> str:
    return to_utc(value).strftime("%Y-%m-%d")


def day_key(now: datetime | None = None) -> str:
    return date_to_yyyy_mm_dd(now or utcnow())


def activity_due_at_utc(activity: Mapping[str, Any]) -> datetime | None:
    due_date = activity.get("due_date")
    if not isinstance(due_date, str) or not due_date:
        return None

    due_time = activity.get("due_time")
    if not isinstance(due_time, str) or len(due_time) < 5:
        due_time = DEFAULT_DUE_TIME

    try:
        parsed = datetime.strptime(f"{due_date} {due_time[:5]}", "%Y-%m-%d %H:%M")
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)


def has_future_activity(activities: Iterable[Mapping[str, Any]], now: datetime | None = None) -> bool:
    current = to_utc(now or utcnow())
    for activity in activities:
        if activity.get("done"):
            continue
        due = activity_due_at_utc(activity)
        if due is not None and due > current:
            return True
    return False


def has_activity_within_days(
    activities: Iterable[Mapping[str, Any]],
    business_days: int,
    now: datetime | None = None,
) -> bool:
    current = to_utc(now or utcnow())
    upper_bound = add_business_days(current, business_days) + timedelta(days=1)
    for activity in activities:
        if activity.get("done"):
            continue
        due = activity_due_at_utc(activity)
        if due is None:
            continue
        if current <= due <= upper_bound:
            return True
    return False
