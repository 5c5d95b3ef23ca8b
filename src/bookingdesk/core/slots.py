"""Slot generation: working hours minus busy intervals, across owner and visitor zones.

Everything here is pure. ``now`` is injectable so results are reproducible.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import date, datetime, time, timedelta, timezone
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..models import AvailabilitySetting, TimeSlot

DEFAULT_BUFFER_MINUTES = 60

_HHMM_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


class _Interval(Protocol):
    start: datetime
    end: datetime


def parse_hhmm(value: str) -> time:
    """Parse 'HH:MM' (00:00-23:59) into a time."""
    m = _HHMM_RE.match(value.strip())
    if not m or int(m.group(1)) > 23 or int(m.group(2)) > 59:
        raise ValueError(f"Invalid time: {value!r}. Use HH:MM (00:00-23:59).")
    return time(int(m.group(1)), int(m.group(2)))


def resolve_zone(name: str) -> ZoneInfo:
    """Look up an IANA zone, raising ValueError for anything unknown."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {name!r}") from e


def day_of_week(day: date) -> int:
    """Sunday-based weekday number (Sunday = 0 ... Saturday = 6)."""
    return (day.weekday() + 1) % 7


def local_to_utc(day: date, at: time, tz: ZoneInfo) -> datetime:
    """Interpret a wall-clock date + time in ``tz`` and return the UTC instant."""
    return datetime.combine(day, at, tzinfo=tz).astimezone(timezone.utc)


def parse_booking_time(date_str: str, time_str: str, tz_name: str) -> datetime:
    """Turn a visitor-entered 'YYYY-MM-DD' + 'HH:MM' in their zone into UTC."""
    day = datetime.strptime(date_str, "%Y-%m-%d").date()
    return local_to_utc(day, parse_hhmm(time_str), resolve_zone(tz_name))


def local_day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """UTC instants of local midnight at the start and end of ``day`` in ``tz``."""
    start = local_to_utc(day, time(0, 0), tz)
    end = local_to_utc(day + timedelta(days=1), time(0, 0), tz)
    return start, end


def format_time(instant: datetime, tz: ZoneInfo) -> str:
    """'9:00 AM' style rendering of ``instant`` in ``tz``."""
    return instant.astimezone(tz).strftime("%I:%M %p").lstrip("0")


def format_for_display(instant: datetime, tz: ZoneInfo) -> str:
    """'Monday, March 2, 2026 at 9:00 AM' style rendering used in e-mails."""
    local = instant.astimezone(tz)
    return f"{local.strftime('%A, %B')} {local.day}, {local.year} at {format_time(local, tz)}"


def add_business_days(start: datetime, days: int) -> datetime:
    """Move forward ``days`` weekdays, keeping the wall-clock time of ``start``."""
    result = start
    added = 0
    while added < days:
        result += timedelta(days=1)
        if result.weekday() < 5:
            added += 1
    return result


def overlaps(start1: datetime, end1: datetime, start2: datetime, end2: datetime) -> bool:
    """Open-interval overlap: touching ranges do not overlap."""
    return start1 < end2 and start2 < end1


def generate_slots(
    day: date,
    setting: AvailabilitySetting,
    busy: Iterable[_Interval],
    owner_tz: ZoneInfo,
    visitor_tz: ZoneInfo,
    now: datetime | None = None,
    buffer_minutes: int = DEFAULT_BUFFER_MINUTES,
) -> list[TimeSlot]:
    """Tile the owner's working window for ``day`` into free, fixed-length slots.

    Slots never extend past the end of the window (a short remainder is
    dropped), never overlap a busy interval, and always start strictly after
    ``now + buffer_minutes``.
    """
    if not setting.is_active or setting.slot_duration_minutes <= 0:
        return []

    duration = timedelta(minutes=setting.slot_duration_minutes)
    window_start = local_to_utc(day, parse_hhmm(setting.start_time), owner_tz)
    window_end = local_to_utc(day, parse_hhmm(setting.end_time), owner_tz)

    now = now or datetime.now(timezone.utc)
    earliest = now + timedelta(minutes=buffer_minutes)
    busy = list(busy)

    slots = []
    slot_start = window_start
    while slot_start + duration <= window_end:
        slot_end = slot_start + duration
        if slot_start > earliest and not any(
            overlaps(slot_start, slot_end, b.start, b.end) for b in busy
        ):
            slots.append(
                TimeSlot(start=slot_start, end=slot_end, display_time=format_time(slot_start, visitor_tz))
            )
        slot_start = slot_end

    return slots
