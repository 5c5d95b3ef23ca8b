"""Availability engine: combines stored working hours, calendar busy times and reservations."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from ..calendar.base import CalendarProvider
from ..config import AvailabilityConfig
from ..database import Database
from ..errors import HorizonExceeded
from ..models import (
    AvailabilitySetting,
    BusyInterval,
    DayAvailability,
    DayResult,
    WeekAvailability,
)
from .slots import (
    add_business_days,
    day_of_week,
    generate_slots,
    local_day_bounds,
    resolve_zone,
)

logger = logging.getLogger(__name__)

WEEKDAYS = range(1, 6)  # Monday..Friday in Sunday-based numbering


class AvailabilityService:
    """Computes bookable slots by subtracting busy times from the owner's working hours."""

    def __init__(self, config: AvailabilityConfig, calendar: CalendarProvider, db: Database):
        self.config = config
        self.calendar = calendar
        self.db = db
        self.tz = ZoneInfo(config.timezone)

    def resolve_setting(self, day: date) -> AvailabilitySetting:
        """Working hours in effect on ``day``.

        A per-date override wins over the weekly row; with neither stored,
        weekdays get the configured default and weekends are closed.
        """
        dow = day_of_week(day)
        setting = self.db.get_setting(dow, day.isoformat()) or self.db.get_setting(dow)
        if setting:
            return setting
        return AvailabilitySetting(
            day_of_week=dow,
            start_time=self.config.default_start_time,
            end_time=self.config.default_end_time,
            slot_duration_minutes=self.config.slot_duration_minutes,
            is_active=dow in WEEKDAYS,
        )

    def _today(self, now: datetime) -> date:
        return now.astimezone(self.tz).date()

    async def collect_busy(self, start: datetime, end: datetime, now: datetime) -> list[BusyInterval]:
        """Union of calendar busy times, live reservations and the lead-time block.

        A calendar failure degrades to no calendar data rather than an error.
        """
        busy: list[BusyInterval] = []
        try:
            busy.extend(await self.calendar.get_busy_times(start, end))
        except Exception as e:
            logger.warning("Calendar API failed, computing slots without busy times: %s", e)

        for reservation in self.db.get_reservations_between(start, end):
            busy.append(BusyInterval(start=reservation.start_time, end=reservation.end_time))

        if self.config.lead_business_days > 0:
            earliest = add_business_days(now.astimezone(self.tz), self.config.lead_business_days)
            if earliest > start and now < end:
                busy.append(BusyInterval(start=now, end=earliest))

        busy.sort(key=lambda b: b.start)
        return busy

    async def get_day_availability(
        self, day: date, visitor_timezone: str, now: datetime | None = None
    ) -> DayResult:
        """Free slots for one owner-local day, rendered for the visitor.

        Raises:
            ValueError: if ``visitor_timezone`` is not a known IANA zone.
        """
        visitor_tz = resolve_zone(visitor_timezone)
        now = now or datetime.now(timezone.utc)
        today = self._today(now)
        result = DayResult(date=day.isoformat(), timezone=visitor_timezone)

        if day < today:
            result.message = "Cannot book dates in the past"
            return result
        if day > today + timedelta(days=self.config.max_days_ahead):
            result.message = f"Cannot book more than {self.config.max_days_ahead} days in advance"
            return result

        setting = self.resolve_setting(day)
        if not setting.is_active:
            result.message = "Not available on this day"
            return result

        day_start, day_end = local_day_bounds(day, self.tz)
        busy = await self.collect_busy(day_start, day_end, now)
        result.slots = generate_slots(
            day, setting, busy, self.tz, visitor_tz,
            now=now, buffer_minutes=self.config.buffer_minutes,
        )
        logger.debug("%s: %d free slot(s), %d busy interval(s)", day, len(result.slots), len(busy))
        return result

    async def get_week_availability(
        self, week_start: date, visitor_timezone: str, now: datetime | None = None
    ) -> WeekAvailability:
        """Monday-Friday of the week containing ``week_start``.

        Raises:
            HorizonExceeded: if the week starts too far ahead.
            ValueError: if ``visitor_timezone`` is not a known IANA zone.
        """
        visitor_tz = resolve_zone(visitor_timezone)
        now = now or datetime.now(timezone.utc)
        monday = week_start - timedelta(days=week_start.weekday())

        if monday > self._today(now) + timedelta(weeks=self.config.max_weeks_ahead):
            raise HorizonExceeded("Cannot view availability that far in advance")

        friday = monday + timedelta(days=4)
        range_start, _ = local_day_bounds(monday, self.tz)
        _, range_end = local_day_bounds(friday, self.tz)
        busy = await self.collect_busy(range_start, range_end, now)

        days = []
        for offset in range(5):
            day = monday + timedelta(days=offset)
            setting = self.resolve_setting(day)
            day_start, day_end = local_day_bounds(day, self.tz)
            day_busy = [b for b in busy if b.overlaps(day_start, day_end)]
            days.append(
                DayAvailability(
                    date=day.isoformat(),
                    day_of_week=day_of_week(day),
                    available=setting.is_active,
                    start_time=setting.start_time if setting.is_active else None,
                    end_time=setting.end_time if setting.is_active else None,
                    slot_duration_minutes=setting.slot_duration_minutes,
                    busy_slots=day_busy,
                    slots=generate_slots(
                        day, setting, day_busy, self.tz, visitor_tz,
                        now=now, buffer_minutes=self.config.buffer_minutes,
                    ),
                )
            )

        return WeekAvailability(
            week_start=monday.isoformat(),
            days=days,
            owner_timezone=self.config.timezone,
            visitor_timezone=visitor_timezone,
            slot_duration_minutes=self.config.slot_duration_minutes,
        )
