"""Tests for the availability service."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo

import pytest

from bookingdesk.config import AvailabilityConfig
from bookingdesk.core.availability import AvailabilityService
from bookingdesk.core.slots import local_to_utc, parse_hhmm
from bookingdesk.database import Database
from bookingdesk.errors import HorizonExceeded
from bookingdesk.models import AvailabilitySetting, BusyInterval, Reservation, ReservationStatus

NY = ZoneInfo("America/New_York")
# Monday 2026-03-02, 08:00 in New York
NOW = datetime(2026, 3, 2, 13, 0, tzinfo=timezone.utc)
THURSDAY = date(2026, 3, 5)


class MockCalendar:
    """Mock calendar that returns configurable busy times."""

    def __init__(self, busy: Optional[List[BusyInterval]] = None):
        self.busy = busy or []
        self.queries = []

    async def get_busy_times(self, start, end):
        self.queries.append((start, end))
        return [b for b in self.busy if b.overlaps(start, end)]

    async def create_event(self, **kwargs):
        return {"event_id": "mock-123"}


class FailingCalendar:
    async def get_busy_times(self, start, end):
        raise RuntimeError("Calendar API down")

    async def create_event(self, **kwargs):
        raise RuntimeError("Calendar API down")


def local(day: date, hhmm: str) -> datetime:
    return local_to_utc(day, parse_hhmm(hhmm), NY)


@pytest.fixture
def config():
    return AvailabilityConfig(timezone="America/New_York")


@pytest.fixture
def db(tmp_path):
    d = Database(tmp_path / "test.db")
    d.connect()
    yield d
    d.close()


def service(config, db, calendar=None) -> AvailabilityService:
    return AvailabilityService(config, calendar or MockCalendar(), db)


class TestResolveSetting:
    def test_weekday_default(self, config, db):
        s = service(config, db).resolve_setting(THURSDAY)
        assert s.is_active
        assert (s.start_time, s.end_time, s.slot_duration_minutes) == ("09:00", "20:00", 30)

    def test_weekend_default_is_closed(self, config, db):
        assert not service(config, db).resolve_setting(date(2026, 3, 7)).is_active

    def test_stored_row_wins(self, config, db):
        db.upsert_setting(AvailabilitySetting(day_of_week=4, start_time="10:00", end_time="12:00"))
        assert service(config, db).resolve_setting(THURSDAY).start_time == "10:00"

    def test_date_override_wins_over_weekly_row(self, config, db):
        db.upsert_setting(AvailabilitySetting(day_of_week=4, start_time="10:00", end_time="12:00"))
        db.upsert_setting(
            AvailabilitySetting(day_of_week=4, start_time="14:00", end_time="15:00", specific_date="2026-03-05")
        )
        svc = service(config, db)
        assert svc.resolve_setting(THURSDAY).start_time == "14:00"
        assert svc.resolve_setting(THURSDAY + timedelta(weeks=1)).start_time == "10:00"


class TestDayAvailability:
    @pytest.mark.asyncio
    async def test_default_weekday_has_full_grid(self, config, db):
        result = await service(config, db).get_day_availability(THURSDAY, "America/New_York", now=NOW)
        assert result.message == ""
        assert len(result.slots) == 22
        assert result.slots[0].display_time == "9:00 AM"
        assert result.to_dict()["date"] == "2026-03-05"

    @pytest.mark.asyncio
    async def test_calendar_busy_time_removes_slots(self, config, db):
        calendar = MockCalendar([BusyInterval(local(THURSDAY, "12:00"), local(THURSDAY, "13:00"))])
        result = await service(config, db, calendar).get_day_availability(THURSDAY, "America/New_York", now=NOW)
        assert len(result.slots) == 20
        start, end = calendar.queries[0]
        assert start == local(THURSDAY, "00:00")
        assert end - start == timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_calendar_failure_degrades_to_settings_only(self, config, db):
        result = await service(config, db, FailingCalendar()).get_day_availability(
            THURSDAY, "America/New_York", now=NOW
        )
        assert len(result.slots) == 22

    @pytest.mark.asyncio
    async def test_live_reservations_block_slots(self, config, db):
        for rid, status, hhmm in [
            ("a", ReservationStatus.PENDING_VERIFICATION, "09:00"),
            ("b", ReservationStatus.APPROVED, "10:00"),
            ("c", ReservationStatus.REJECTED, "11:00"),
        ]:
            start = local(THURSDAY, hhmm)
            db.insert_reservation(
                Reservation(
                    id=rid, guest_name="G", guest_email="g@example.com", topic="t",
                    start_time=start, end_time=start + timedelta(minutes=30),
                    booker_timezone="UTC", approval_token=f"ap-{rid}", status=status,
                )
            )
        result = await service(config, db).get_day_availability(THURSDAY, "America/New_York", now=NOW)
        times = [s.display_time for s in result.slots]
        assert "9:00 AM" not in times
        assert "10:00 AM" not in times
        assert "11:00 AM" in times
        assert len(times) == 20

    @pytest.mark.asyncio
    async def test_lead_time_blocks_next_business_days(self, config, db):
        svc = service(config, db)
        tuesday = await svc.get_day_availability(date(2026, 3, 3), "America/New_York", now=NOW)
        assert tuesday.slots == []
        assert tuesday.message == ""
        wednesday = await svc.get_day_availability(date(2026, 3, 4), "America/New_York", now=NOW)
        assert len(wednesday.slots) == 22

    @pytest.mark.asyncio
    async def test_weekend_without_setting(self, config, db):
        result = await service(config, db).get_day_availability(date(2026, 3, 7), "UTC", now=NOW)
        assert result.to_dict() == {"slots": [], "message": "Not available on this day"}

    @pytest.mark.asyncio
    async def test_weekend_with_setting(self, config, db):
        db.upsert_setting(AvailabilitySetting(day_of_week=6, start_time="10:00", end_time="12:00"))
        result = await service(config, db).get_day_availability(date(2026, 3, 7), "UTC", now=NOW)
        assert len(result.slots) == 4

    @pytest.mark.asyncio
    async def test_inactive_weekday_row(self, config, db):
        db.upsert_setting(AvailabilitySetting(day_of_week=4, is_active=False))
        result = await service(config, db).get_day_availability(THURSDAY, "UTC", now=NOW)
        assert result.message == "Not available on this day"

    @pytest.mark.asyncio
    async def test_past_date(self, config, db):
        result = await service(config, db).get_day_availability(date(2026, 3, 1), "UTC", now=NOW)
        assert result.message == "Cannot book dates in the past"

    @pytest.mark.asyncio
    async def test_beyond_horizon(self, config, db):
        svc = service(config, db)
        result = await svc.get_day_availability(date(2026, 3, 2) + timedelta(days=61), "UTC", now=NOW)
        assert result.message == "Cannot book more than 60 days in advance"
        result = await svc.get_day_availability(date(2026, 3, 2) + timedelta(days=60), "UTC", now=NOW)
        assert result.message == ""

    @pytest.mark.asyncio
    async def test_unknown_visitor_timezone(self, config, db):
        with pytest.raises(ValueError):
            await service(config, db).get_day_availability(THURSDAY, "Nowhere/Special", now=NOW)

    @pytest.mark.asyncio
    async def test_visitor_timezone_display(self, config, db):
        result = await service(config, db).get_day_availability(THURSDAY, "Asia/Tokyo", now=NOW)
        # 09:00 EST is 23:00 JST
        assert result.slots[0].display_time == "11:00 PM"
        assert result.to_dict()["timezone"] == "Asia/Tokyo"


class TestWeekAvailability:
    @pytest.mark.asyncio
    async def test_week_covers_monday_to_friday(self, config, db):
        calendar = MockCalendar()
        week = await service(config, db, calendar).get_week_availability(
            date(2026, 3, 11), "Europe/London", now=NOW
        )
        data = week.to_dict()
        assert data["weekStart"] == "2026-03-09"
        assert [d["date"] for d in data["days"]] == [
            "2026-03-09", "2026-03-10", "2026-03-11", "2026-03-12", "2026-03-13",
        ]
        assert [d["dayOfWeek"] for d in data["days"]] == [1, 2, 3, 4, 5]
        assert data["ownerTimezone"] == "America/New_York"
        assert data["visitorTimezone"] == "Europe/London"
        assert data["slotDurationMinutes"] == 30
        # One calendar query for the whole week
        assert len(calendar.queries) == 1

    @pytest.mark.asyncio
    async def test_week_reports_settings_and_busy(self, config, db):
        db.upsert_setting(AvailabilitySetting(day_of_week=5, is_active=False))
        calendar = MockCalendar([BusyInterval(local(THURSDAY, "12:00"), local(THURSDAY, "13:00"))])
        week = await service(config, db, calendar).get_week_availability(THURSDAY, "America/New_York", now=NOW)
        days = {d.date: d for d in week.days}

        thursday = days["2026-03-05"]
        assert thursday.available
        assert (thursday.start_time, thursday.end_time) == ("09:00", "20:00")
        assert [b.to_dict() for b in thursday.busy_slots] == [
            {"start": "2026-03-05T17:00:00Z", "end": "2026-03-05T18:00:00Z"}
        ]
        assert len(thursday.slots) == 20

        friday = days["2026-03-06"]
        assert not friday.available
        assert friday.start_time is None
        assert friday.slots == []

    @pytest.mark.asyncio
    async def test_week_includes_lead_time_block(self, config, db):
        week = await service(config, db).get_week_availability(date(2026, 3, 2), "America/New_York", now=NOW)
        monday, tuesday, wednesday = week.days[:3]
        assert monday.slots == [] and tuesday.slots == []
        assert monday.busy_slots and tuesday.busy_slots
        assert monday.busy_slots[0].start == NOW
        assert len(wednesday.slots) == 22

    @pytest.mark.asyncio
    async def test_week_horizon(self, config, db):
        svc = service(config, db)
        await svc.get_week_availability(date(2026, 5, 11), "UTC", now=NOW)  # 10 weeks out
        with pytest.raises(HorizonExceeded):
            await svc.get_week_availability(date(2026, 5, 18), "UTC", now=NOW)
