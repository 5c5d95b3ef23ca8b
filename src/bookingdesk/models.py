"""Core data models for bookingdesk."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ReservationStatus(str, Enum):
    """Persisted states of a reservation.

    An expired verification link is detected at verify time and is not a status.
    """

    PENDING_VERIFICATION = "pending_verification"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


# Statuses whose time range blocks new bookings
BLOCKING_STATUSES = (
    ReservationStatus.PENDING_VERIFICATION,
    ReservationStatus.PENDING_APPROVAL,
    ReservationStatus.APPROVED,
)


class MeetingPreference(str, Enum):
    GOOGLE_MEET = "google_meet"
    CUSTOM_LINK = "custom_link"
    PHONE = "phone"


@dataclass
class AvailabilitySetting:
    """Working hours for one day, in owner-local wall-clock time."""

    day_of_week: int  # 0 = Sunday ... 6 = Saturday
    start_time: str = "09:00"
    end_time: str = "20:00"
    slot_duration_minutes: int = 30
    is_active: bool = True
    specific_date: str = ""  # "2026-03-02" for a one-day override, "" for the weekly row
    id: int | None = None


@dataclass
class BusyInterval:
    """A UTC range during which no slot may be offered."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("BusyInterval bounds must be timezone-aware")
        if not self.start < self.end:
            raise ValueError(f"BusyInterval start must precede end: {self.start} >= {self.end}")

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and self.start < end

    def to_dict(self) -> dict[str, str]:
        return {"start": _iso_utc(self.start), "end": _iso_utc(self.end)}


@dataclass
class TimeSlot:
    """A bookable slot. Instants are UTC; display_time is in the visitor's zone."""

    start: datetime
    end: datetime
    display_time: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "start": _iso_utc(self.start),
            "end": _iso_utc(self.end),
            "displayTime": self.display_time,
        }


@dataclass
class DayAvailability:
    """One weekday of the week view: settings, raw busy ranges and computed slots."""

    date: str
    day_of_week: int
    available: bool
    start_time: str | None
    end_time: str | None
    slot_duration_minutes: int
    busy_slots: list[BusyInterval] = field(default_factory=list)
    slots: list[TimeSlot] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "dayOfWeek": self.day_of_week,
            "available": self.available,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "slotDurationMinutes": self.slot_duration_minutes,
            "busySlots": [b.to_dict() for b in self.busy_slots],
            "slots": [s.to_dict() for s in self.slots],
        }


@dataclass
class WeekAvailability:
    week_start: str
    days: list[DayAvailability]
    owner_timezone: str
    visitor_timezone: str
    slot_duration_minutes: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "weekStart": self.week_start,
            "days": [d.to_dict() for d in self.days],
            "ownerTimezone": self.owner_timezone,
            "visitorTimezone": self.visitor_timezone,
            "slotDurationMinutes": self.slot_duration_minutes,
        }


@dataclass
class DayResult:
    """Single-day view. ``message`` explains an empty result that is not an error."""

    date: str
    timezone: str
    slots: list[TimeSlot] = field(default_factory=list)
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        if self.message:
            return {"slots": [], "message": self.message}
        return {
            "slots": [s.to_dict() for s in self.slots],
            "date": self.date,
            "timezone": self.timezone,
        }


@dataclass
class Reservation:
    """A meeting request and its progress through verification and approval."""

    id: str
    guest_name: str
    guest_email: str
    topic: str
    start_time: datetime
    end_time: datetime
    booker_timezone: str
    approval_token: str
    status: ReservationStatus = ReservationStatus.PENDING_VERIFICATION
    notes: str | None = None
    meeting_preference: MeetingPreference = MeetingPreference.GOOGLE_MEET
    custom_meeting_link: str | None = None
    phone_number: str | None = None
    verification_token: str | None = None
    verification_expires_at: datetime | None = None
    external_event_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    verified_at: datetime | None = None
    approved_at: datetime | None = None
    rejected_at: datetime | None = None


def _iso_utc(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
