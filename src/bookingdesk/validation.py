"""Request validation for booking submissions and availability settings."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Annotated, Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    StringConstraints,
    ValidationError,
    ValidationInfo,
    field_validator,
)

from .core.slots import day_of_week, parse_hhmm, resolve_zone
from .errors import BookingValidationError
from .models import AvailabilitySetting, MeetingPreference

EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
PHONE_RE = re.compile(r"^\+?[0-9()\-.\s]{5,30}$")

TrimmedName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=2, max_length=100)]
TrimmedTopic = Annotated[str, StringConstraints(strip_whitespace=True, min_length=2, max_length=200)]
Email = Annotated[str, StringConstraints(strip_whitespace=True, to_lower=True, max_length=255)]


class BookingRequest(BaseModel):
    """Payload of POST /book. Field aliases match the JSON the booking form sends."""

    model_config = ConfigDict(populate_by_name=True)

    name: TrimmedName
    email: Email
    date: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$")
    start_time: str = Field(alias="startTime", pattern=r"^\d{2}:\d{2}$")
    timezone: str = Field(min_length=1, max_length=100)
    topic: TrimmedTopic
    notes: Optional[str] = Field(default=None, max_length=500)
    meeting_preference: MeetingPreference = Field(
        default=MeetingPreference.GOOGLE_MEET, alias="meetingPreference"
    )
    custom_meeting_link: Optional[HttpUrl] = Field(
        default=None, alias="customMeetingLink", validate_default=True
    )
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber", validate_default=True)
    # Honeypot: hidden from humans, bots fill it in
    website: Optional[str] = None
    turnstile_token: str = Field(alias="turnstileToken", min_length=1)

    @field_validator("email")
    @classmethod
    def _email_format(cls, v: str) -> str:
        if not EMAIL_RE.match(v):
            raise ValueError("Please enter a valid email address")
        return v

    @field_validator("date")
    @classmethod
    def _real_date(cls, v: str) -> str:
        datetime.strptime(v, "%Y-%m-%d")
        return v

    @field_validator("start_time")
    @classmethod
    def _real_time(cls, v: str) -> str:
        parse_hhmm(v)
        return v

    @field_validator("timezone")
    @classmethod
    def _known_zone(cls, v: str) -> str:
        resolve_zone(v)
        return v

    @field_validator("custom_meeting_link")
    @classmethod
    def _link_iff_custom(cls, v: Optional[HttpUrl], info: ValidationInfo) -> Optional[HttpUrl]:
        preference = info.data.get("meeting_preference")
        if preference == MeetingPreference.CUSTOM_LINK:
            if v is None:
                raise ValueError("A meeting link is required for custom_link meetings")
            return v
        return None

    @field_validator("phone_number")
    @classmethod
    def _phone_iff_phone(cls, v: Optional[str], info: ValidationInfo) -> Optional[str]:
        preference = info.data.get("meeting_preference")
        if preference == MeetingPreference.PHONE:
            v = (v or "").strip()
            if not v:
                raise ValueError("A phone number is required for phone meetings")
            if not PHONE_RE.match(v):
                raise ValueError("Please enter a valid phone number")
            return v
        return None

    @property
    def is_bot(self) -> bool:
        return bool(self.website)


class AvailabilityUpdate(BaseModel):
    """Owner-side change to one day's working hours."""

    day_of_week: int = Field(alias="dayOfWeek", ge=0, le=6)
    start_time: str = Field(alias="startTime", pattern=r"^\d{2}:\d{2}$")
    end_time: str = Field(alias="endTime", pattern=r"^\d{2}:\d{2}$")
    is_active: bool = Field(alias="isActive")
    slot_duration_minutes: int = Field(default=30, alias="slotDurationMinutes", ge=15, le=120)
    specific_date: str = Field(default="", alias="specificDate", pattern=r"^(\d{4}-\d{2}-\d{2})?$")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("start_time", "end_time")
    @classmethod
    def _real_time(cls, v: str) -> str:
        parse_hhmm(v)
        return v

    @field_validator("specific_date")
    @classmethod
    def _date_matches_day(cls, v: str, info: ValidationInfo) -> str:
        if not v:
            return v
        day = datetime.strptime(v, "%Y-%m-%d").date()
        if "day_of_week" in info.data and day_of_week(day) != info.data["day_of_week"]:
            raise ValueError(f"{v} is not on dayOfWeek {info.data['day_of_week']}")
        return v

    def to_setting(self) -> AvailabilitySetting:
        return AvailabilitySetting(
            day_of_week=self.day_of_week,
            start_time=self.start_time,
            end_time=self.end_time,
            slot_duration_minutes=self.slot_duration_minutes,
            is_active=self.is_active,
            specific_date=self.specific_date,
        )

    @field_validator("end_time")
    @classmethod
    def _end_after_start(cls, v: str, info: ValidationInfo) -> str:
        start = info.data.get("start_time")
        if start and parse_hhmm(v) < parse_hhmm(start):
            raise ValueError("endTime must not be earlier than startTime")
        return v


def _flatten(error: ValidationError) -> dict[str, list[str]]:
    """Group pydantic errors by top-level field name, like a form library would."""
    details: dict[str, list[str]] = {}
    for err in error.errors():
        field = str(err["loc"][0]) if err["loc"] else "form"
        details.setdefault(field, []).append(err["msg"])
    return details


def parse_booking_request(payload: Any) -> BookingRequest:
    """Validate a decoded JSON body.

    Raises:
        BookingValidationError: with per-field messages.
    """
    if not isinstance(payload, dict):
        raise BookingValidationError(details={"form": ["Expected a JSON object"]})
    try:
        return BookingRequest.model_validate(payload)
    except ValidationError as e:
        raise BookingValidationError(details=_flatten(e)) from e


def parse_availability_update(payload: Any) -> AvailabilityUpdate:
    if not isinstance(payload, dict):
        raise BookingValidationError(details={"form": ["Expected a JSON object"]})
    try:
        return AvailabilityUpdate.model_validate(payload)
    except ValidationError as e:
        raise BookingValidationError(details=_flatten(e)) from e
