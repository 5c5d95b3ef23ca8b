"""Google Calendar provider implementation."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone

from googleapiclient.discovery import build

from ..config import CalendarConfig
from ..models import BusyInterval
from .base import CalendarProvider
from .google_auth import get_google_credentials

logger = logging.getLogger(__name__)


def _parse_google_time(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar API integration.

    Busy times are read from every configured calendar in one free/busy
    request; events are written to ``config.target_calendar_id``. Calls are
    not retried: callers treat a failure as a degraded, not fatal, result.
    """

    def __init__(self, config: CalendarConfig, timezone: str = "UTC"):
        self.config = config
        self.timezone = timezone
        self._service = None

    @property
    def service(self):
        if not self._service:
            creds = get_google_credentials(
                credentials_path=self.config.credentials_path,
                token_path=self.config.token_path,
            )
            self._service = build("calendar", "v3", credentials=creds, cache_discovery=False)
        return self._service

    async def _calendar_ids(self) -> list[str]:
        if self.config.calendar_ids:
            return list(self.config.calendar_ids)
        listing = await asyncio.to_thread(
            self.service.calendarList().list(maxResults=250).execute
        )
        ids = [item["id"] for item in listing.get("items", []) if item.get("id")]
        return ids or ["primary"]

    async def get_busy_times(self, start: datetime, end: datetime) -> list[BusyInterval]:
        """Query the freebusy API and merge busy periods from all calendars."""
        calendar_ids = await self._calendar_ids()
        body = {
            "timeMin": start.astimezone(timezone.utc).isoformat(),
            "timeMax": end.astimezone(timezone.utc).isoformat(),
            "timeZone": self.timezone,
            "items": [{"id": cal_id} for cal_id in calendar_ids],
        }

        result = await asyncio.to_thread(self.service.freebusy().query(body=body).execute)

        busy = []
        for cal_id, cal in result.get("calendars", {}).items():
            for err in cal.get("errors", []):
                logger.warning("Free/busy error for calendar %s: %s", cal_id, err.get("reason"))
            for period in cal.get("busy", []):
                if not period.get("start") or not period.get("end"):
                    continue
                busy_start = _parse_google_time(period["start"])
                busy_end = _parse_google_time(period["end"])
                if busy_start < busy_end:
                    busy.append(BusyInterval(start=busy_start, end=busy_end))

        busy.sort(key=lambda b: b.start)
        logger.info("Found %d busy periods across %d calendar(s)", len(busy), len(calendar_ids))
        return busy

    async def create_event(
        self,
        summary: str,
        start: datetime,
        end: datetime,
        description: str = "",
        attendee_email: str | None = None,
        create_meet_link: bool = False,
    ) -> dict:
        """Create an event with optional Meet link; Google e-mails the invite."""
        event_body: dict = {
            "summary": summary,
            "start": {
                "dateTime": start.isoformat(),
                "timeZone": self.timezone,
            },
            "end": {
                "dateTime": end.isoformat(),
                "timeZone": self.timezone,
            },
        }
        if description:
            event_body["description"] = description
        if attendee_email:
            event_body["attendees"] = [{"email": attendee_email}]

        conference_version = 0
        if create_meet_link:
            event_body["conferenceData"] = {
                "createRequest": {
                    "requestId": str(uuid.uuid4()),
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            }
            conference_version = 1

        created = await asyncio.to_thread(
            self.service.events()
            .insert(
                calendarId=self.config.target_calendar_id,
                body=event_body,
                conferenceDataVersion=conference_version,
                sendUpdates="all",
            )
            .execute
        )

        result = {"event_id": created.get("id")}

        for ep in created.get("conferenceData", {}).get("entryPoints", []):
            if ep.get("entryPointType") == "video":
                result["meet_link"] = ep.get("uri")
                break

        logger.info("Created event: %s", created.get("htmlLink"))
        return result
