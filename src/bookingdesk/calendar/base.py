"""Abstract base for calendar providers."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime

from ..models import BusyInterval

logger = logging.getLogger(__name__)


class CalendarProvider(ABC):
    """Base class for calendar backends the availability engine can query."""

    @abstractmethod
    async def get_busy_times(self, start: datetime, end: datetime) -> list[BusyInterval]:
        """Get busy intervals between two UTC instants."""
        ...

    @abstractmethod
    async def create_event(
        self,
        summary: str,
        start: datetime,
        end: datetime,
        description: str = "",
        attendee_email: str | None = None,
        create_meet_link: bool = False,
    ) -> dict:
        """Create a calendar event. Returns dict with 'event_id' and optionally 'meet_link'."""
        ...


class DryRunCalendarProvider(CalendarProvider):
    """Wraps a provider: reads pass through, event creation is only logged."""

    def __init__(self, inner: CalendarProvider):
        self.inner = inner

    async def get_busy_times(self, start: datetime, end: datetime) -> list[BusyInterval]:
        return await self.inner.get_busy_times(start, end)

    async def create_event(
        self,
        summary: str,
        start: datetime,
        end: datetime,
        description: str = "",
        attendee_email: str | None = None,
        create_meet_link: bool = False,
    ) -> dict:
        logger.info("[dry-run] Would create event %r at %s", summary, start)
        return {"event_id": "dry-run"}
