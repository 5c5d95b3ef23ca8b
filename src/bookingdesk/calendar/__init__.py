"""Calendar providers."""

from .base import CalendarProvider, DryRunCalendarProvider
from .google_calendar import GoogleCalendarProvider

__all__ = [
    "CalendarProvider",
    "DryRunCalendarProvider",
    "GoogleCalendarProvider",
]
