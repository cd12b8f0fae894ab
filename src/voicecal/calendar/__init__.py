"""Google Calendar access: per-user handles and user-level operations."""

from voicecal.calendar.client import (
    CalendarClientFactory,
    CalendarHandle,
    CalendarRequestError,
)
from voicecal.calendar.models import (
    CalendarEvent,
    EventCreate,
    EventUpdate,
    Recurrence,
    RecurrenceFrequency,
)
from voicecal.calendar.service import CalendarService, ConnectionValidation

__all__ = [
    "CalendarClientFactory",
    "CalendarEvent",
    "CalendarHandle",
    "CalendarRequestError",
    "CalendarService",
    "ConnectionValidation",
    "EventCreate",
    "EventUpdate",
    "Recurrence",
    "RecurrenceFrequency",
]
