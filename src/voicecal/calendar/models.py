"""Calendar event shapes exchanged with callers and with Google Calendar v3."""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_EVENT_TITLE = "Untitled Event"
EVENT_TIMEZONE = "UTC"

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class RecurrenceFrequency(StrEnum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class Recurrence(BaseModel):
    """Simple repeat rule rendered as a single RRULE line."""

    model_config = ConfigDict(extra="forbid")

    freq: RecurrenceFrequency
    count: int | None = Field(default=None, ge=1)

    def to_rrule(self) -> str:
        rule = f"RRULE:FREQ={self.freq.value}"
        if self.count:
            rule += f";COUNT={self.count}"
        return rule


def _validate_emails(value: list[str] | None) -> list[str] | None:
    if value is None:
        return None
    normalized = []
    for email in value:
        candidate = email.strip()
        if not _EMAIL_PATTERN.match(candidate):
            raise ValueError(f"invalid attendee email: {email!r}")
        normalized.append(candidate)
    return normalized


def _validate_boundary(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        raise ValueError("event boundaries must be non-empty RFC3339 strings")
    return normalized


class CalendarEvent(BaseModel):
    """Event as returned to callers."""

    id: str
    title: str = DEFAULT_EVENT_TITLE
    start: str | None = None
    end: str | None = None
    location: str | None = None
    attendees: list[str] = Field(default_factory=list)
    description: str | None = None

    @classmethod
    def from_google(cls, item: dict[str, Any]) -> CalendarEvent:
        """Map a Google Calendar v3 event resource to a :class:`CalendarEvent`."""
        start = item.get("start") or {}
        end = item.get("end") or {}
        attendees = item.get("attendees") or []
        return cls(
            id=str(item.get("id", "")),
            title=item.get("summary") or DEFAULT_EVENT_TITLE,
            start=start.get("dateTime") or start.get("date"),
            end=end.get("dateTime") or end.get("date"),
            location=item.get("location"),
            attendees=[
                a.get("email") or "" for a in attendees if isinstance(a, dict)
            ],
            description=item.get("description"),
        )


class EventCreate(BaseModel):
    """Payload for creating an event on the primary calendar."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1)
    start: str
    end: str
    location: str | None = None
    description: str | None = None
    attendees: list[str] | None = None
    recurrence: Recurrence | None = None

    @field_validator("start", "end")
    @classmethod
    def _normalize_boundary(cls, value: str | None) -> str | None:
        return _validate_boundary(value)

    @field_validator("attendees")
    @classmethod
    def _normalize_attendees(cls, value: list[str] | None) -> list[str] | None:
        return _validate_emails(value)

    def to_google_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "summary": self.title,
            "start": {"dateTime": self.start, "timeZone": EVENT_TIMEZONE},
            "end": {"dateTime": self.end, "timeZone": EVENT_TIMEZONE},
        }
        if self.location:
            body["location"] = self.location
        if self.description:
            body["description"] = self.description
        if self.attendees:
            body["attendees"] = [{"email": email} for email in self.attendees]
        if self.recurrence is not None:
            body["recurrence"] = [self.recurrence.to_rrule()]
        return body


class EventUpdate(BaseModel):
    """Partial update for an existing event.  Unset fields are left untouched."""

    model_config = ConfigDict(extra="forbid")

    event_id: str = Field(min_length=1)
    title: str | None = None
    start: str | None = None
    end: str | None = None
    location: str | None = None
    description: str | None = None
    attendees: list[str] | None = None
    recurrence: Recurrence | None = None

    @field_validator("start", "end")
    @classmethod
    def _normalize_boundary(cls, value: str | None) -> str | None:
        return _validate_boundary(value)

    @field_validator("attendees")
    @classmethod
    def _normalize_attendees(cls, value: list[str] | None) -> list[str] | None:
        return _validate_emails(value)

    def apply_to(self, existing: dict[str, Any]) -> dict[str, Any]:
        """Merge this update into a full Google event resource."""
        event = dict(existing)
        if self.title is not None:
            event["summary"] = self.title
        if self.start is not None:
            event["start"] = {"dateTime": self.start, "timeZone": EVENT_TIMEZONE}
        if self.end is not None:
            event["end"] = {"dateTime": self.end, "timeZone": EVENT_TIMEZONE}
        if self.location is not None:
            event["location"] = self.location
        if self.description is not None:
            event["description"] = self.description
        if self.attendees is not None:
            event["attendees"] = [{"email": email} for email in self.attendees]
        if self.recurrence is not None:
            event["recurrence"] = [self.recurrence.to_rrule()]
        return event

    def changes(self) -> dict[str, Any]:
        """Fields the caller actually set, for the action log."""
        return self.model_dump(exclude={"event_id"}, exclude_none=True, mode="json")
