"""Request/response models for the HTTP API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from voicecal.calendar.models import CalendarEvent, Recurrence


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    details: dict | None = None
    needs_reconnect: bool | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class OAuthUrlResponse(BaseModel):
    authorization_url: str
    state: str


class OAuthCallbackSuccess(BaseModel):
    success: bool = True
    message: str
    provider: str = "google"
    scope: str | None = None


class OAuthCallbackError(BaseModel):
    success: bool = False
    error_code: str
    message: str


# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------


class EventListResponse(BaseModel):
    events: list[CalendarEvent]


class EventPatchRequest(BaseModel):
    """Body of ``PATCH /api/calendar/events/{event_id}``."""

    title: str | None = None
    start: str | None = None
    end: str | None = None
    location: str | None = None
    description: str | None = None
    attendees: list[str] | None = None
    recurrence: Recurrence | None = None


class SuccessResponse(BaseModel):
    success: bool = True


class CalendarStatusResponse(BaseModel):
    connected: bool
    expires_at: datetime | None = None
    needs_reconnect: bool = False


class CalendarValidateResponse(BaseModel):
    connected: bool
    valid: bool
    needs_reconnect: bool = False


class ActionLogEntryResponse(BaseModel):
    action: str
    event_id: str | None = None
    details: dict | None = None
    timestamp: datetime


# ---------------------------------------------------------------------------
# Voice
# ---------------------------------------------------------------------------


class VoiceTokenResponse(BaseModel):
    value: str
    model: str


class VoiceSessionResponse(BaseModel):
    session_id: str
    started_at: datetime
    ended_at: datetime | None = None
    tool_calls_count: int = 0


class VoiceSessionUpdateRequest(BaseModel):
    ended_at: datetime | None = None
    tool_calls_count: int | None = Field(default=None, ge=0)


class VoiceSessionIdRequest(BaseModel):
    session_id: str = Field(min_length=1)
