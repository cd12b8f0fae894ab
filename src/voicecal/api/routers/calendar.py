"""Calendar endpoints for the signed-in user.

All routes resolve the user from :func:`get_user_id`.  Credential and
provider failures propagate to the handlers in :mod:`voicecal.api.middleware`.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from voicecal.api.deps import (
    get_action_log,
    get_calendar_service,
    get_credential_manager,
    get_user_id,
)
from voicecal.api.models import (
    ActionLogEntryResponse,
    CalendarStatusResponse,
    CalendarValidateResponse,
    EventListResponse,
    EventPatchRequest,
    SuccessResponse,
)
from voicecal.calendar.models import CalendarEvent, EventCreate, EventUpdate
from voicecal.calendar.service import DEFAULT_MAX_RESULTS, CalendarService
from voicecal.credentials import CredentialManager
from voicecal.storage.action_log import ActionLog

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendar", tags=["calendar"])


@router.get("/events", response_model=EventListResponse)
async def list_events(
    start: str | None = Query(default=None, description="RFC 3339 lower bound."),
    end: str | None = Query(default=None, description="RFC 3339 upper bound."),
    max_results: int = Query(default=DEFAULT_MAX_RESULTS, ge=1, le=250, alias="max"),
    query: str | None = Query(default=None, alias="q"),
    user_id: str = Depends(get_user_id),
    service: CalendarService = Depends(get_calendar_service),
) -> EventListResponse:
    events = await service.list_events(
        user_id, start=start, end=end, max_results=max_results, query=query
    )
    return EventListResponse(events=events)


@router.post("/events", response_model=CalendarEvent, status_code=201)
async def create_event(
    body: EventCreate,
    user_id: str = Depends(get_user_id),
    service: CalendarService = Depends(get_calendar_service),
) -> CalendarEvent:
    return await service.create_event(user_id, body)


@router.patch("/events/{event_id}", response_model=CalendarEvent)
async def update_event(
    event_id: str,
    body: EventPatchRequest,
    user_id: str = Depends(get_user_id),
    service: CalendarService = Depends(get_calendar_service),
) -> CalendarEvent:
    """Apply a partial update; omitted fields keep their current values."""
    patch = EventUpdate(event_id=event_id, **body.model_dump(exclude_unset=True))
    return await service.update_event(user_id, patch)


@router.delete("/events/{event_id}", response_model=SuccessResponse)
async def delete_event(
    event_id: str,
    user_id: str = Depends(get_user_id),
    service: CalendarService = Depends(get_calendar_service),
) -> SuccessResponse:
    await service.delete_event(user_id, event_id)
    return SuccessResponse()


@router.get("/status", response_model=CalendarStatusResponse)
async def calendar_status(
    user_id: str = Depends(get_user_id),
    manager: CredentialManager = Depends(get_credential_manager),
) -> CalendarStatusResponse:
    """Report whether a credential is stored, without contacting Google."""
    status = await manager.connection_status(user_id)
    return CalendarStatusResponse(
        connected=status.connected,
        expires_at=status.expires_at,
        needs_reconnect=status.needs_reconnect,
    )


@router.get("/validate", response_model=CalendarValidateResponse)
async def validate_connection(
    user_id: str = Depends(get_user_id),
    service: CalendarService = Depends(get_calendar_service),
):
    """Prove the stored credential works with a live Calendar API call.

    Responds 401 with ``needs_reconnect`` when Google rejected the credential.
    """
    result = await service.validate_connection(user_id)
    payload = CalendarValidateResponse(
        connected=result.connected,
        valid=result.valid,
        needs_reconnect=result.needs_reconnect,
    )
    if result.needs_reconnect:
        return JSONResponse(status_code=401, content=payload.model_dump())
    return payload


@router.post("/disconnect", response_model=SuccessResponse)
async def disconnect(
    user_id: str = Depends(get_user_id),
    service: CalendarService = Depends(get_calendar_service),
) -> SuccessResponse:
    await service.disconnect(user_id)
    return SuccessResponse()


@router.get("/actions", response_model=list[ActionLogEntryResponse])
async def list_actions(
    limit: int = Query(default=50, ge=1, le=500),
    user_id: str = Depends(get_user_id),
    action_log: ActionLog = Depends(get_action_log),
) -> list[ActionLogEntryResponse]:
    """Most recent calendar actions performed for the user, newest first."""
    entries = await action_log.list_recent(user_id, limit=limit)
    return [
        ActionLogEntryResponse(
            action=entry.action.value,
            event_id=entry.event_id,
            details=entry.details,
            timestamp=entry.timestamp,
        )
        for entry in entries
    ]
