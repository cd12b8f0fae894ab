"""User-level calendar operations with best-effort action logging."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from voicecal.calendar.client import CalendarClientFactory
from voicecal.calendar.models import CalendarEvent, EventCreate, EventUpdate
from voicecal.credentials import NotConnectedError, ReauthRequiredError
from voicecal.storage.action_log import ActionKind, ActionLog

logger = logging.getLogger(__name__)

DEFAULT_LIST_WINDOW = timedelta(days=7)
DEFAULT_MAX_RESULTS = 10


@dataclass(frozen=True)
class ConnectionValidation:
    connected: bool
    valid: bool
    needs_reconnect: bool = False


def _matches(event: CalendarEvent, query: str) -> bool:
    needle = query.lower()
    return needle in event.title.lower() or needle in (event.description or "").lower()


class CalendarService:
    """Calendar operations on behalf of a user.

    Every list/create/update/delete appends an action-log entry.  Logging is
    best-effort: a failed append is reported and never fails the operation.
    """

    def __init__(self, factory: CalendarClientFactory, action_log: ActionLog | None) -> None:
        self._factory = factory
        self._action_log = action_log

    async def list_events(
        self,
        user_id: str,
        *,
        start: datetime | str | None = None,
        end: datetime | str | None = None,
        max_results: int = DEFAULT_MAX_RESULTS,
        query: str | None = None,
    ) -> list[CalendarEvent]:
        """List events in ``[start, end)``; defaults to the next seven days.

        *query* filters case-insensitively on title and description.
        """
        now = datetime.now(UTC)
        start = start if start is not None else now
        end = end if end is not None else now + DEFAULT_LIST_WINDOW

        handle = await self._factory.for_user(user_id)
        events = await handle.list_events(start=start, end=end, max_results=max_results)
        if query:
            events = [event for event in events if _matches(event, query)]

        await self._log(
            user_id,
            ActionKind.LIST,
            details={
                "eventCount": len(events),
                "startTime": str(start),
                "endTime": str(end),
                "maxResults": max_results,
                "query": query,
            },
        )
        return events

    async def create_event(self, user_id: str, payload: EventCreate) -> CalendarEvent:
        handle = await self._factory.for_user(user_id)
        event = await handle.create_event(payload)
        await self._log(
            user_id,
            ActionKind.CREATE,
            event_id=event.id,
            details=payload.model_dump(exclude={"recurrence"}, exclude_none=True, mode="json"),
        )
        return event

    async def update_event(self, user_id: str, patch: EventUpdate) -> CalendarEvent:
        handle = await self._factory.for_user(user_id)
        event = await handle.update_event(patch)
        await self._log(
            user_id,
            ActionKind.UPDATE,
            event_id=patch.event_id,
            details={"changes": patch.changes()},
        )
        return event

    async def delete_event(self, user_id: str, event_id: str) -> None:
        handle = await self._factory.for_user(user_id)
        await handle.delete_event(event_id)
        await self._log(user_id, ActionKind.DELETE, event_id=event_id)

    async def validate_connection(self, user_id: str) -> ConnectionValidation:
        """Prove the stored credential works with a real Calendar API call.

        Refreshes the credential if it is stale.  A rejected credential is
        evicted and reported with ``needs_reconnect``.
        """
        try:
            handle = await self._factory.for_user(user_id)
            await handle.probe()
        except NotConnectedError:
            return ConnectionValidation(connected=False, valid=False)
        except ReauthRequiredError:
            return ConnectionValidation(connected=False, valid=False, needs_reconnect=True)
        return ConnectionValidation(connected=True, valid=True)

    async def disconnect(self, user_id: str) -> bool:
        """Forget the user's Google credential.  Idempotent."""
        deleted = await self._factory.manager.delete_credential(user_id)
        logger.info("Google Calendar disconnected: user_id=%r existed=%s", user_id, deleted)
        return deleted

    async def _log(
        self,
        user_id: str,
        action: ActionKind,
        *,
        event_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        if self._action_log is None:
            return
        try:
            await self._action_log.append(user_id, action, event_id=event_id, details=details)
        except Exception:
            logger.warning(
                "Failed to log calendar %s action: user_id=%r", action, user_id, exc_info=True
            )
