"""Calendar tools exposed to the realtime voice agent.

Tool failures never raise into the agent connection: they come back as
``{"error": ...}`` results the agent can read out to the user.  A revoked
Google credential additionally sets ``needs_reconnect``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from voicecal.calendar.client import CalendarRequestError
from voicecal.calendar.models import EventCreate, EventUpdate, Recurrence
from voicecal.calendar.service import CalendarService
from voicecal.credentials import CredentialError, ReauthRequiredError
from voicecal.storage.voice_sessions import VoiceSessionStore
from voicecal.voice.bridge import DEFAULT_END_SIGNAL_DELAY_SECONDS, SessionEventBridge

logger = logging.getLogger(__name__)


class FindEventsArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str | None = None
    start: str | None = None
    end: str | None = None
    max_results: int | None = Field(default=None, alias="max", ge=1)


class CreateEventArgs(BaseModel):
    title: str = Field(min_length=1)
    start: str
    end: str
    location: str | None = None
    attendees: list[str] | None = None
    recurrence: Recurrence | None = None


class UpdateEventArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(alias="eventId", min_length=1)
    title: str | None = None
    start: str | None = None
    end: str | None = None
    location: str | None = None
    attendees: list[str] | None = None
    recurrence: Recurrence | None = None


class DeleteEventArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(alias="eventId", min_length=1)


class EndVoiceSessionArgs(BaseModel):
    pass


_TOOL_DESCRIPTIONS: dict[str, tuple[str, type[BaseModel]]] = {
    "find_events": (
        "Find calendar events by query, date range, or list upcoming events",
        FindEventsArgs,
    ),
    "create_event": ("Create a new calendar event", CreateEventArgs),
    "update_event": ("Update an existing calendar event", UpdateEventArgs),
    "delete_event": ("Delete a calendar event by ID", DeleteEventArgs),
    "end_voice_session": (
        "End the current voice session. Use this when the user confirms they want to "
        "end the session after you ask for confirmation.",
        EndVoiceSessionArgs,
    ),
}


class CalendarAgentTools:
    """Tool registry bound to one user."""

    def __init__(
        self,
        *,
        user_id: str,
        calendar: CalendarService,
        sessions: VoiceSessionStore,
        bridge: SessionEventBridge,
        end_signal_delay: float = DEFAULT_END_SIGNAL_DELAY_SECONDS,
    ) -> None:
        self.user_id = user_id
        self._calendar = calendar
        self._sessions = sessions
        self._bridge = bridge
        self._end_signal_delay = end_signal_delay
        self._handlers: dict[str, Callable[[Any], Awaitable[dict[str, Any]]]] = {
            "find_events": self.find_events,
            "create_event": self.create_event,
            "update_event": self.update_event,
            "delete_event": self.delete_event,
            "end_voice_session": self.end_voice_session,
        }

    def definitions(self) -> list[dict[str, Any]]:
        """Function-tool definitions for the agent's ``session.update``."""
        return [
            {
                "type": "function",
                "name": name,
                "description": description,
                "parameters": model.model_json_schema(),
            }
            for name, (description, model) in _TOOL_DESCRIPTIONS.items()
        ]

    async def call(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        entry = _TOOL_DESCRIPTIONS.get(name)
        if entry is None:
            return {"error": f"Unknown tool: {name}"}
        _, model = entry
        try:
            args = model.model_validate(arguments)
        except ValidationError as exc:
            return {"error": f"Invalid arguments for {name}: {exc.errors()[0]['msg']}"}

        try:
            return await self._handlers[name](args)
        except ReauthRequiredError as exc:
            return {"error": str(exc), "needs_reconnect": True}
        except CalendarRequestError as exc:
            return {"error": exc.message}
        except (CredentialError, LookupError, ValueError) as exc:
            return {"error": str(exc)}
        except Exception:
            logger.exception("Agent tool %r failed: user_id=%r", name, self.user_id)
            return {"error": f"Failed to run {name}"}

    async def find_events(self, args: FindEventsArgs) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"start": args.start, "end": args.end, "query": args.query}
        if args.max_results is not None:
            kwargs["max_results"] = args.max_results
        events = await self._calendar.list_events(self.user_id, **kwargs)
        return {"events": [event.model_dump() for event in events]}

    async def create_event(self, args: CreateEventArgs) -> dict[str, Any]:
        event = await self._calendar.create_event(
            self.user_id, EventCreate.model_validate(args.model_dump())
        )
        return {"success": True, "event": event.model_dump()}

    async def update_event(self, args: UpdateEventArgs) -> dict[str, Any]:
        event = await self._calendar.update_event(
            self.user_id, EventUpdate.model_validate(args.model_dump())
        )
        return {"success": True, "event": event.model_dump()}

    async def delete_event(self, args: DeleteEventArgs) -> dict[str, Any]:
        await self._calendar.delete_event(self.user_id, args.event_id)
        return {"success": True}

    async def end_voice_session(self, args: EndVoiceSessionArgs) -> dict[str, Any]:
        session_id = self._bridge.active_session_id(self.user_id)
        if not session_id:
            return {"error": "No active voice session found"}

        await self._sessions.end(self.user_id, session_id)
        self._bridge.request_end(self.user_id, session_id, delay=self._end_signal_delay)
        logger.info("Agent requested end of voice session %s", session_id)
        return {"success": True, "message": "Voice session ended"}
