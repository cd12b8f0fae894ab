"""Tests for voicecal.voice.tools: calendar tools exposed to the voice agent."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from tests.conftest import InMemoryVoiceSessionStore
from voicecal.calendar.client import CalendarRequestError
from voicecal.calendar.models import CalendarEvent, EventCreate, EventUpdate
from voicecal.calendar.service import CalendarService
from voicecal.credentials import NotConnectedError, ReauthRequiredError
from voicecal.voice.bridge import SessionEndSignal, SessionEventBridge
from voicecal.voice.tools import CalendarAgentTools

pytestmark = pytest.mark.unit


@pytest.fixture()
def calendar() -> AsyncMock:
    return AsyncMock(spec=CalendarService)


@pytest.fixture()
def bridge() -> SessionEventBridge:
    return SessionEventBridge()


@pytest.fixture()
def tools(
    calendar: AsyncMock, session_store: InMemoryVoiceSessionStore, bridge: SessionEventBridge
) -> CalendarAgentTools:
    return CalendarAgentTools(
        user_id="alice",
        calendar=calendar,
        sessions=session_store,  # type: ignore[arg-type]
        bridge=bridge,
        end_signal_delay=0,
    )


class TestDefinitions:
    def test_all_tools_declared(self, tools: CalendarAgentTools):
        names = [d["name"] for d in tools.definitions()]
        assert names == [
            "find_events",
            "create_event",
            "update_event",
            "delete_event",
            "end_voice_session",
        ]
        assert all(d["type"] == "function" for d in tools.definitions())

    def test_update_schema_uses_wire_names(self, tools: CalendarAgentTools):
        update = next(d for d in tools.definitions() if d["name"] == "update_event")
        assert "eventId" in update["parameters"]["properties"]


class TestCalendarTools:
    async def test_find_events(self, tools: CalendarAgentTools, calendar: AsyncMock):
        calendar.list_events.return_value = [CalendarEvent(id="1", title="Dentist")]

        result = await tools.call("find_events", {"query": "dentist", "max": 3})

        assert result["events"][0]["title"] == "Dentist"
        calendar.list_events.assert_awaited_once_with(
            "alice", start=None, end=None, query="dentist", max_results=3
        )

    async def test_create_event(self, tools: CalendarAgentTools, calendar: AsyncMock):
        calendar.create_event.return_value = CalendarEvent(id="new", title="Call")

        result = await tools.call(
            "create_event",
            {"title": "Call", "start": "2026-03-02T10:00:00Z", "end": "2026-03-02T10:30:00Z"},
        )

        assert result["success"] is True
        assert result["event"]["id"] == "new"
        user_id, payload = calendar.create_event.await_args.args
        assert user_id == "alice"
        assert isinstance(payload, EventCreate)

    async def test_update_event(self, tools: CalendarAgentTools, calendar: AsyncMock):
        calendar.update_event.return_value = CalendarEvent(id="1", title="Moved")

        result = await tools.call("update_event", {"eventId": "1", "start": "2026-03-03T09:00:00Z"})

        assert result["success"] is True
        _, patch = calendar.update_event.await_args.args
        assert isinstance(patch, EventUpdate)
        assert patch.event_id == "1"
        assert patch.changes() == {"start": "2026-03-03T09:00:00Z"}

    async def test_delete_event(self, tools: CalendarAgentTools, calendar: AsyncMock):
        assert await tools.call("delete_event", {"eventId": "1"}) == {"success": True}
        calendar.delete_event.assert_awaited_once_with("alice", "1")


class TestToolErrors:
    async def test_unknown_tool(self, tools: CalendarAgentTools):
        assert await tools.call("launch_rockets", {}) == {"error": "Unknown tool: launch_rockets"}

    async def test_invalid_arguments(self, tools: CalendarAgentTools):
        result = await tools.call("create_event", {"title": "No times"})
        assert result["error"].startswith("Invalid arguments for create_event")

    async def test_reauth_sets_needs_reconnect(
        self, tools: CalendarAgentTools, calendar: AsyncMock
    ):
        calendar.list_events.side_effect = ReauthRequiredError("alice")
        result = await tools.call("find_events", {})
        assert result["needs_reconnect"] is True
        assert "reconnect" in result["error"]

    async def test_not_connected(self, tools: CalendarAgentTools, calendar: AsyncMock):
        calendar.list_events.side_effect = NotConnectedError("alice")
        result = await tools.call("find_events", {})
        assert result == {"error": "Google Calendar is not connected"}

    async def test_calendar_request_error(self, tools: CalendarAgentTools, calendar: AsyncMock):
        calendar.delete_event.side_effect = CalendarRequestError(
            status_code=500, message="Backend Error"
        )
        assert await tools.call("delete_event", {"eventId": "1"}) == {"error": "Backend Error"}

    async def test_unexpected_error_is_generic(
        self, tools: CalendarAgentTools, calendar: AsyncMock
    ):
        calendar.delete_event.side_effect = RuntimeError("secret internals")
        result = await tools.call("delete_event", {"eventId": "1"})
        assert result == {"error": "Failed to run delete_event"}


class TestEndVoiceSession:
    async def test_without_active_session(self, tools: CalendarAgentTools):
        result = await tools.call("end_voice_session", {})
        assert result == {"error": "No active voice session found"}

    async def test_ends_record_then_signals(
        self,
        tools: CalendarAgentTools,
        session_store: InMemoryVoiceSessionStore,
        bridge: SessionEventBridge,
    ):
        await session_store.create("alice", "s1")
        bridge.publish_session("alice", "s1")
        received: list[SessionEndSignal] = []
        delivered = asyncio.Event()

        def on_end(signal: SessionEndSignal) -> None:
            # The record must already be closed when the signal arrives.
            assert session_store.records[("alice", "s1")].ended_at is not None
            received.append(signal)
            delivered.set()

        bridge.subscribe(on_end)

        result = await tools.call("end_voice_session", {})

        assert result == {"success": True, "message": "Voice session ended"}
        await asyncio.wait_for(delivered.wait(), timeout=1)
        assert received == [SessionEndSignal("alice", "s1")]

    async def test_missing_record_reported(
        self, tools: CalendarAgentTools, bridge: SessionEventBridge
    ):
        bridge.publish_session("alice", "ghost")
        result = await tools.call("end_voice_session", {})
        assert result == {"error": "Voice session not found: ghost"}
