"""Tests for the /api/voice endpoints."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from tests.conftest import InMemoryVoiceSessionStore
from voicecal.api.deps import USER_ID_HEADER, AppServices
from voicecal.voice.bridge import SessionEndSignal
from voicecal.voice.realtime import EphemeralCredentialError

pytestmark = pytest.mark.unit

ALICE = {USER_ID_HEADER: "alice"}


class TestToken:
    async def test_issues_token(self, client: httpx.AsyncClient, services: AppServices):
        issuer: AsyncMock = services.issuer  # type: ignore[assignment]
        issuer.issue.return_value = "ek_123"

        response = await client.post("/api/voice/token", headers=ALICE)

        assert response.status_code == 200
        assert response.json() == {"value": "ek_123", "model": services.config.realtime.model}

    async def test_upstream_refusal(self, client: httpx.AsyncClient, services: AppServices):
        issuer: AsyncMock = services.issuer  # type: ignore[assignment]
        issuer.issue.side_effect = EphemeralCredentialError(
            "Authentication failed: bad key. Please check your OpenAI API key.", status_code=401
        )

        response = await client.post("/api/voice/token", headers=ALICE)

        assert response.status_code == 502
        error = response.json()["error"]
        assert error["code"] == "EPHEMERAL_CREDENTIAL_FAILED"
        assert error["details"] == {"upstream_status": 401}

    async def test_requires_user(self, client: httpx.AsyncClient, services: AppServices):
        response = await client.post("/api/voice/token")
        assert response.status_code == 401
        services.issuer.issue.assert_not_awaited()  # type: ignore[attr-defined]


class TestSessions:
    async def test_create_publishes_active_session(
        self, client: httpx.AsyncClient, services: AppServices
    ):
        response = await client.post(
            "/api/voice/sessions", json={"session_id": "s1"}, headers=ALICE
        )

        assert response.status_code == 201
        body = response.json()
        assert body["session_id"] == "s1"
        assert body["ended_at"] is None
        assert body["tool_calls_count"] == 0
        assert services.bridge.active_session_id("alice") == "s1"

    async def test_create_requires_session_id(self, client: httpx.AsyncClient):
        response = await client.post(
            "/api/voice/sessions", json={"session_id": ""}, headers=ALICE
        )
        assert response.status_code == 422

    async def test_tool_count_never_decreases(
        self, client: httpx.AsyncClient, session_store: InMemoryVoiceSessionStore
    ):
        await session_store.create("alice", "s1")

        first = await client.patch(
            "/api/voice/sessions/s1", json={"tool_calls_count": 3}, headers=ALICE
        )
        second = await client.patch(
            "/api/voice/sessions/s1", json={"tool_calls_count": 1}, headers=ALICE
        )

        assert first.json()["tool_calls_count"] == 3
        assert second.json()["tool_calls_count"] == 3

    async def test_negative_count_rejected(self, client: httpx.AsyncClient):
        response = await client.patch(
            "/api/voice/sessions/s1", json={"tool_calls_count": -1}, headers=ALICE
        )
        assert response.status_code == 422

    async def test_update_unknown_session(self, client: httpx.AsyncClient):
        response = await client.patch(
            "/api/voice/sessions/ghost", json={"tool_calls_count": 1}, headers=ALICE
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "VOICE_SESSION_NOT_FOUND"

    async def test_sessions_are_per_user(
        self, client: httpx.AsyncClient, session_store: InMemoryVoiceSessionStore
    ):
        await session_store.create("bob", "s1")
        response = await client.patch(
            "/api/voice/sessions/s1", json={"tool_calls_count": 1}, headers=ALICE
        )
        assert response.status_code == 404


class TestStop:
    async def test_stop_ends_record_and_signals_live_session(
        self, client: httpx.AsyncClient, services: AppServices
    ):
        await client.post("/api/voice/sessions", json={"session_id": "s1"}, headers=ALICE)
        delivered = asyncio.Event()
        received: list[SessionEndSignal] = []

        def on_end(signal: SessionEndSignal) -> None:
            received.append(signal)
            delivered.set()

        services.bridge.subscribe(on_end)

        response = await client.post(
            "/api/voice/sessions/stop", json={"session_id": "s1"}, headers=ALICE
        )

        assert response.status_code == 200
        assert response.json()["ended_at"] is not None
        await asyncio.wait_for(delivered.wait(), timeout=1)
        assert received == [SessionEndSignal("alice", "s1")]

    async def test_stop_other_session_sends_no_signal(
        self,
        client: httpx.AsyncClient,
        services: AppServices,
        session_store: InMemoryVoiceSessionStore,
    ):
        await session_store.create("alice", "old")
        services.bridge.publish_session("alice", "current")
        received: list[SessionEndSignal] = []
        services.bridge.subscribe(received.append)

        response = await client.post(
            "/api/voice/sessions/stop", json={"session_id": "old"}, headers=ALICE
        )
        await asyncio.sleep(0)

        assert response.status_code == 200
        assert received == []

    async def test_stop_unknown_session(self, client: httpx.AsyncClient):
        response = await client.post(
            "/api/voice/sessions/stop", json={"session_id": "ghost"}, headers=ALICE
        )
        assert response.status_code == 404
