"""Shared fixtures: in-memory stores and HTTP response helpers."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest

from voicecal.config import GoogleOAuthConfig, RealtimeConfig
from voicecal.storage.action_log import ActionKind, ActionLogEntry
from voicecal.storage.tokens import TokenRecord
from voicecal.storage.voice_sessions import VoiceSessionNotFoundError, VoiceSessionRecord


def mock_response(
    status_code: int,
    json: Any = None,
    *,
    headers: dict[str, str] | None = None,
    method: str = "GET",
    url: str = "https://example.test/",
    text: str | None = None,
) -> httpx.Response:
    """Build a real ``httpx.Response`` bound to a request."""
    request = httpx.Request(method, url)
    if text is not None:
        return httpx.Response(status_code, text=text, headers=headers, request=request)
    if json is None:
        return httpx.Response(status_code, headers=headers, request=request)
    return httpx.Response(status_code, json=json, headers=headers, request=request)


class InMemoryTokenStore:
    """Dict-backed stand-in for :class:`voicecal.storage.TokenStore`."""

    def __init__(self) -> None:
        self.records: dict[str, TokenRecord] = {}
        self.upsert_error: Exception | None = None
        self.upserts = 0

    async def get(self, user_id: str) -> TokenRecord | None:
        return self.records.get(user_id)

    async def upsert(
        self,
        user_id: str,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> None:
        if self.upsert_error is not None:
            raise self.upsert_error
        self.upserts += 1
        self.records[user_id] = TokenRecord(
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )

    async def delete(self, user_id: str) -> bool:
        return self.records.pop(user_id, None) is not None

    def seed(
        self,
        user_id: str,
        *,
        expires_in: timedelta,
        access_token: str = "old-access",
        refresh_token: str = "refresh-1",
    ) -> None:
        self.records[user_id] = TokenRecord(
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=datetime.now(UTC) + expires_in,
        )


class InMemoryActionLog:
    def __init__(self) -> None:
        self.entries: list[ActionLogEntry] = []

    async def append(
        self,
        user_id: str,
        action: ActionKind | str,
        *,
        event_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.entries.append(
            ActionLogEntry(
                user_id=user_id,
                action=ActionKind(action),
                timestamp=datetime.now(UTC),
                event_id=event_id,
                details=details,
            )
        )

    async def list_recent(self, user_id: str, *, limit: int = 50) -> list[ActionLogEntry]:
        mine = [e for e in self.entries if e.user_id == user_id]
        return list(reversed(mine))[:limit]


class InMemoryVoiceSessionStore:
    """Dict-backed stand-in for :class:`voicecal.storage.VoiceSessionStore`."""

    def __init__(self) -> None:
        self.records: dict[tuple[str, str], VoiceSessionRecord] = {}
        self.updates: list[dict[str, Any]] = []

    async def create(self, user_id: str, session_id: str) -> VoiceSessionRecord:
        record = VoiceSessionRecord(
            user_id=user_id, session_id=session_id, started_at=datetime.now(UTC)
        )
        self.records[(user_id, session_id)] = record
        return record

    async def get(self, user_id: str, session_id: str) -> VoiceSessionRecord | None:
        return self.records.get((user_id, session_id))

    async def update(
        self,
        user_id: str,
        session_id: str,
        *,
        ended_at: datetime | None = None,
        tool_calls_count: int | None = None,
    ) -> VoiceSessionRecord:
        if tool_calls_count is not None and tool_calls_count < 0:
            raise ValueError("tool_calls_count must not be negative")
        current = self.records.get((user_id, session_id))
        if current is None:
            raise VoiceSessionNotFoundError(user_id, session_id)
        self.updates.append({"ended_at": ended_at, "tool_calls_count": tool_calls_count})
        record = VoiceSessionRecord(
            user_id=user_id,
            session_id=session_id,
            started_at=current.started_at,
            ended_at=current.ended_at or ended_at,
            tool_calls_count=max(current.tool_calls_count, tool_calls_count or 0),
        )
        self.records[(user_id, session_id)] = record
        return record

    async def end(
        self, user_id: str, session_id: str, *, tool_calls_count: int | None = None
    ) -> VoiceSessionRecord:
        return await self.update(
            user_id, session_id, ended_at=datetime.now(UTC), tool_calls_count=tool_calls_count
        )


@pytest.fixture()
def google_config() -> GoogleOAuthConfig:
    return GoogleOAuthConfig(
        client_id="test-client-id.apps.googleusercontent.com",
        client_secret="test-client-secret",
    )


@pytest.fixture()
def realtime_config() -> RealtimeConfig:
    return RealtimeConfig(api_key="sk-test-key")


@pytest.fixture()
def token_store() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest.fixture()
def action_log() -> InMemoryActionLog:
    return InMemoryActionLog()


@pytest.fixture()
def session_store() -> InMemoryVoiceSessionStore:
    return InMemoryVoiceSessionStore()
