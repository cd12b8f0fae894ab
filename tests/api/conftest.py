"""Shared fixtures for API tests.

The app is built with :func:`create_app` and pre-wired with an
:class:`AppServices` made of in-memory stores and mocks, so the lifespan
never opens a database pool.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi import FastAPI

from tests.conftest import InMemoryActionLog, InMemoryTokenStore, InMemoryVoiceSessionStore
from voicecal.api.app import create_app
from voicecal.api.deps import AppServices
from voicecal.calendar.service import CalendarService
from voicecal.config import AppConfig, GoogleOAuthConfig
from voicecal.credentials import CredentialManager, OAuthExchangeError, TokenGrant
from voicecal.voice.bridge import SessionEventBridge
from voicecal.voice.realtime import EphemeralCredentialIssuer


class FakeOAuthClient:
    """Authorization-code side of the Google token endpoint."""

    def __init__(self) -> None:
        self.exchanged: list[str] = []
        self.exchange_error: Exception | None = None
        self.refresh_token: str | None = "refresh-from-google"

    def authorization_url(self, state: str) -> str:
        return f"https://accounts.google.com/o/oauth2/v2/auth?state={state}"

    async def exchange_code(self, code: str) -> TokenGrant:
        self.exchanged.append(code)
        if self.exchange_error is not None:
            raise self.exchange_error
        return TokenGrant(
            access_token="ya29.fresh",
            refresh_token=self.refresh_token,
            expires_at=datetime.now(UTC) + timedelta(hours=1),
            scope="https://www.googleapis.com/auth/calendar.events",
        )

    async def refresh(self, refresh_token: str) -> TokenGrant:
        raise OAuthExchangeError("refresh is not expected in API tests")


@pytest.fixture()
def oauth_client() -> FakeOAuthClient:
    return FakeOAuthClient()


@pytest.fixture()
def services(
    oauth_client: FakeOAuthClient,
    token_store: InMemoryTokenStore,
    action_log: InMemoryActionLog,
    session_store: InMemoryVoiceSessionStore,
) -> AppServices:
    config = AppConfig(
        google=GoogleOAuthConfig(client_id="test-client-id", client_secret="test-secret")
    )
    return AppServices(
        config=config,
        http_client=AsyncMock(spec=httpx.AsyncClient),
        oauth_client=oauth_client,  # type: ignore[arg-type]
        credential_manager=CredentialManager(token_store, oauth_client),  # type: ignore[arg-type]
        calendar_service=AsyncMock(spec=CalendarService),
        session_store=session_store,  # type: ignore[arg-type]
        action_log=action_log,  # type: ignore[arg-type]
        issuer=AsyncMock(spec=EphemeralCredentialIssuer),
        bridge=SessionEventBridge(),
    )


@pytest.fixture()
def app(services: AppServices) -> FastAPI:
    app = create_app(services.config)
    app.state.services = services
    return app


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as http:
        yield http
