"""Service wiring and FastAPI dependencies.

:class:`AppServices` holds every long-lived collaborator; the lifespan
handler builds one and stores it on ``app.state.services``.  Route handlers
reach collaborators only through the getter dependencies below, so tests
replace them with ``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import httpx
from fastapi import Header, Request

from voicecal.calendar.client import CalendarClientFactory
from voicecal.calendar.service import CalendarService
from voicecal.config import AppConfig
from voicecal.core.logging import set_user_context
from voicecal.credentials import CredentialManager, GoogleOAuthClient
from voicecal.db import create_pool
from voicecal.storage import ActionLog, TokenStore, VoiceSessionStore, ensure_schema
from voicecal.voice.bridge import SessionEventBridge
from voicecal.voice.controller import VoiceSessionController
from voicecal.voice.devices import MicrophoneProbe
from voicecal.voice.realtime import EphemeralCredentialIssuer, WebSocketRealtimeConnection
from voicecal.voice.tools import CalendarAgentTools

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"


class UnauthenticatedError(Exception):
    """The request carries no user identity."""


@dataclass
class AppServices:
    config: AppConfig
    http_client: httpx.AsyncClient
    oauth_client: GoogleOAuthClient
    credential_manager: CredentialManager
    calendar_service: CalendarService
    session_store: VoiceSessionStore
    action_log: ActionLog
    issuer: EphemeralCredentialIssuer
    bridge: SessionEventBridge
    pool: asyncpg.Pool | None = None

    def voice_tools(self, user_id: str) -> CalendarAgentTools:
        return CalendarAgentTools(
            user_id=user_id,
            calendar=self.calendar_service,
            sessions=self.session_store,
            bridge=self.bridge,
            end_signal_delay=self.config.voice.end_signal_delay_seconds,
        )

    def voice_controller(
        self,
        user_id: str,
        *,
        microphone_probe: MicrophoneProbe | None = None,
        **observers: Any,
    ) -> VoiceSessionController:
        """Build a session controller whose agent can use the calendar tools."""
        return VoiceSessionController(
            user_id=user_id,
            issuer=self.issuer,
            sessions=self.session_store,
            bridge=self.bridge,
            connection_factory=lambda: WebSocketRealtimeConnection(
                self.config.realtime, tools=self.voice_tools(user_id)
            ),
            microphone_probe=microphone_probe,
            teardown_grace=self.config.voice.teardown_grace_seconds,
            **observers,
        )

    async def aclose(self) -> None:
        await self.bridge.aclose()
        await self.http_client.aclose()
        if self.pool is not None:
            await self.pool.close()


async def build_services(config: AppConfig) -> AppServices:
    """Open the DB pool and HTTP client and wire all collaborators."""
    pool = await create_pool(config.database)
    await ensure_schema(pool)
    http_client = httpx.AsyncClient(timeout=30.0)

    token_store = TokenStore(pool)
    action_log = ActionLog(pool)
    oauth_client = GoogleOAuthClient(config.google, http_client)
    manager = CredentialManager(
        token_store,
        oauth_client,
        refresh_margin=timedelta(seconds=config.google.refresh_margin_seconds),
    )
    factory = CalendarClientFactory(manager, http_client)
    return AppServices(
        config=config,
        http_client=http_client,
        oauth_client=oauth_client,
        credential_manager=manager,
        calendar_service=CalendarService(factory, action_log),
        session_store=VoiceSessionStore(pool),
        action_log=action_log,
        issuer=EphemeralCredentialIssuer(config.realtime, http_client),
        bridge=SessionEventBridge(),
        pool=pool,
    )


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_user_id(x_user_id: str | None = Header(default=None, alias=USER_ID_HEADER)) -> str:
    """Resolve the acting user from the identity provider's header."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise UnauthenticatedError("Unauthorized")
    set_user_context(user_id)
    return user_id


def get_services(request: Request) -> AppServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Application services are not initialized")
    return services


def get_config(request: Request) -> AppConfig:
    return get_services(request).config


def get_oauth_client(request: Request) -> GoogleOAuthClient:
    return get_services(request).oauth_client


def get_credential_manager(request: Request) -> CredentialManager:
    return get_services(request).credential_manager


def get_calendar_service(request: Request) -> CalendarService:
    return get_services(request).calendar_service


def get_action_log(request: Request) -> ActionLog:
    return get_services(request).action_log


def get_session_store(request: Request) -> VoiceSessionStore:
    return get_services(request).session_store


def get_issuer(request: Request) -> EphemeralCredentialIssuer:
    return get_services(request).issuer


def get_bridge(request: Request) -> SessionEventBridge:
    return get_services(request).bridge
