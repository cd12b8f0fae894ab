"""Voice session endpoints: ephemeral credentials and session records."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from voicecal.api.deps import (
    get_bridge,
    get_config,
    get_issuer,
    get_session_store,
    get_user_id,
)
from voicecal.api.models import (
    VoiceSessionIdRequest,
    VoiceSessionResponse,
    VoiceSessionUpdateRequest,
    VoiceTokenResponse,
)
from voicecal.config import AppConfig
from voicecal.storage.voice_sessions import VoiceSessionRecord, VoiceSessionStore
from voicecal.voice.bridge import SessionEventBridge
from voicecal.voice.realtime import EphemeralCredentialIssuer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/voice", tags=["voice"])


def _to_response(record: VoiceSessionRecord) -> VoiceSessionResponse:
    return VoiceSessionResponse(
        session_id=record.session_id,
        started_at=record.started_at,
        ended_at=record.ended_at,
        tool_calls_count=record.tool_calls_count,
    )


@router.post("/token", response_model=VoiceTokenResponse)
async def issue_token(
    user_id: str = Depends(get_user_id),
    issuer: EphemeralCredentialIssuer = Depends(get_issuer),
    config: AppConfig = Depends(get_config),
) -> VoiceTokenResponse:
    """Mint a short-lived client secret for a browser-side agent connection."""
    value = await issuer.issue()
    return VoiceTokenResponse(value=value, model=config.realtime.model)


@router.post("/sessions", response_model=VoiceSessionResponse, status_code=201)
async def create_session(
    body: VoiceSessionIdRequest,
    user_id: str = Depends(get_user_id),
    sessions: VoiceSessionStore = Depends(get_session_store),
    bridge: SessionEventBridge = Depends(get_bridge),
) -> VoiceSessionResponse:
    record = await sessions.create(user_id, body.session_id)
    bridge.publish_session(user_id, body.session_id)
    return _to_response(record)


@router.patch("/sessions/{session_id}", response_model=VoiceSessionResponse)
async def update_session(
    session_id: str,
    body: VoiceSessionUpdateRequest,
    user_id: str = Depends(get_user_id),
    sessions: VoiceSessionStore = Depends(get_session_store),
) -> VoiceSessionResponse:
    """Patch ``ended_at`` and/or ``tool_calls_count``; the count never decreases."""
    record = await sessions.update(
        user_id,
        session_id,
        ended_at=body.ended_at,
        tool_calls_count=body.tool_calls_count,
    )
    return _to_response(record)


@router.post("/sessions/stop", response_model=VoiceSessionResponse)
async def stop_session(
    body: VoiceSessionIdRequest,
    user_id: str = Depends(get_user_id),
    sessions: VoiceSessionStore = Depends(get_session_store),
    bridge: SessionEventBridge = Depends(get_bridge),
) -> VoiceSessionResponse:
    """Mark the session ended and signal any live controller to tear down."""
    record = await sessions.end(user_id, body.session_id)
    if bridge.active_session_id(user_id) == body.session_id:
        bridge.request_end(user_id, body.session_id, delay=0)
    logger.info("Voice session stopped: user_id=%r session_id=%s", user_id, body.session_id)
    return _to_response(record)
