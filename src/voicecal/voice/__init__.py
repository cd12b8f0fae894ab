"""Realtime voice agent sessions: controller, bridge, tools and error taxonomy."""

from voicecal.voice.bridge import SessionEndSignal, SessionEventBridge
from voicecal.voice.controller import SessionSnapshot, SessionStatus, VoiceSessionController
from voicecal.voice.errors import (
    ErrorType,
    SessionError,
    classify_error,
    describe_error,
    normalize_error_message,
)
from voicecal.voice.realtime import (
    EphemeralCredentialError,
    EphemeralCredentialIssuer,
    RealtimeConnection,
    WebSocketRealtimeConnection,
)
from voicecal.voice.tools import CalendarAgentTools

__all__ = [
    "CalendarAgentTools",
    "EphemeralCredentialError",
    "EphemeralCredentialIssuer",
    "ErrorType",
    "RealtimeConnection",
    "SessionEndSignal",
    "SessionError",
    "SessionEventBridge",
    "SessionSnapshot",
    "SessionStatus",
    "VoiceSessionController",
    "WebSocketRealtimeConnection",
    "classify_error",
    "describe_error",
    "normalize_error_message",
]
