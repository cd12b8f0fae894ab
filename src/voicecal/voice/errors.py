"""Voice session error normalization and classification.

Everything here is pure and synchronous.  :func:`normalize_error_message`
reduces whatever a transport or service raised (strings, exceptions, nested
``{"error": {"message": ...}}`` payloads, opaque objects) to one display
string; :func:`classify_error` maps a failure onto :class:`ErrorType`, by
exception type for transport failures and by keyword family otherwise.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import httpx
from websockets.exceptions import ConnectionClosed, InvalidHandshake

UNKNOWN_ERROR_MESSAGE = "Unknown error"

# Source hint for failures raised while minting the ephemeral credential.
SOURCE_EPHEMERAL_CREDENTIAL = "ephemeral_credential"


class ErrorType(StrEnum):
    MICROPHONE = "microphone"
    CREDENTIAL = "credential"
    NETWORK = "network"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SessionError:
    """A user-facing error surfaced by the voice session controller."""

    message: str
    type: ErrorType


_CREDENTIAL_KEYWORDS = (
    "api key",
    "authentication",
    "unauthorized",
    "invalid api key",
    "ephemeral token",
)
_MICROPHONE_KEYWORDS = ("microphone", "audio", "permission denied", "getusermedia")
_NETWORK_KEYWORDS = ("network", "webrtc", "connection", "timeout", "fetch")

# Transport failures, including timeouts, whose text is often empty.
_NETWORK_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionError,
    httpx.TransportError,
    ConnectionClosed,
    InvalidHandshake,
)


def _message_field(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return value if isinstance(value, str) else str(value)


def normalize_error_message(err: Any) -> str:
    """Reduce an arbitrary error shape to a single display string."""
    if err is None or err == "":
        return UNKNOWN_ERROR_MESSAGE

    if isinstance(err, str):
        return err

    if isinstance(err, BaseException):
        return str(err) or "Error occurred"

    if isinstance(err, Mapping):
        message = _message_field(err.get("message"))
        if message is not None:
            return message
        nested = err.get("error")
        if isinstance(nested, str) and nested:
            return nested
        if isinstance(nested, Mapping):
            message = _message_field(nested.get("message"))
            if message is not None:
                return message
        try:
            serialized = json.dumps(err, default=str)
        except (TypeError, ValueError):
            serialized = None
        if serialized and serialized != "{}":
            return serialized
        return str(err)

    message = _message_field(getattr(err, "message", None))
    if message is not None:
        return message
    return str(err)


def classify_error(raw_error: Any, source: str | None = None) -> ErrorType:
    """Classify *raw_error* into an :class:`ErrorType`.

    *source* names the step that failed; failures while minting the
    ephemeral credential are always credential errors.  Transport
    exceptions are network errors whatever their text says.
    """
    if source == SOURCE_EPHEMERAL_CREDENTIAL:
        return ErrorType.CREDENTIAL
    if isinstance(raw_error, _NETWORK_EXCEPTIONS):
        return ErrorType.NETWORK

    lower = normalize_error_message(raw_error).lower()
    if any(k in lower for k in _CREDENTIAL_KEYWORDS):
        return ErrorType.CREDENTIAL
    if any(k in lower for k in _MICROPHONE_KEYWORDS):
        return ErrorType.MICROPHONE
    if any(k in lower for k in _NETWORK_KEYWORDS):
        return ErrorType.NETWORK
    return ErrorType.UNKNOWN


def describe_error(message: str, error_type: ErrorType | None = None) -> str:
    """Append a remediation hint to a connection error message."""
    lower = message.lower()
    if "permission" in lower:
        if error_type is ErrorType.CREDENTIAL or any(
            k in lower for k in ("api", "token", "authentication")
        ):
            return (
                f"Permission denied: {message}. Please check your OpenAI API key "
                "permissions and ensure you have access to the Realtime API."
            )
        return f"Permission denied: {message}. Please grant microphone access and try again."
    if "network" in lower or "webrtc" in lower:
        return f"Network error: {message}. Please check your internet connection and try again."
    if "timeout" in lower:
        return f"Connection timeout: {message}. Please try again."
    if "microphone" in lower or "audio" in lower:
        return (
            f"Audio error: {message}. Please ensure your microphone is connected "
            "and permissions are granted."
        )
    return message


def session_error(
    raw_error: Any,
    *,
    source: str | None = None,
    prefix: str | None = None,
) -> SessionError:
    """Build a :class:`SessionError` from a raw failure."""
    message = normalize_error_message(raw_error)
    error_type = classify_error(raw_error, source)
    if prefix is not None:
        return SessionError(message=f"{prefix}: {message}", type=error_type)
    return SessionError(message=describe_error(message, error_type), type=error_type)
