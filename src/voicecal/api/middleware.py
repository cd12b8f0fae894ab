"""API error handling middleware — consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "..."}}`` JSON responses.

Status code mapping:
- ``UnauthenticatedError`` → 401 Unauthorized
- ``ReauthRequiredError`` → 401 with ``needs_reconnect: true``
- ``NotConnectedError`` → 409 Conflict
- ``TransientCredentialError`` → 503 Service Unavailable
- ``CalendarRequestError`` → 502 Bad Gateway (503 when the API is disabled)
- ``VoiceSessionNotFoundError`` → 404 Not Found
- ``EphemeralCredentialError`` → 502 Bad Gateway
- ``ConfigError`` → 503 Service Unavailable
- ``ValueError`` → 400 Bad Request
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from voicecal.api.deps import UnauthenticatedError
from voicecal.api.models import ErrorDetail, ErrorResponse
from voicecal.calendar.client import CalendarRequestError
from voicecal.config import ConfigError
from voicecal.credentials import (
    NotConnectedError,
    ReauthRequiredError,
    TransientCredentialError,
)
from voicecal.storage.voice_sessions import VoiceSessionNotFoundError
from voicecal.voice.realtime import EphemeralCredentialError

logger = logging.getLogger(__name__)

CALENDAR_API_HELP_URL = "https://console.cloud.google.com/apis/library/calendar-json.googleapis.com"


def _error(status_code: int, code: str, message: str, **extra) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, **extra))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


async def _handle_unauthenticated(request: Request, exc: UnauthenticatedError) -> JSONResponse:
    return _error(401, "UNAUTHORIZED", str(exc) or "Unauthorized")


async def _handle_reauth_required(request: Request, exc: ReauthRequiredError) -> JSONResponse:
    """Return 401 so the client prompts the user to reconnect Google Calendar."""
    logger.info("Calendar reauthorization required: user_id=%r", exc.user_id)
    return _error(401, "REAUTH_REQUIRED", str(exc), needs_reconnect=True)


async def _handle_not_connected(request: Request, exc: NotConnectedError) -> JSONResponse:
    return _error(409, "NOT_CONNECTED", str(exc))


async def _handle_transient(request: Request, exc: TransientCredentialError) -> JSONResponse:
    logger.warning("Transient credential failure: %s", exc)
    return _error(503, "CREDENTIAL_UNAVAILABLE", str(exc))


async def _handle_calendar_request(request: Request, exc: CalendarRequestError) -> JSONResponse:
    """Map Google Calendar API failures onto gateway errors."""
    if exc.api_disabled:
        return _error(
            503,
            "CALENDAR_API_DISABLED",
            "Google Calendar API is not enabled for this project",
            details={"help_url": CALENDAR_API_HELP_URL},
        )
    if exc.status_code == 404:
        return _error(404, "EVENT_NOT_FOUND", exc.message)
    logger.warning("Calendar request failed (%d): %s", exc.status_code, exc.message)
    return _error(502, "CALENDAR_REQUEST_FAILED", exc.message)


async def _handle_session_not_found(
    request: Request, exc: VoiceSessionNotFoundError
) -> JSONResponse:
    return _error(404, "VOICE_SESSION_NOT_FOUND", str(exc))


async def _handle_ephemeral_credential(
    request: Request, exc: EphemeralCredentialError
) -> JSONResponse:
    logger.warning("Ephemeral credential issuance failed: %s", exc.message)
    details = {"upstream_status": exc.status_code} if exc.status_code is not None else None
    return _error(502, "EPHEMERAL_CREDENTIAL_FAILED", exc.message, details=details)


async def _handle_config_error(request: Request, exc: ConfigError) -> JSONResponse:
    logger.error("Configuration error: %s", exc)
    return _error(503, "NOT_CONFIGURED", str(exc))


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error(400, "VALIDATION_ERROR", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(UnauthenticatedError, _handle_unauthenticated)  # type: ignore[arg-type]
    app.add_exception_handler(ReauthRequiredError, _handle_reauth_required)  # type: ignore[arg-type]
    app.add_exception_handler(NotConnectedError, _handle_not_connected)  # type: ignore[arg-type]
    app.add_exception_handler(TransientCredentialError, _handle_transient)  # type: ignore[arg-type]
    app.add_exception_handler(CalendarRequestError, _handle_calendar_request)  # type: ignore[arg-type]
    app.add_exception_handler(VoiceSessionNotFoundError, _handle_session_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(EphemeralCredentialError, _handle_ephemeral_credential)  # type: ignore[arg-type]
    app.add_exception_handler(ConfigError, _handle_config_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
