"""Google Calendar connect flow.

The flow:
  1. GET /api/oauth/google/url
     - Generates a cryptographically random state token (CSRF protection)
       bound to the requesting user, kept for 10 minutes.
     - Returns the Google authorization URL and the state as JSON.

  2. GET /api/oauth/google/callback
     - Validates and consumes the state token; the user comes from the state,
       not from request headers, since the browser arrives from Google.
     - Exchanges the authorization code and stores the credential through
       the credential manager.
     - Redirects to the dashboard URL when one is configured, otherwise
       returns a JSON payload.

Security notes:
  - State tokens are one-time-use and process-local.
  - Token values are never echoed back in responses or logged.
  - Provider error codes are mapped to fixed messages.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse, Response

from voicecal.api.deps import get_config, get_credential_manager, get_oauth_client, get_user_id
from voicecal.api.models import OAuthCallbackError, OAuthCallbackSuccess, OAuthUrlResponse
from voicecal.config import AppConfig
from voicecal.credentials import CredentialManager, GoogleOAuthClient, OAuthExchangeError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/oauth", tags=["oauth"])

# ---------------------------------------------------------------------------
# In-memory CSRF state store
# ---------------------------------------------------------------------------

_STATE_TTL_SECONDS = 600  # 10 minutes


@dataclass(frozen=True)
class _PendingState:
    user_id: str
    expires_at: float


# NOTE: process-local. CSRF validation fails across multiple worker processes.
_state_store: dict[str, _PendingState] = {}


def _generate_state() -> str:
    """Generate a cryptographically random CSRF state token."""
    return secrets.token_urlsafe(32)


def _store_state(state: str, user_id: str) -> None:
    _state_store[state] = _PendingState(user_id, time.monotonic() + _STATE_TTL_SECONDS)
    _evict_expired_states()


def _validate_and_consume_state(state: str) -> str | None:
    """Consume a state token; return its user when it was valid and unexpired."""
    _evict_expired_states()
    pending = _state_store.pop(state, None)
    if pending is None or time.monotonic() >= pending.expires_at:
        return None
    return pending.user_id


def _evict_expired_states() -> None:
    now = time.monotonic()
    expired = [k for k, pending in _state_store.items() if now >= pending.expires_at]
    for k in expired:
        del _state_store[k]


def _clear_state_store() -> None:
    """Clear all state entries. Used in tests."""
    _state_store.clear()


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/google/url", response_model=OAuthUrlResponse)
async def oauth_google_url(
    user_id: str = Depends(get_user_id),
    oauth_client: GoogleOAuthClient = Depends(get_oauth_client),
) -> OAuthUrlResponse:
    """Begin the Google Calendar authorization flow for the current user."""
    state = _generate_state()
    authorization_url = oauth_client.authorization_url(state)
    _store_state(state, user_id)
    logger.info("Google OAuth flow started: user_id=%r state=%s...", user_id, state[:8])
    return OAuthUrlResponse(authorization_url=authorization_url, state=state)


def _callback_error(
    config: AppConfig, error_code: str, message: str, *, redirect: bool = False
) -> Response:
    dashboard_url = config.google.dashboard_url
    if redirect and dashboard_url:
        return RedirectResponse(url=f"{dashboard_url}?oauth_error={error_code}", status_code=302)
    payload = OAuthCallbackError(error_code=error_code, message=message)
    return JSONResponse(status_code=400, content=payload.model_dump())


@router.get("/google/callback")
async def oauth_google_callback(
    code: str | None = Query(default=None, description="Authorization code from Google."),
    state: str | None = Query(default=None, description="CSRF state token."),
    error: str | None = Query(default=None, description="OAuth error code from Google."),
    config: AppConfig = Depends(get_config),
    oauth_client: GoogleOAuthClient = Depends(get_oauth_client),
    manager: CredentialManager = Depends(get_credential_manager),
) -> Response:
    """Handle Google's redirect after the user granted (or denied) access."""
    if error:
        logger.warning("Google OAuth provider error: %s", error)
        # Consume the state so it cannot be replayed after a cancelled flow.
        if state:
            _validate_and_consume_state(state)
        return _callback_error(
            config, "provider_error", _sanitize_provider_error(error), redirect=True
        )

    if not code:
        return _callback_error(
            config, "missing_code", "Authorization code is missing from the callback."
        )
    if not state:
        return _callback_error(
            config,
            "missing_state",
            "State parameter is missing from the callback. Possible CSRF attempt.",
        )

    user_id = _validate_and_consume_state(state)
    if user_id is None:
        logger.warning("OAuth callback received invalid or expired state token")
        return _callback_error(
            config,
            "invalid_state",
            "State parameter is invalid or expired. Please restart the OAuth flow.",
        )

    try:
        grant = await oauth_client.exchange_code(code)
    except OAuthExchangeError as exc:
        logger.warning("Google OAuth token exchange failed: user_id=%r: %s", user_id, exc)
        return _callback_error(
            config,
            "token_exchange_failed",
            "Failed to exchange authorization code for tokens. "
            "The code may have expired or already been used. Please restart the OAuth flow.",
            redirect=True,
        )

    if not grant.refresh_token:
        logger.warning("Google OAuth token response did not include a refresh token")
        return _callback_error(
            config,
            "no_refresh_token",
            "Google did not return a refresh token. Please disconnect and connect again.",
            redirect=True,
        )

    await manager.store_credential(
        user_id,
        access_token=grant.access_token,
        refresh_token=grant.refresh_token,
        expires_at=grant.expires_at,
    )
    logger.info("Google Calendar connected: user_id=%r scope=%s", user_id, grant.scope)

    if config.google.dashboard_url:
        return RedirectResponse(
            url=f"{config.google.dashboard_url}?oauth_success=true", status_code=302
        )
    payload = OAuthCallbackSuccess(
        message="Google Calendar connected.",
        scope=grant.scope,
    )
    return JSONResponse(content=payload.model_dump())


# ---------------------------------------------------------------------------
# Provider error sanitization
# ---------------------------------------------------------------------------

_KNOWN_PROVIDER_ERRORS: dict[str, str] = {
    "access_denied": "The user denied access. OAuth flow cancelled.",
    "invalid_request": "The OAuth request was malformed. Please restart the flow.",
    "unauthorized_client": "This application is not authorized to use Google OAuth. "
    "Check your OAuth app configuration.",
    "invalid_scope": "One or more requested OAuth scopes are invalid or not permitted.",
    "server_error": "Google encountered an internal error. Please try again.",
    "temporarily_unavailable": "Google OAuth is temporarily unavailable. Please try again later.",
}


def _sanitize_provider_error(error: str) -> str:
    """Map a provider error code to a fixed message; unknown codes get a generic one."""
    return _KNOWN_PROVIDER_ERRORS.get(
        error,
        "The OAuth authorization failed. Please restart the flow.",
    )
