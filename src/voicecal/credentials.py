"""Per-user Google OAuth credential lifecycle.

The :class:`CredentialManager` is the only writer of the token store.  It
hands out a credential that is guaranteed not to be stale, refreshing it
through :class:`GoogleOAuthClient` when the access token is within the
refresh margin (5 minutes by default) of its expiry.

Refresh outcomes:

- success: the new access token and expiry are persisted.  The prior
  refresh token is kept when the provider does not rotate it.
- invalid grant (``{"error": "invalid_grant"}`` or a 2xx reply without an
  ``access_token``): the stored tokens are deleted and
  :class:`ReauthRequiredError` is raised.  Terminal; callers must prompt the
  user to reconnect.
- anything else (network failure, rate limit, malformed reply, failed store
  write): :class:`TransientCredentialError`.  The stored tokens are kept.

At most one refresh call is in flight per user.  Concurrent callers for the
same user await the same refresh task and observe its outcome; callers for
other users are never blocked by it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field

from voicecal.config import GoogleOAuthConfig
from voicecal.core.redaction import safe_error_message
from voicecal.storage.tokens import TokenRecord, TokenStore

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_EXPIRES_IN_SECONDS = 3600
DEFAULT_REFRESH_MARGIN = timedelta(minutes=5)
# Users remembered as needing re-authorization; the oldest mark is dropped first.
DEFAULT_MAX_REAUTH_MARKS = 10_000


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CredentialError(Exception):
    """Base class for credential lifecycle failures."""


class NotConnectedError(CredentialError):
    """No credential is on file for the user."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__("Google Calendar is not connected")


class ReauthRequiredError(CredentialError):
    """The stored credential is permanently invalid; the user must re-authorize.

    The stored tokens have already been evicted by the time this is raised.
    """

    def __init__(self, user_id: str, reason: str | None = None) -> None:
        self.user_id = user_id
        self.reason = reason
        super().__init__("Google Calendar authorization expired. Please reconnect your calendar.")


class TransientCredentialError(CredentialError):
    """A retryable failure while refreshing or persisting a credential."""


class OAuthExchangeError(CredentialError):
    """The authorization code could not be exchanged for tokens."""


class InvalidGrantError(CredentialError):
    """The token endpoint refused the refresh token itself."""


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class OAuthCredential(BaseModel):
    """A usable access/refresh token pair with its absolute expiry."""

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    expires_at: datetime

    @classmethod
    def from_record(cls, record: TokenRecord) -> OAuthCredential:
        return cls(
            access_token=record.access_token,
            refresh_token=record.refresh_token,
            expires_at=record.expires_at,
        )

    def is_stale(self, now: datetime, margin: timedelta = DEFAULT_REFRESH_MARGIN) -> bool:
        return self.expires_at - now < margin

    def __repr__(self) -> str:
        return (
            "OAuthCredential(access_token=<REDACTED>, refresh_token=<REDACTED>, "
            f"expires_at={self.expires_at.isoformat()!r})"
        )

    __str__ = __repr__


class TokenGrant(BaseModel):
    """Parsed token endpoint reply."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime
    scope: str | None = None

    def __repr__(self) -> str:
        return (
            "TokenGrant(access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at.isoformat()!r}, scope={self.scope!r})"
        )

    __str__ = __repr__


@dataclass(frozen=True)
class ConnectionStatus:
    connected: bool
    expires_at: datetime | None = None
    needs_reconnect: bool = False


# ---------------------------------------------------------------------------
# Token endpoint client
# ---------------------------------------------------------------------------


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def _error_code(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, str):
            return error
    return None


class GoogleOAuthClient:
    """Talks to Google's OAuth 2.0 authorization and token endpoints."""

    def __init__(
        self,
        config: GoogleOAuthConfig,
        http_client: httpx.AsyncClient,
        *,
        token_url: str = GOOGLE_TOKEN_URL,
        auth_url: str = GOOGLE_AUTH_URL,
    ) -> None:
        self._config = config
        self._http_client = http_client
        self._token_url = token_url
        self._auth_url = auth_url

    def authorization_url(self, state: str) -> str:
        """Build the consent-screen URL requesting offline calendar access."""
        client_id, _ = self._config.require_client()
        params = {
            "client_id": client_id,
            "redirect_uri": self._config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self._config.scopes),
            "access_type": "offline",
            "prompt": "consent",  # Force refresh token to be returned
            "state": state,
        }
        return f"{self._auth_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange an authorization code for a token grant.

        Raises
        ------
        OAuthExchangeError
            On network failure, a non-200 reply, or a reply without tokens.
        """
        client_id, client_secret = self._config.require_client()
        try:
            response = await self._http_client.post(
                self._token_url,
                data={
                    "code": code,
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "redirect_uri": self._config.redirect_uri,
                    "grant_type": "authorization_code",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise OAuthExchangeError(f"Network error during token exchange: {exc}") from exc

        if response.status_code != 200:
            # Status only; the raw body may carry sensitive details.
            raise OAuthExchangeError(f"Token endpoint returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise OAuthExchangeError("Token endpoint returned invalid JSON") from exc

        grant = self._parse_grant(payload)
        if grant is None:
            raise OAuthExchangeError("Token response is missing a non-empty access_token")
        return grant

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Trade *refresh_token* for a new access token.

        Raises
        ------
        InvalidGrantError
            If the provider rejects the grant, or replies 2xx without an
            access token.
        TransientCredentialError
            For every other failure.
        """
        client_id, client_secret = self._config.require_client()
        try:
            response = await self._http_client.post(
                self._token_url,
                data={
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TransientCredentialError(
                f"Google OAuth token refresh request failed: {exc}"
            ) from exc

        if response.status_code in (400, 401) and _error_code(response) == "invalid_grant":
            raise InvalidGrantError(safe_error_message(response))

        if response.status_code < 200 or response.status_code >= 300:
            raise TransientCredentialError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {safe_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientCredentialError(
                "Google OAuth token endpoint returned invalid JSON"
            ) from exc

        grant = self._parse_grant(payload)
        if grant is None:
            raise InvalidGrantError("Google OAuth token response is missing an access_token")
        return grant

    @staticmethod
    def _parse_grant(payload: Any) -> TokenGrant | None:
        if not isinstance(payload, dict):
            return None
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            return None
        refresh_token = payload.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token.strip():
            refresh_token = None
        scope = payload.get("scope")
        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        return TokenGrant(
            access_token=access_token.strip(),
            refresh_token=refresh_token.strip() if refresh_token else None,
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
            scope=scope if isinstance(scope, str) else None,
        )


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CredentialManager:
    """Owns token freshness, refresh coalescing and eviction for every user.

    Parameters
    ----------
    store:
        Token storage.  Only this manager writes to it.
    oauth_client:
        Token endpoint client used for refreshes.
    refresh_margin:
        A token whose remaining lifetime is below this margin is stale.
    clock:
        Returns the current aware UTC time.
    max_reauth_marks:
        How many evicted users are remembered as needing re-authorization.
        Beyond that the oldest mark is forgotten and that user reads as
        not connected.
    """

    def __init__(
        self,
        store: TokenStore,
        oauth_client: GoogleOAuthClient,
        *,
        refresh_margin: timedelta = DEFAULT_REFRESH_MARGIN,
        clock: Callable[[], datetime] = _utcnow,
        max_reauth_marks: int = DEFAULT_MAX_REAUTH_MARKS,
    ) -> None:
        self._store = store
        self._oauth_client = oauth_client
        self._refresh_margin = refresh_margin
        self._clock = clock
        self._refresh_tasks: dict[str, asyncio.Task[OAuthCredential]] = {}
        # Users whose tokens were evicted as invalid and not yet re-authorized.
        self._reauth_required: dict[str, None] = {}
        self._max_reauth_marks = max_reauth_marks

    async def get_valid_token(self, user_id: str) -> OAuthCredential:
        """Return a non-stale credential for *user_id*.

        Raises
        ------
        NotConnectedError
            If no credential is on file.
        ReauthRequiredError
            If the refresh token was rejected (now or on an earlier call).
        TransientCredentialError
            If the refresh failed for a retryable reason.
        """
        record = await self._store.get(user_id)
        if record is None:
            raise self._missing(user_id)

        credential = OAuthCredential.from_record(record)
        if not credential.is_stale(self._clock(), self._refresh_margin):
            return credential

        task = self._refresh_tasks.get(user_id)
        if task is None:
            task = asyncio.get_running_loop().create_task(
                self._refresh(user_id), name=f"oauth-refresh:{user_id}"
            )
            self._refresh_tasks[user_id] = task
            task.add_done_callback(lambda t, uid=user_id: self._forget_task(uid, t))
        else:
            logger.debug("Joining in-flight token refresh: user_id=%r", user_id)
        # A cancelled caller must not cancel the refresh shared with others.
        return await asyncio.shield(task)

    async def store_credential(
        self,
        user_id: str,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> OAuthCredential:
        """Persist a freshly authorized credential and clear any re-auth mark."""
        credential = OAuthCredential(
            access_token=access_token, refresh_token=refresh_token, expires_at=expires_at
        )
        await self._store.upsert(
            user_id,
            access_token=credential.access_token,
            refresh_token=credential.refresh_token,
            expires_at=credential.expires_at,
        )
        self._reauth_required.pop(user_id, None)
        return credential

    async def delete_credential(self, user_id: str) -> bool:
        """Delete the stored credential for *user_id*.  Idempotent."""
        self._reauth_required.pop(user_id, None)
        return await self._store.delete(user_id)

    async def evict(self, user_id: str) -> None:
        """Delete the credential because it is proven invalid.

        Subsequent :meth:`get_valid_token` calls raise
        :class:`ReauthRequiredError` until a new credential is stored.
        """
        self._mark_reauth_required(user_id)
        await self._store.delete(user_id)
        logger.warning("Evicted invalid Google credential: user_id=%r", user_id)

    async def connection_status(self, user_id: str) -> ConnectionStatus:
        record = await self._store.get(user_id)
        if record is None:
            return ConnectionStatus(
                connected=False, needs_reconnect=user_id in self._reauth_required
            )
        return ConnectionStatus(connected=True, expires_at=record.expires_at)

    def _mark_reauth_required(self, user_id: str) -> None:
        self._reauth_required.pop(user_id, None)
        self._reauth_required[user_id] = None
        while len(self._reauth_required) > self._max_reauth_marks:
            del self._reauth_required[next(iter(self._reauth_required))]

    def _missing(self, user_id: str) -> CredentialError:
        if user_id in self._reauth_required:
            return ReauthRequiredError(user_id)
        return NotConnectedError(user_id)

    def _forget_task(self, user_id: str, task: asyncio.Task[OAuthCredential]) -> None:
        if self._refresh_tasks.get(user_id) is task:
            del self._refresh_tasks[user_id]
        if not task.cancelled():
            # Mark the outcome retrieved even when every waiter was cancelled.
            task.exception()

    async def _refresh(self, user_id: str) -> OAuthCredential:
        # Re-read under single-flight: a refresh that finished between the
        # caller's read and this task's creation already did the work.
        record = await self._store.get(user_id)
        if record is None:
            raise self._missing(user_id)
        current = OAuthCredential.from_record(record)
        if not current.is_stale(self._clock(), self._refresh_margin):
            return current

        logger.info("Refreshing Google access token: user_id=%r", user_id)
        try:
            grant = await self._oauth_client.refresh(current.refresh_token)
        except InvalidGrantError as exc:
            logger.warning("Google refresh token rejected: user_id=%r reason=%s", user_id, exc)
            try:
                await self.evict(user_id)
            except Exception:
                logger.warning(
                    "Failed to delete rejected credential: user_id=%r", user_id, exc_info=True
                )
            raise ReauthRequiredError(user_id, reason=str(exc)) from exc

        refreshed = OAuthCredential(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or current.refresh_token,
            expires_at=grant.expires_at,
        )
        try:
            await self._store.upsert(
                user_id,
                access_token=refreshed.access_token,
                refresh_token=refreshed.refresh_token,
                expires_at=refreshed.expires_at,
            )
        except Exception as exc:
            raise TransientCredentialError(
                "Refreshed Google credential could not be persisted"
            ) from exc
        return refreshed
