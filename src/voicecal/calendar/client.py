"""Authenticated Google Calendar v3 access for one user.

:class:`CalendarClientFactory` turns a user id into a :class:`CalendarHandle`
by asking the :class:`~voicecal.credentials.CredentialManager` for a valid
token.  It keeps no state of its own.

A 401/403 from the Calendar API means the stored credential no longer works:
the handle evicts it and raises :class:`ReauthRequiredError` so callers can
prompt the user to reconnect.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from voicecal.calendar.models import CalendarEvent, EventCreate, EventUpdate
from voicecal.core.redaction import safe_error_message
from voicecal.credentials import CredentialManager, OAuthCredential, ReauthRequiredError

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
PRIMARY_CALENDAR_ID = "primary"

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

_AUTH_FAILURE_STATUS_CODES = {401, 403}
_API_DISABLED_MARKERS = ("API has not been used", "disabled")


class CalendarRequestError(RuntimeError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")

    @property
    def api_disabled(self) -> bool:
        """True when Google reports the Calendar API is not enabled for the project."""
        return any(marker in self.message for marker in _API_DISABLED_MARKERS)


def _google_rfc3339(value: datetime | str) -> str:
    if isinstance(value, str):
        return value
    return value.isoformat().replace("+00:00", "Z")


class CalendarHandle:
    """Calendar operations bound to one user's access token."""

    def __init__(
        self,
        *,
        user_id: str,
        credential: OAuthCredential,
        manager: CredentialManager,
        http_client: httpx.AsyncClient,
        calendar_id: str = PRIMARY_CALENDAR_ID,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
    ) -> None:
        self.user_id = user_id
        self._credential = credential
        self._manager = manager
        self._http_client = http_client
        self._calendar_id = quote(calendar_id, safe="")
        self._base_url = base_url

    async def list_events(
        self,
        *,
        start: datetime | str | None = None,
        end: datetime | str | None = None,
        max_results: int = 10,
    ) -> list[CalendarEvent]:
        if max_results < 1:
            raise ValueError("max_results must be at least 1")

        params: dict[str, Any] = {
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": min(max_results, 250),
        }
        if start is not None:
            params["timeMin"] = _google_rfc3339(start)
        if end is not None:
            params["timeMax"] = _google_rfc3339(end)

        payload = await self._request_json("GET", "/events", params=params)
        items = payload.get("items") or []
        return [CalendarEvent.from_google(item) for item in items if isinstance(item, dict)]

    async def get_event(self, event_id: str) -> dict[str, Any] | None:
        """Return the raw Google event resource, or ``None`` when it does not exist."""
        response = await self._request("GET", self._event_path(event_id))
        if response.status_code == 404:
            return None
        return self._json_or_raise(response)

    async def create_event(self, payload: EventCreate) -> CalendarEvent:
        response_payload = await self._request_json(
            "POST", "/events", json_body=payload.to_google_body()
        )
        return CalendarEvent.from_google(response_payload)

    async def update_event(self, patch: EventUpdate) -> CalendarEvent:
        """Fetch the event, merge *patch* into it, and write the whole resource back."""
        existing = await self.get_event(patch.event_id)
        if existing is None:
            raise CalendarRequestError(
                status_code=404, message=f"Event '{patch.event_id}' not found"
            )
        response_payload = await self._request_json(
            "PUT", self._event_path(patch.event_id), json_body=patch.apply_to(existing)
        )
        return CalendarEvent.from_google(response_payload)

    async def delete_event(self, event_id: str) -> None:
        """Delete an event.  A 404 is treated as already deleted."""
        response = await self._request("DELETE", self._event_path(event_id))
        if response.status_code == 404:
            logger.debug("delete_event: event %r already deleted; treating as success", event_id)
            return
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code, message=safe_error_message(response)
            )

    async def probe(self) -> None:
        """Cheapest authenticated call, used to prove the credential works."""
        await self._request_json("GET", "/events", params={"maxResults": 1})

    # ------------------------------------------------------------------
    # Request helpers
    # ------------------------------------------------------------------

    def _event_path(self, event_id: str) -> str:
        normalized = event_id.strip()
        if not normalized:
            raise ValueError("event_id must be a non-empty string")
        return f"/events/{quote(normalized, safe='')}"

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request(method, path, params=params, json_body=json_body)
        return self._json_or_raise(response)

    @staticmethod
    def _json_or_raise(response: httpx.Response) -> dict[str, Any]:
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code, message=safe_error_message(response)
            )
        if response.status_code == 204:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarRequestError(
                status_code=response.status_code,
                message="Google Calendar API returned invalid JSON",
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarRequestError(
                status_code=response.status_code,
                message="Google Calendar API returned an unexpected payload shape",
            )
        return payload

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{self._base_url}/calendars/{self._calendar_id}{path}"
        response = await self._send(method, url, params=params, json_body=json_body)

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._send(method, url, params=params, json_body=json_body)
            retry += 1

        if response.status_code in _AUTH_FAILURE_STATUS_CODES:
            message = safe_error_message(response)
            logger.warning(
                "Calendar API rejected credential (status=%d): user_id=%r",
                response.status_code,
                self.user_id,
            )
            await self._manager.evict(self.user_id)
            raise ReauthRequiredError(self.user_id, reason=message)

        return response

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self._credential.access_token}"}
        try:
            return await self._http_client.request(
                method, url, params=params, json=json_body, headers=headers
            )
        except httpx.HTTPError as exc:
            raise CalendarRequestError(
                status_code=503, message=f"Google Calendar request failed: {exc}"
            ) from exc

    def __repr__(self) -> str:
        return f"CalendarHandle(user_id={self.user_id!r})"


class CalendarClientFactory:
    """Builds per-user :class:`CalendarHandle` objects."""

    def __init__(self, manager: CredentialManager, http_client: httpx.AsyncClient) -> None:
        self._manager = manager
        self._http_client = http_client

    @property
    def manager(self) -> CredentialManager:
        return self._manager

    async def for_user(self, user_id: str) -> CalendarHandle:
        """Return a handle for *user_id*.

        Raises ``NotConnectedError``, ``ReauthRequiredError`` or
        ``TransientCredentialError`` from the credential manager unchanged.
        """
        credential = await self._manager.get_valid_token(user_id)
        return CalendarHandle(
            user_id=user_id,
            credential=credential,
            manager=self._manager,
            http_client=self._http_client,
        )
