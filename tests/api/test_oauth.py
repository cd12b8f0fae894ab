"""Tests for the Google Calendar connect flow endpoints."""

from __future__ import annotations

import time
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from tests.conftest import InMemoryTokenStore
from voicecal.api.deps import USER_ID_HEADER, AppServices
from voicecal.api.routers import oauth as oauth_router
from voicecal.credentials import OAuthExchangeError

pytestmark = pytest.mark.unit

ALICE = {USER_ID_HEADER: "alice"}


@pytest.fixture(autouse=True)
def clear_states():
    oauth_router._clear_state_store()
    yield
    oauth_router._clear_state_store()


async def _start_flow(client: httpx.AsyncClient) -> str:
    response = await client.get("/api/oauth/google/url", headers=ALICE)
    assert response.status_code == 200
    return response.json()["state"]


class TestAuthorizationUrl:
    async def test_requires_user(self, client: httpx.AsyncClient):
        response = await client.get("/api/oauth/google/url")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    async def test_blank_user_rejected(self, client: httpx.AsyncClient):
        response = await client.get("/api/oauth/google/url", headers={USER_ID_HEADER: "  "})
        assert response.status_code == 401

    async def test_returns_url_with_state(self, client: httpx.AsyncClient):
        response = await client.get("/api/oauth/google/url", headers=ALICE)

        body = response.json()
        query = parse_qs(urlparse(body["authorization_url"]).query)
        assert query["state"] == [body["state"]]
        assert len(body["state"]) >= 32

    async def test_each_flow_gets_a_new_state(self, client: httpx.AsyncClient):
        assert await _start_flow(client) != await _start_flow(client)


class TestCallback:
    async def test_success_stores_credential_for_state_owner(
        self, client: httpx.AsyncClient, token_store: InMemoryTokenStore, oauth_client
    ):
        state = await _start_flow(client)

        response = await client.get(
            "/api/oauth/google/callback", params={"code": "auth-code", "state": state}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["provider"] == "google"
        assert "ya29" not in response.text
        assert oauth_client.exchanged == ["auth-code"]
        stored = token_store.records["alice"]
        assert stored.access_token == "ya29.fresh"
        assert stored.refresh_token == "refresh-from-google"

    async def test_state_is_single_use(self, client: httpx.AsyncClient):
        state = await _start_flow(client)
        params = {"code": "auth-code", "state": state}
        first = await client.get("/api/oauth/google/callback", params=params)
        second = await client.get("/api/oauth/google/callback", params=params)

        assert first.status_code == 200
        assert second.status_code == 400
        assert second.json()["error_code"] == "invalid_state"

    async def test_unknown_state(self, client: httpx.AsyncClient, oauth_client):
        response = await client.get(
            "/api/oauth/google/callback", params={"code": "c", "state": "forged"}
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "invalid_state"
        assert oauth_client.exchanged == []

    async def test_expired_state(self, client: httpx.AsyncClient):
        state = await _start_flow(client)
        oauth_router._state_store[state] = oauth_router._PendingState("alice", time.monotonic() - 1)

        response = await client.get(
            "/api/oauth/google/callback", params={"code": "c", "state": state}
        )
        assert response.json()["error_code"] == "invalid_state"

    @pytest.mark.parametrize(
        ("params", "code"),
        [
            ({"state": "s"}, "missing_code"),
            ({"code": "c"}, "missing_state"),
        ],
    )
    async def test_missing_parameters(self, client: httpx.AsyncClient, params: dict, code: str):
        response = await client.get("/api/oauth/google/callback", params=params)
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error_code"] == code

    async def test_provider_error_is_sanitized(self, client: httpx.AsyncClient):
        state = await _start_flow(client)
        response = await client.get(
            "/api/oauth/google/callback",
            params={"error": "<script>alert(1)</script>", "state": state},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error_code"] == "provider_error"
        assert "script" not in body["message"]
        assert state not in oauth_router._state_store

    async def test_access_denied_message(self, client: httpx.AsyncClient):
        response = await client.get(
            "/api/oauth/google/callback", params={"error": "access_denied"}
        )
        assert response.json()["message"] == "The user denied access. OAuth flow cancelled."

    async def test_exchange_failure(
        self, client: httpx.AsyncClient, oauth_client, token_store: InMemoryTokenStore
    ):
        oauth_client.exchange_error = OAuthExchangeError("invalid_grant")
        state = await _start_flow(client)

        response = await client.get(
            "/api/oauth/google/callback", params={"code": "stale", "state": state}
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "token_exchange_failed"
        assert token_store.records == {}

    async def test_missing_refresh_token(
        self, client: httpx.AsyncClient, oauth_client, token_store: InMemoryTokenStore
    ):
        oauth_client.refresh_token = None
        state = await _start_flow(client)

        response = await client.get(
            "/api/oauth/google/callback", params={"code": "c", "state": state}
        )

        assert response.json()["error_code"] == "no_refresh_token"
        assert token_store.records == {}


class TestDashboardRedirect:
    @pytest.fixture(autouse=True)
    def dashboard(self, services: AppServices):
        services.config.google.dashboard_url = "https://cal.example.com/settings"

    async def test_success_redirects(self, client: httpx.AsyncClient):
        state = await _start_flow(client)
        response = await client.get(
            "/api/oauth/google/callback", params={"code": "c", "state": state}
        )
        assert response.status_code == 302
        assert response.headers["location"] == "https://cal.example.com/settings?oauth_success=true"

    async def test_provider_error_redirects(self, client: httpx.AsyncClient):
        response = await client.get(
            "/api/oauth/google/callback", params={"error": "access_denied"}
        )
        assert response.status_code == 302
        assert response.headers["location"].endswith("?oauth_error=provider_error")

    async def test_csrf_failures_never_redirect(self, client: httpx.AsyncClient):
        response = await client.get(
            "/api/oauth/google/callback", params={"code": "c", "state": "forged"}
        )
        assert response.status_code == 400
