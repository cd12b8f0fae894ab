"""Realtime speech-agent service access.

Two pieces:

- :class:`EphemeralCredentialIssuer` trades the long-lived server API key
  for a short-lived client secret scoped to one session.
- :class:`WebSocketRealtimeConnection` drives one realtime agent session
  over a WebSocket.  It satisfies the :class:`RealtimeConnection` protocol
  the session controller depends on: callbacks are registered with
  :meth:`~RealtimeConnection.on` before :meth:`~RealtimeConnection.connect`
  and fire for ``connected``, ``error`` and ``history_updated``.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Callable
from typing import Any, Protocol
from urllib.parse import urlencode

import httpx
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from voicecal.config import RealtimeConfig
from voicecal.core.redaction import sanitize_message

logger = logging.getLogger(__name__)

EVENT_CONNECTED = "connected"
EVENT_ERROR = "error"
EVENT_HISTORY_UPDATED = "history_updated"

RealtimeHandler = Callable[..., Any]


# ---------------------------------------------------------------------------
# Ephemeral credential
# ---------------------------------------------------------------------------


class EphemeralCredentialError(Exception):
    """The speech-agent service refused to issue a client secret."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


_FALLBACK_ISSUE_ERROR = "Failed to mint ephemeral token"


def _describe_issue_failure(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        text = response.text.strip()
        if text:
            return sanitize_message(f"{_FALLBACK_ISSUE_ERROR}: {text}")
        return f"{_FALLBACK_ISSUE_ERROR}: HTTP {response.status_code}"

    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return _FALLBACK_ISSUE_ERROR

    message = sanitize_message(str(error.get("message") or _FALLBACK_ISSUE_ERROR))
    error_type = error.get("type")
    if error_type == "invalid_request_error":
        if "permission" in message.lower():
            return (
                f"Permission denied: {message}. Please check your OpenAI API key permissions "
                "and ensure you have access to the Realtime API."
            )
        return f"Invalid request: {message}"
    if error_type == "authentication_error":
        return f"Authentication failed: {message}. Please check your OpenAI API key."
    if error_type == "rate_limit_error":
        return f"Rate limit exceeded: {message}. Please try again later."
    if error_type == "server_error":
        return f"OpenAI server error: {message}. Please try again later."
    return message


class EphemeralCredentialIssuer:
    """Mints session-scoped client secrets from the server API key."""

    def __init__(self, config: RealtimeConfig, http_client: httpx.AsyncClient) -> None:
        self._config = config
        self._http_client = http_client

    async def issue(self) -> str:
        """Return a fresh ephemeral client secret.

        Raises
        ------
        EphemeralCredentialError
            When the API key is not configured or the service refuses.
        """
        if not self._config.api_key:
            raise EphemeralCredentialError("OPENAI_API_KEY not configured")

        try:
            response = await self._http_client.post(
                self._config.client_secret_url,
                json={"session": {"type": "realtime", "model": self._config.model}},
                headers={"Authorization": f"Bearer {self._config.api_key}"},
            )
        except httpx.HTTPError as exc:
            raise EphemeralCredentialError(
                f"{_FALLBACK_ISSUE_ERROR}: network error: {exc}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise EphemeralCredentialError(
                _describe_issue_failure(response), status_code=response.status_code
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise EphemeralCredentialError(
                f"{_FALLBACK_ISSUE_ERROR}: invalid JSON response",
                status_code=response.status_code,
            ) from exc

        value = payload.get("value") if isinstance(payload, dict) else None
        if not isinstance(value, str) or not value:
            raise EphemeralCredentialError(
                f"{_FALLBACK_ISSUE_ERROR}: response has no client secret",
                status_code=response.status_code,
            )
        logger.info("Ephemeral realtime credential issued (model=%s)", self._config.model)
        return value


# ---------------------------------------------------------------------------
# Connection protocol
# ---------------------------------------------------------------------------


class RealtimeConnection(Protocol):
    """What the session controller needs from a realtime agent connection."""

    def on(self, event: str, handler: RealtimeHandler) -> None: ...

    async def connect(self, *, api_key: str) -> None: ...

    async def close(self) -> None: ...


class ToolRegistry(Protocol):
    def definitions(self) -> list[dict[str, Any]]: ...

    async def call(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]: ...


# ---------------------------------------------------------------------------
# WebSocket implementation
# ---------------------------------------------------------------------------

_HISTORY_EVENTS = {
    "conversation.item.created",
    "conversation.item.added",
    "conversation.item.done",
}


class WebSocketRealtimeConnection:
    """One realtime agent session over the service's WebSocket API.

    Sends a ``session.update`` with the agent instructions and tool
    definitions, mirrors conversation items into :attr:`history`, runs
    function calls through the tool registry and returns their output to
    the agent.
    """

    def __init__(
        self,
        config: RealtimeConfig,
        tools: ToolRegistry | None = None,
    ) -> None:
        self._config = config
        self._tools = tools
        self._handlers: dict[str, list[RealtimeHandler]] = {}
        self._ws: ClientConnection | None = None
        self._receive_task: asyncio.Task | None = None
        self._tool_tasks: set[asyncio.Task] = set()
        self._closing = False
        self._items: dict[str, dict[str, Any]] = {}

    @property
    def history(self) -> list[dict[str, Any]]:
        return list(self._items.values())

    def on(self, event: str, handler: RealtimeHandler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    async def connect(self, *, api_key: str) -> None:
        url = f"{self._config.websocket_url}?{urlencode({'model': self._config.model})}"
        self._closing = False
        self._ws = await connect(url, additional_headers={"Authorization": f"Bearer {api_key}"})
        await self._send(
            {
                "type": "session.update",
                "session": {
                    "type": "realtime",
                    "instructions": self._config.instructions,
                    "tools": self._tools.definitions() if self._tools else [],
                },
            }
        )
        self._receive_task = asyncio.create_task(self._receive_loop(), name="realtime-receive")

    async def close(self) -> None:
        self._closing = True
        if self._receive_task is not None:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None
        for task in list(self._tool_tasks):
            task.cancel()
        if self._ws is not None:
            await self._ws.close()
            self._ws = None

    async def _send(self, payload: dict[str, Any]) -> None:
        if self._ws is None:
            raise ConnectionError("Realtime connection is not open")
        await self._ws.send(json.dumps(payload))

    async def _emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.warning("Realtime %r handler failed", event, exc_info=True)

    async def _receive_loop(self) -> None:
        if self._ws is None:
            raise ConnectionError("Realtime connection is not open")
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except (TypeError, json.JSONDecodeError):
                    logger.debug("Ignoring non-JSON realtime frame")
                    continue
                if isinstance(message, dict):
                    await self._dispatch(message)
        except ConnectionClosed as exc:
            if not self._closing:
                await self._emit(
                    EVENT_ERROR,
                    {"message": f"Realtime connection closed unexpectedly (code={exc.code})"},
                )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not self._closing:
                await self._emit(EVENT_ERROR, exc)

    async def _dispatch(self, message: dict[str, Any]) -> None:
        kind = message.get("type")
        if kind == "session.created":
            await self._emit(EVENT_CONNECTED)
        elif kind == "error":
            await self._emit(EVENT_ERROR, message.get("error") or message)
        elif kind in _HISTORY_EVENTS:
            item = message.get("item")
            if isinstance(item, dict) and item.get("id"):
                self._items[item["id"]] = item
                await self._emit(EVENT_HISTORY_UPDATED, self.history)
        elif kind == "response.function_call_arguments.done":
            task = asyncio.create_task(self._run_tool(message))
            self._tool_tasks.add(task)
            task.add_done_callback(self._tool_tasks.discard)

    async def _run_tool(self, message: dict[str, Any]) -> None:
        name = str(message.get("name") or "")
        call_id = message.get("call_id")
        try:
            arguments = json.loads(message.get("arguments") or "{}")
        except json.JSONDecodeError:
            arguments = None

        if self._tools is None:
            output: dict[str, Any] = {"error": f"Unknown tool: {name}"}
        elif not isinstance(arguments, dict):
            output = {"error": "Tool arguments must be a JSON object"}
        else:
            output = await self._tools.call(name, arguments)

        try:
            await self._send(
                {
                    "type": "conversation.item.create",
                    "item": {
                        "type": "function_call_output",
                        "call_id": call_id,
                        "output": json.dumps(output, default=str),
                    },
                }
            )
            await self._send({"type": "response.create"})
        except (ConnectionClosed, ConnectionError):
            logger.debug("Realtime connection closed before tool %r output was sent", name)
