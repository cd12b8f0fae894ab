"""Lifecycle of one realtime voice agent session.

States: ``idle -> connecting -> {connected | error} -> idle``.
``connected -> error`` happens on a runtime failure; leaving ``connected``
or ``error`` for ``idle`` only happens through :meth:`disconnect`.

Startup (:meth:`connect`) runs the microphone check, mints the ephemeral
credential, creates the session record and publishes it on the bridge, then
opens the realtime connection with its callbacks already registered.  Any
failing step moves the controller to ``error`` and stops there.

Every entry point (user action, connection callbacks, bridge signal,
context exit) evaluates transitions against the state at the time it runs.
A generation counter, bumped by both :meth:`connect` and :meth:`disconnect`,
lets an in-flight startup notice that a teardown overtook it and lets
callbacks from an abandoned connection be ignored.

Teardown sets a closing flag before touching the connection, so errors the
transport reports while shutting down are suppressed.  The flag is lowered
again only after a short grace period.  Teardown never raises.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from voicecal.core.logging import voice_session_context
from voicecal.storage.voice_sessions import VoiceSessionStore
from voicecal.voice.bridge import SessionEndSignal, SessionEventBridge
from voicecal.voice.devices import MicrophoneProbe, check_microphone_access
from voicecal.voice.errors import (
    SOURCE_EPHEMERAL_CREDENTIAL,
    SessionError,
    classify_error,
    normalize_error_message,
    session_error,
)
from voicecal.voice.realtime import (
    EVENT_CONNECTED,
    EVENT_ERROR,
    EVENT_HISTORY_UPDATED,
    EphemeralCredentialIssuer,
    RealtimeConnection,
)

logger = logging.getLogger(__name__)

DEFAULT_TEARDOWN_GRACE_SECONDS = 0.5


class SessionStatus(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass(frozen=True)
class SessionSnapshot:
    """Observer-facing view of the controller state."""

    status: SessionStatus
    error: SessionError | None = None
    session_id: str | None = None
    tool_calls_count: int = 0


def _item_type(item: Any) -> Any:
    if isinstance(item, dict):
        return item.get("type")
    return getattr(item, "type", None)


def count_tool_calls(history: Sequence[Any]) -> int:
    return sum(1 for item in history if _item_type(item) == "function_call")


class VoiceSessionController:
    """Drives one realtime agent connection for one user.

    Parameters
    ----------
    user_id:
        The user the session belongs to.
    issuer:
        Mints ephemeral credentials for the realtime service.
    sessions:
        Session record store.
    bridge:
        Session-end signal channel; the controller subscribes on
        construction and unsubscribes in :meth:`aclose`.
    connection_factory:
        Builds a fresh :class:`RealtimeConnection` per session.
    microphone_probe:
        Opens and releases the capture device; ``None`` means no device.
    on_state_change, on_tool_calls_changed, chime:
        Optional observers.  Failures inside them are logged and ignored.
    teardown_grace:
        Seconds the closing flag stays raised after teardown.
    """

    def __init__(
        self,
        *,
        user_id: str,
        issuer: EphemeralCredentialIssuer,
        sessions: VoiceSessionStore,
        bridge: SessionEventBridge,
        connection_factory: Callable[[], RealtimeConnection],
        microphone_probe: MicrophoneProbe | None = None,
        on_state_change: Callable[[SessionSnapshot], Any] | None = None,
        on_tool_calls_changed: Callable[[int], Any] | None = None,
        chime: Callable[[], Any] | None = None,
        teardown_grace: float = DEFAULT_TEARDOWN_GRACE_SECONDS,
        session_id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.user_id = user_id
        self._issuer = issuer
        self._sessions = sessions
        self._bridge = bridge
        self._connection_factory = connection_factory
        self._microphone_probe = microphone_probe
        self._on_state_change = on_state_change
        self._on_tool_calls_changed = on_tool_calls_changed
        self._chime = chime
        self._teardown_grace = teardown_grace
        self._session_id_factory = session_id_factory

        self._status = SessionStatus.IDLE
        self._error: SessionError | None = None
        self._connection: RealtimeConnection | None = None
        self._session_id: str | None = None
        self._tool_calls_count = 0
        self._closing = False
        self._chime_played = False

        self._generation = 0
        self._closing_reset: asyncio.TimerHandle | None = None
        self._persist_lock = asyncio.Lock()
        self._persisted_tool_calls: dict[str, int] = {}
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe: Callable[[], None] | None = bridge.subscribe(self._on_end_signal)

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def error(self) -> SessionError | None:
        return self._error

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def tool_calls_count(self) -> int:
        return self._tool_calls_count

    @property
    def closing(self) -> bool:
        return self._closing

    @property
    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            status=self._status,
            error=self._error,
            session_id=self._session_id,
            tool_calls_count=self._tool_calls_count,
        )

    async def connect(self) -> None:
        """Start a session.

        Ignored while already connecting or connected.  A session left in
        ``error`` is torn down before the new one starts.
        """
        if self._status in (SessionStatus.CONNECTING, SessionStatus.CONNECTED):
            logger.debug("connect() ignored: session already %s", self._status)
            return
        if self._status is SessionStatus.ERROR and (
            self._connection is not None or self._session_id is not None
        ):
            # The failed session still holds its connection and open record.
            await self.disconnect()

        self._generation += 1
        generation = self._generation
        self._set_state(SessionStatus.CONNECTING, error=None)

        mic_error = await check_microphone_access(self._microphone_probe)
        if self._superseded(generation):
            return
        if mic_error is not None:
            self._fail(mic_error)
            return

        try:
            api_key = await self._issuer.issue()
        except Exception as exc:
            if self._superseded(generation):
                return
            message = normalize_error_message(exc)
            self._fail(
                SessionError(
                    message=(
                        f"Failed to get authentication token: {message}. "
                        "Please check your OpenAI API key configuration."
                    ),
                    type=classify_error(message, SOURCE_EPHEMERAL_CREDENTIAL),
                )
            )
            return
        if self._superseded(generation):
            return

        session_id = self._session_id_factory()
        try:
            await self._sessions.create(self.user_id, session_id)
        except Exception as exc:
            if self._superseded(generation):
                return
            message = normalize_error_message(exc)
            self._fail(
                SessionError(
                    message=f"Failed to create voice session: {message}. Please try again.",
                    type=classify_error(exc),
                )
            )
            return
        if self._superseded(generation):
            # Teardown ran before this record became visible to it.
            await self._end_record(session_id, 0)
            return

        self._session_id = session_id
        self._tool_calls_count = 0
        self._chime_played = False
        self._clear_closing()
        self._bridge.publish_session(self.user_id, session_id)

        connection = self._connection_factory()
        connection.on(EVENT_CONNECTED, lambda *_: self._handle_ready(generation))
        connection.on(EVENT_ERROR, lambda err=None: self._handle_error(generation, err))
        connection.on(
            EVENT_HISTORY_UPDATED, lambda history: self._handle_history(generation, history)
        )
        self._connection = connection

        with voice_session_context(session_id):
            try:
                await connection.connect(api_key=api_key)
            except Exception as exc:
                if self._superseded(generation):
                    await self._close_quietly(connection)
                    return
                logger.warning("Realtime connection failed: %s", normalize_error_message(exc))
                self._fail(session_error(exc))
                await self._abandon(connection, session_id)
                return

            if self._superseded(generation):
                # Teardown overtook the open; make sure nothing is left running.
                await self._close_quietly(connection)
                return

            logger.info("Voice session connected")
            self._handle_ready(generation)

    async def disconnect(self) -> None:
        """Tear the session down.  Idempotent; a no-op when idle; never raises."""
        if self._status is SessionStatus.IDLE and self._connection is None:
            return

        self._closing = True
        self._generation += 1
        generation = self._generation

        connection = self._connection
        session_id = self._session_id
        tool_calls = self._tool_calls_count
        self._connection = None
        self._session_id = None

        try:
            if connection is not None:
                await self._close_quietly(connection)
            if session_id is not None:
                await self._end_record(session_id, tool_calls)
                self._bridge.clear_session(self.user_id, session_id)
                with voice_session_context(session_id):
                    logger.info("Voice session ended (tool_calls=%d)", tool_calls)
        except Exception:
            logger.warning("Unexpected failure during voice session teardown", exc_info=True)
        finally:
            if self._generation == generation:
                self._tool_calls_count = 0
                self._chime_played = False
                self._set_state(SessionStatus.IDLE, error=None)
            self._schedule_closing_reset()

    async def aclose(self) -> None:
        """Tear down and detach from the bridge."""
        await self.disconnect()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def __aenter__(self) -> VoiceSessionController:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Connection callbacks
    # ------------------------------------------------------------------

    def _handle_ready(self, generation: int) -> None:
        if self._superseded(generation) or self._closing:
            return
        if self._status is not SessionStatus.CONNECTING:
            return
        self._set_state(SessionStatus.CONNECTED, error=None)
        if not self._chime_played:
            self._chime_played = True
            self._notify(self._chime)

    def _handle_error(self, generation: int, err: Any) -> None:
        if self._closing or self._superseded(generation) or self._status is SessionStatus.IDLE:
            logger.debug("Suppressed realtime error during teardown: %s", err)
            return
        error = session_error(err)
        logger.warning("Realtime session error (%s): %s", error.type, error.message)
        self._fail(error)

    def _handle_history(self, generation: int, history: Sequence[Any]) -> None:
        if self._superseded(generation) or self._session_id is None:
            return
        count = count_tool_calls(history)
        if count <= self._tool_calls_count:
            return
        self._tool_calls_count = count
        self._track(self._persist_tool_calls(self._session_id, count))
        self._notify(self._on_tool_calls_changed, count)

    def _on_end_signal(self, signal: SessionEndSignal) -> Any:
        if signal.user_id != self.user_id:
            return None
        if signal.session_id != self._session_id:
            logger.debug("Ignoring end signal for inactive session %s", signal.session_id)
            return None
        return self.disconnect()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _superseded(self, generation: int) -> bool:
        return generation != self._generation

    def _set_state(self, status: SessionStatus, *, error: SessionError | None) -> None:
        self._status = status
        self._error = error
        self._notify(self._on_state_change, self.snapshot)

    def _fail(self, error: SessionError) -> None:
        self._set_state(SessionStatus.ERROR, error=error)

    def _notify(self, observer: Callable[..., Any] | None, *args: Any) -> None:
        if observer is None:
            return
        try:
            result = observer(*args)
            if inspect.isawaitable(result):
                self._track(result)
        except Exception:
            logger.warning("Voice session observer failed", exc_info=True)

    def _track(self, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Voice session background task failed", exc_info=task.exception())

    def _clear_closing(self) -> None:
        if self._closing_reset is not None:
            self._closing_reset.cancel()
            self._closing_reset = None
        self._closing = False

    def _schedule_closing_reset(self) -> None:
        if self._closing_reset is not None:
            self._closing_reset.cancel()
        loop = asyncio.get_running_loop()
        self._closing_reset = loop.call_later(self._teardown_grace, self._clear_closing)

    async def _persist_tool_calls(self, session_id: str, count: int) -> None:
        async with self._persist_lock:
            if count <= self._persisted_tool_calls.get(session_id, 0):
                return
            try:
                await self._sessions.update(self.user_id, session_id, tool_calls_count=count)
            except Exception:
                logger.warning(
                    "Failed to persist tool call count for session %s", session_id, exc_info=True
                )
                return
            self._persisted_tool_calls[session_id] = count

    async def _end_record(self, session_id: str, tool_calls: int) -> None:
        try:
            await self._sessions.update(
                self.user_id,
                session_id,
                ended_at=datetime.now(UTC),
                tool_calls_count=tool_calls,
            )
        except Exception:
            logger.warning("Failed to end voice session %s", session_id, exc_info=True)
        self._persisted_tool_calls.pop(session_id, None)

    async def _abandon(self, connection: RealtimeConnection, session_id: str) -> None:
        if self._connection is connection:
            self._connection = None
        if self._session_id == session_id:
            self._session_id = None
        await self._close_quietly(connection)
        await self._end_record(session_id, self._tool_calls_count)
        self._bridge.clear_session(self.user_id, session_id)

    @staticmethod
    async def _close_quietly(connection: Any) -> None:
        close = getattr(connection, "close", None) or getattr(connection, "disconnect", None)
        if close is None:
            transport = getattr(connection, "transport", None)
            close = getattr(transport, "disconnect", None)
        if close is None:
            return
        try:
            result = close()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning("Error closing realtime connection", exc_info=True)
