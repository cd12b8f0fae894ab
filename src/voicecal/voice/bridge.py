"""Out-of-band signalling between agent tools and voice session controllers.

Agent tools run without a reference to the controller that owns the
session.  The bridge gives them a two-step contract:

1. look up the active session id for the user (:meth:`active_session_id`);
2. after doing their own bookkeeping, ask for termination
   (:meth:`request_end`).  Subscribers receive a :class:`SessionEndSignal`
   after a short delay, so the tool result still reaches the agent before
   the connection is closed.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_END_SIGNAL_DELAY_SECONDS = 0.4


@dataclass(frozen=True)
class SessionEndSignal:
    user_id: str
    session_id: str


SessionEndHandler = Callable[[SessionEndSignal], Awaitable[None] | None]


class SessionEventBridge:
    """Active-session registry plus a session-end signal channel."""

    def __init__(self) -> None:
        self._active_sessions: dict[str, str] = {}
        self._handlers: list[SessionEndHandler] = []
        self._pending: set[asyncio.Task] = set()

    # -- active session slot --------------------------------------------

    def publish_session(self, user_id: str, session_id: str) -> None:
        self._active_sessions[user_id] = session_id

    def active_session_id(self, user_id: str) -> str | None:
        return self._active_sessions.get(user_id)

    def clear_session(self, user_id: str, session_id: str | None = None) -> None:
        """Clear the slot, but only if it still holds *session_id* (when given)."""
        current = self._active_sessions.get(user_id)
        if current is None:
            return
        if session_id is None or current == session_id:
            del self._active_sessions[user_id]

    # -- signal channel -------------------------------------------------

    def subscribe(self, handler: SessionEndHandler) -> Callable[[], None]:
        """Register *handler*; returns a callable that unregisters it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def request_end(
        self,
        user_id: str,
        session_id: str,
        *,
        delay: float = DEFAULT_END_SIGNAL_DELAY_SECONDS,
    ) -> asyncio.Task:
        """Emit a :class:`SessionEndSignal` to all subscribers after *delay* seconds."""
        signal = SessionEndSignal(user_id=user_id, session_id=session_id)
        task = asyncio.get_running_loop().create_task(
            self._emit_after(signal, delay), name=f"voice-session-end:{session_id}"
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _emit_after(self, signal: SessionEndSignal, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        await self.emit(signal)

    async def emit(self, signal: SessionEndSignal) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(signal)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.warning(
                    "Session end handler failed: session_id=%s", signal.session_id, exc_info=True
                )

    async def aclose(self) -> None:
        """Cancel signals that have not been delivered yet."""
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        self._handlers.clear()
