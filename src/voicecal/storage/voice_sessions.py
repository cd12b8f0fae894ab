"""Voice session records — one row per realtime agent session.

A record is created when a session starts.  Afterwards the only mutations
are raising ``tool_calls_count`` and stamping ``ended_at``.  Records are
never deleted here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from voicecal.storage._pool import acquire_conn, ensure_utc

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "voice_sessions"

VOICE_SESSIONS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    user_id          TEXT NOT NULL,
    session_id       TEXT NOT NULL,
    started_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
    ended_at         TIMESTAMPTZ,
    tool_calls_count INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (user_id, session_id)
)
"""


class VoiceSessionNotFoundError(LookupError):
    """Raised when an update targets a session record that does not exist."""

    def __init__(self, user_id: str, session_id: str) -> None:
        self.user_id = user_id
        self.session_id = session_id
        super().__init__(f"Voice session not found: {session_id}")


@dataclass(frozen=True)
class VoiceSessionRecord:
    user_id: str
    session_id: str
    started_at: datetime
    ended_at: datetime | None = None
    tool_calls_count: int = 0


def _row_to_record(row) -> VoiceSessionRecord:
    return VoiceSessionRecord(
        user_id=row["user_id"],
        session_id=row["session_id"],
        started_at=ensure_utc(row["started_at"]),
        ended_at=ensure_utc(row["ended_at"]) if row["ended_at"] else None,
        tool_calls_count=row["tool_calls_count"],
    )


class VoiceSessionStore:
    """Async access to ``voice_sessions`` rows keyed by (user_id, session_id)."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def create(self, user_id: str, session_id: str) -> VoiceSessionRecord:
        """Insert a fresh record with ``tool_calls_count = 0``."""
        if not session_id.strip():
            raise ValueError("session_id must be a non-empty string")
        async with acquire_conn(self.pool) as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {_TABLE} (user_id, session_id)
                VALUES ($1, $2)
                RETURNING user_id, session_id, started_at, ended_at, tool_calls_count
                """,
                user_id,
                session_id,
            )
        logger.info("Voice session created: user_id=%r session_id=%s", user_id, session_id)
        return _row_to_record(row)

    async def get(self, user_id: str, session_id: str) -> VoiceSessionRecord | None:
        async with acquire_conn(self.pool) as conn:
            row = await conn.fetchrow(
                f"""
                SELECT user_id, session_id, started_at, ended_at, tool_calls_count
                FROM {_TABLE}
                WHERE user_id = $1 AND session_id = $2
                """,
                user_id,
                session_id,
            )
        return _row_to_record(row) if row is not None else None

    async def update(
        self,
        user_id: str,
        session_id: str,
        *,
        ended_at: datetime | None = None,
        tool_calls_count: int | None = None,
    ) -> VoiceSessionRecord:
        """Patch ``ended_at`` and/or ``tool_calls_count``.

        ``tool_calls_count`` never decreases: the stored value becomes
        ``GREATEST(stored, new)``.  ``ended_at`` is set once; a later value
        never replaces the first.

        Raises
        ------
        VoiceSessionNotFoundError
            If no record matches ``(user_id, session_id)``.
        ValueError
            If ``tool_calls_count`` is negative.
        """
        if tool_calls_count is not None and tool_calls_count < 0:
            raise ValueError("tool_calls_count must not be negative")

        async with acquire_conn(self.pool) as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE {_TABLE}
                SET ended_at         = COALESCE(ended_at, $3),
                    tool_calls_count = GREATEST(tool_calls_count, COALESCE($4, 0))
                WHERE user_id = $1 AND session_id = $2
                RETURNING user_id, session_id, started_at, ended_at, tool_calls_count
                """,
                user_id,
                session_id,
                ensure_utc(ended_at) if ended_at is not None else None,
                tool_calls_count,
            )
        if row is None:
            raise VoiceSessionNotFoundError(user_id, session_id)
        return _row_to_record(row)

    async def end(
        self,
        user_id: str,
        session_id: str,
        *,
        tool_calls_count: int | None = None,
    ) -> VoiceSessionRecord:
        """Stamp ``ended_at = now`` (and the final tool-call count)."""
        return await self.update(
            user_id,
            session_id,
            ended_at=datetime.now(UTC),
            tool_calls_count=tool_calls_count,
        )
