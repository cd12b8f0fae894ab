"""Append-only log of calendar actions performed on behalf of a user."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from voicecal.storage._pool import acquire_conn, ensure_utc

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "calendar_action_logs"

ACTION_LOG_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    id         BIGSERIAL PRIMARY KEY,
    user_id    TEXT NOT NULL,
    action     TEXT NOT NULL,
    event_id   TEXT,
    details    JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

ACTION_LOG_USER_INDEX_DDL = f"""
CREATE INDEX IF NOT EXISTS ix_{_TABLE}_user_id
ON {_TABLE} (user_id, created_at DESC)
"""


class ActionKind(StrEnum):
    """Calendar operations recorded in the action log."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    LIST = "list"


@dataclass(frozen=True)
class ActionLogEntry:
    user_id: str
    action: ActionKind
    timestamp: datetime
    event_id: str | None = None
    details: dict[str, Any] | None = None


class ActionLog:
    """Insert-only access to ``calendar_action_logs``."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def append(
        self,
        user_id: str,
        action: ActionKind | str,
        *,
        event_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        action = ActionKind(action)
        async with acquire_conn(self.pool) as conn:
            await conn.execute(
                f"""
                INSERT INTO {_TABLE} (user_id, action, event_id, details)
                VALUES ($1, $2, $3, $4::jsonb)
                """,
                user_id,
                action.value,
                event_id,
                json.dumps(details, default=str) if details is not None else None,
            )

    async def list_recent(self, user_id: str, *, limit: int = 50) -> list[ActionLogEntry]:
        """Return the newest entries for *user_id*, newest first."""
        if limit < 1:
            raise ValueError("limit must be at least 1")
        async with acquire_conn(self.pool) as conn:
            rows = await conn.fetch(
                f"""
                SELECT user_id, action, event_id, details, created_at
                FROM {_TABLE}
                WHERE user_id = $1
                ORDER BY created_at DESC
                LIMIT $2
                """,
                user_id,
                limit,
            )
        entries = []
        for row in rows:
            details = row["details"]
            if isinstance(details, str):
                details = json.loads(details)
            entries.append(
                ActionLogEntry(
                    user_id=row["user_id"],
                    action=ActionKind(row["action"]),
                    event_id=row["event_id"],
                    details=details,
                    timestamp=ensure_utc(row["created_at"]),
                )
            )
        return entries
