"""PostgreSQL-backed record stores for tokens, action logs and voice sessions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from voicecal.storage._pool import acquire_conn
from voicecal.storage.action_log import (
    ACTION_LOG_TABLE_DDL,
    ACTION_LOG_USER_INDEX_DDL,
    ActionKind,
    ActionLog,
    ActionLogEntry,
)
from voicecal.storage.tokens import TOKENS_TABLE_DDL, TokenRecord, TokenStore
from voicecal.storage.voice_sessions import (
    VOICE_SESSIONS_TABLE_DDL,
    VoiceSessionNotFoundError,
    VoiceSessionRecord,
    VoiceSessionStore,
)

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_SCHEMA_DDL = (
    TOKENS_TABLE_DDL,
    ACTION_LOG_TABLE_DDL,
    ACTION_LOG_USER_INDEX_DDL,
    VOICE_SESSIONS_TABLE_DDL,
)


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Create all tables and indexes if they do not exist yet."""
    async with acquire_conn(pool) as conn:
        for statement in _SCHEMA_DDL:
            await conn.execute(statement)
    logger.info("Record store schema ensured (%d statements)", len(_SCHEMA_DDL))


__all__ = [
    "ActionKind",
    "ActionLog",
    "ActionLogEntry",
    "TokenRecord",
    "TokenStore",
    "VoiceSessionNotFoundError",
    "VoiceSessionRecord",
    "VoiceSessionStore",
    "ensure_schema",
]
