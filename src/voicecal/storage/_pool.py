"""Shared asyncpg helpers for the storage modules."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import asyncpg


@asynccontextmanager
async def acquire_conn(pool: asyncpg.Pool) -> AsyncIterator[Any]:
    """Acquire a DB connection, including AsyncMock-friendly test doubles."""
    acquired = pool.acquire()
    if hasattr(acquired, "__aenter__"):
        async with acquired as conn:
            yield conn
        return
    if hasattr(acquired, "__await__"):
        acquired = await acquired
    if hasattr(acquired, "__aenter__"):
        async with acquired as conn:
            yield conn
        return
    yield acquired


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC timezone to a naive datetime returned by asyncpg."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def affected_rows(status: str | None) -> int:
    """Parse the row count out of an asyncpg command status (``"DELETE 1"``)."""
    if not status:
        return 0
    try:
        return int(status.split()[-1])
    except ValueError:
        return 0
