"""Per-user Google OAuth token storage backed by ``google_oauth_tokens``.

One row per user.  Rows are created on the first successful authorization
code exchange, mutated in place on every refresh, and deleted once the
refresh token is proven invalid.  Only the credential manager writes here.

Secret material (access and refresh tokens) is never logged and never
appears in ``repr()`` output.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, field_validator

from voicecal.storage._pool import acquire_conn, affected_rows, ensure_utc

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "google_oauth_tokens"

TOKENS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    user_id       TEXT PRIMARY KEY,
    access_token  TEXT NOT NULL,
    refresh_token TEXT NOT NULL,
    expires_at    TIMESTAMPTZ NOT NULL,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at    TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


class TokenRecord(BaseModel):
    """Stored access/refresh token pair for one user."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    user_id: str = Field(min_length=1)
    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    expires_at: datetime
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("expires_at", "created_at", "updated_at")
    @classmethod
    def _aware(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return ensure_utc(value)

    def __repr__(self) -> str:
        return (
            f"TokenRecord("
            f"user_id={self.user_id!r}, "
            f"access_token=<REDACTED>, "
            f"refresh_token=<REDACTED>, "
            f"expires_at={self.expires_at.isoformat()!r})"
        )

    __str__ = __repr__


class TokenStore:
    """Async keyed storage for :class:`TokenRecord` rows.

    Parameters
    ----------
    pool:
        An asyncpg connection pool.  Each call acquires a connection for its
        own duration, so concurrent callers are safe.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get(self, user_id: str) -> TokenRecord | None:
        """Return the stored record for *user_id*, or ``None``."""
        async with acquire_conn(self.pool) as conn:
            row = await conn.fetchrow(
                f"""
                SELECT user_id, access_token, refresh_token, expires_at,
                       created_at, updated_at
                FROM {_TABLE}
                WHERE user_id = $1
                """,
                user_id,
            )
        if row is None:
            return None
        return TokenRecord(
            user_id=row["user_id"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def upsert(
        self,
        user_id: str,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> None:
        """Insert or update the token pair for *user_id*.

        Uses INSERT … ON CONFLICT DO UPDATE so this is idempotent; the
        original ``created_at`` is preserved on update.
        """
        async with acquire_conn(self.pool) as conn:
            await conn.execute(
                f"""
                INSERT INTO {_TABLE} (user_id, access_token, refresh_token, expires_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (user_id) DO UPDATE SET
                    access_token  = EXCLUDED.access_token,
                    refresh_token = EXCLUDED.refresh_token,
                    expires_at    = EXCLUDED.expires_at,
                    updated_at    = now()
                """,
                user_id,
                access_token,
                refresh_token,
                ensure_utc(expires_at),
            )
        logger.info("OAuth tokens stored: user_id=%r expires_at=%s", user_id, expires_at)

    async def delete(self, user_id: str) -> bool:
        """Delete the record for *user_id*.

        Idempotent: returns ``False`` when no record existed.
        """
        async with acquire_conn(self.pool) as conn:
            result = await conn.execute(f"DELETE FROM {_TABLE} WHERE user_id = $1", user_id)
        deleted = affected_rows(result) > 0
        if deleted:
            logger.info("OAuth tokens deleted: user_id=%r", user_id)
        else:
            logger.debug("No OAuth tokens to delete: user_id=%r", user_id)
        return deleted

    def __repr__(self) -> str:
        return f"TokenStore(pool={self.pool!r})"
