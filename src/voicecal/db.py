"""Connection pool for the PostgreSQL record store."""

from __future__ import annotations

import logging
from urllib.parse import urlparse

import asyncpg

from voicecal.config import ConfigError, DatabaseConfig

logger = logging.getLogger(__name__)

_SCHEMES = ("postgres", "postgresql")


def describe_database_url(database_url: str) -> str:
    """Return ``database@host:port`` for *database_url*, without credentials.

    Raises
    ------
    ConfigError
        If the URL does not use a postgres scheme.
    """
    parsed = urlparse(database_url)
    if parsed.scheme not in _SCHEMES:
        raise ConfigError(f"DATABASE_URL must use the postgres:// scheme, got: {parsed.scheme!r}")
    database = parsed.path.lstrip("/") or "<default>"
    return f"{database}@{parsed.hostname or 'localhost'}:{parsed.port or 5432}"


async def create_pool(config: DatabaseConfig) -> asyncpg.Pool:
    """Create an asyncpg pool from *config*.

    The URL is handed to asyncpg as a DSN, so libpq query options such as
    ``sslmode`` apply unchanged.

    Raises
    ------
    ConfigError
        If no database URL is configured or it is not a postgres URL.
    """
    if not config.url:
        raise ConfigError("DATABASE_URL is not configured")
    target = describe_database_url(config.url)

    pool = await asyncpg.create_pool(
        dsn=config.url,
        min_size=config.min_size,
        max_size=config.max_size,
    )
    logger.info("Connection pool created for %s", target)
    return pool
