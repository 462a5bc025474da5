"""Async SQLAlchemy engine for the mirror database.

Provides:
- create_mirror_engine(): Engine factory used by the CLI and the tests
- get_engine(): Lazily created engine singleton bound to Settings.DATABASE_URL
- close_db(): Dispose of the singleton
- utcnow(): Naive UTC timestamp, the storage convention of every mirror table
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from src.crm_mirror.config import get_settings
from src.crm_mirror.core.sql_logging import install_sql_logger

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def create_mirror_engine(
    url: str,
    *,
    log_sql: bool = False,
    log_sql_params: bool = False,
) -> AsyncEngine:
    """Create an async engine for the mirror database.

    Args:
        url: Async SQLAlchemy URL (sqlite+aiosqlite or postgresql+asyncpg).
        log_sql: Log every executed statement at debug level.
        log_sql_params: Include bound parameters in the SQL log.
    """
    engine = create_async_engine(url, echo=False)
    if log_sql or log_sql_params:
        install_sql_logger(engine, with_params=log_sql_params)
    return engine


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_mirror_engine(
            settings.DATABASE_URL,
            log_sql=settings.LOG_SQL,
            log_sql_params=settings.LOG_SQL_PARAMS,
        )
    return _engine


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
