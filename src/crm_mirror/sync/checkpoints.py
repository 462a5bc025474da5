"""Persistent pull cursors in the sync_progress table.

A checkpoint is keyed by (config_key, table_name) and holds the
modification-time lower bound of the current incremental window plus the
next page to fetch inside that window.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from src.crm_mirror.core.database import utcnow
from src.crm_mirror.tracking.tables import sync_progress

RECORDS_KEY = "records"
DELETED_KEY = "deleted_records"


class Checkpoint(BaseModel):
    modified_since: datetime | None = None
    page: int = 1


class CheckpointStore:
    """Reads and writes pull cursors.

    Each save commits on its own so progress survives a failure later in
    the same pull.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def get(self, config_key: str, table_name: str) -> Checkpoint | None:
        async with self._engine.connect() as conn:
            row = (
                await conn.execute(
                    select(sync_progress.c.modified_since, sync_progress.c.page).where(
                        sync_progress.c.config_key == config_key,
                        sync_progress.c.table_name == table_name,
                    )
                )
            ).first()
        if row is None:
            return None
        return Checkpoint(modified_since=row.modified_since, page=row.page or 1)

    async def save(
        self,
        config_key: str,
        table_name: str,
        modified_since: datetime | None,
        page: int = 1,
    ) -> None:
        async with self._engine.begin() as conn:
            await self._upsert(conn, config_key, table_name, modified_since, page)

    async def reset(self, table_name: str, config_key: str | None = None) -> None:
        """Forget stored cursors so the next pull starts from the mirror contents."""
        stmt = delete(sync_progress).where(sync_progress.c.table_name == table_name)
        if config_key is not None:
            stmt = stmt.where(sync_progress.c.config_key == config_key)
        async with self._engine.begin() as conn:
            await conn.execute(stmt)

    @staticmethod
    async def _upsert(
        conn: AsyncConnection,
        config_key: str,
        table_name: str,
        modified_since: datetime | None,
        page: int,
    ) -> None:
        values = {"modified_since": modified_since, "page": page, "updated_at": utcnow()}
        result = await conn.execute(
            update(sync_progress)
            .where(
                sync_progress.c.config_key == config_key,
                sync_progress.c.table_name == table_name,
            )
            .values(**values)
        )
        if result.rowcount == 0:
            await conn.execute(
                sync_progress.insert().values(
                    config_key=config_key, table_name=table_name, **values
                )
            )
