"""Queries over the shadow tables.

Every method takes an open AsyncConnection so callers decide the
transaction boundaries (a row apply and its shadow cleanup commit together).
"""

from __future__ import annotations

from collections import defaultdict

from sqlalchemy import and_, delete, exists, select, update
from sqlalchemy.ext.asyncio import AsyncConnection

from src.crm_mirror.core.database import utcnow
from src.crm_mirror.sync.schemas import PoisonedRow
from src.crm_mirror.tracking.tables import (
    SHADOW_TABLES,
    ShadowKind,
    local_delete,
    local_update,
)


class ShadowStore:
    """Repository for pending local changes."""

    async def pending_uids(
        self,
        conn: AsyncConnection,
        kind: ShadowKind,
        table_name: str,
        limit: int,
    ) -> list[int]:
        """Distinct non-poisoned uids queued for a push direction, oldest uid first."""
        shadow = SHADOW_TABLES[kind]
        stmt = (
            select(shadow.c.uid)
            .where(shadow.c.table_name == table_name, shadow.c.error.is_(None))
            .group_by(shadow.c.uid)
            .order_by(shadow.c.uid)
            .limit(limit)
        )
        result = await conn.execute(stmt)
        return [row.uid for row in result]

    async def pending_fields(
        self,
        conn: AsyncConnection,
        table_name: str,
        uids: list[int],
    ) -> dict[int, list[str]]:
        """Changed, non-poisoned field names per uid."""
        if not uids:
            return {}
        stmt = (
            select(local_update.c.uid, local_update.c.field_name)
            .where(
                local_update.c.table_name == table_name,
                local_update.c.uid.in_(uids),
                local_update.c.error.is_(None),
            )
            .order_by(local_update.c.uid, local_update.c.field_name)
        )
        fields: dict[int, list[str]] = defaultdict(list)
        for row in await conn.execute(stmt):
            fields[row.uid].append(row.field_name)
        return dict(fields)

    async def protected_fields(self, conn: AsyncConnection, table_name: str, uid: int) -> set[str]:
        """Fields with an unpushed local edit, poisoned or not."""
        stmt = select(local_update.c.field_name).where(
            local_update.c.table_name == table_name,
            local_update.c.uid == uid,
        )
        return set((await conn.execute(stmt)).scalars())

    async def pending_deletes(
        self,
        conn: AsyncConnection,
        table_name: str,
        limit: int | None = None,
    ) -> list[tuple[int, str | None]]:
        """(uid, natural id) pairs queued for remote deletion."""
        stmt = (
            select(local_delete.c.uid, local_delete.c.id)
            .where(local_delete.c.table_name == table_name, local_delete.c.error.is_(None))
            .order_by(local_delete.c.uid)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return [(row.uid, row.id) for row in await conn.execute(stmt)]

    async def has_pending_delete(self, conn: AsyncConnection, table_name: str, record_id: str) -> bool:
        stmt = select(
            exists().where(local_delete.c.table_name == table_name, local_delete.c.id == record_id)
        )
        return bool((await conn.execute(stmt)).scalar())

    async def forget(
        self,
        conn: AsyncConnection,
        table_name: str,
        uid: int | None = None,
        record_id: str | None = None,
    ) -> None:
        """Drop every shadow row referencing a uid or a natural id."""
        if uid is not None:
            for shadow in SHADOW_TABLES.values():
                await conn.execute(
                    delete(shadow).where(shadow.c.table_name == table_name, shadow.c.uid == uid)
                )
        if record_id is not None:
            await conn.execute(
                delete(local_delete).where(
                    local_delete.c.table_name == table_name, local_delete.c.id == record_id
                )
            )

    async def remove(
        self,
        conn: AsyncConnection,
        kind: ShadowKind,
        table_name: str,
        uid: int,
        fields: list[str] | None = None,
    ) -> None:
        """Remove shadow rows after a confirmed push (restricted to fields for updates)."""
        shadow = SHADOW_TABLES[kind]
        stmt = delete(shadow).where(shadow.c.table_name == table_name, shadow.c.uid == uid)
        if fields is not None:
            if not fields:
                return
            stmt = stmt.where(shadow.c.field_name.in_(fields))
        await conn.execute(stmt)

    async def poison(
        self,
        conn: AsyncConnection,
        kind: ShadowKind,
        table_name: str,
        uid: int,
        message: str,
        fields: list[str] | None = None,
    ) -> None:
        """Mark shadow rows with a terminal error so batches skip them."""
        shadow = SHADOW_TABLES[kind]
        stmt = (
            update(shadow)
            .where(shadow.c.table_name == table_name, shadow.c.uid == uid)
            .values(error=message, error_time=utcnow())
        )
        if fields is not None:
            stmt = stmt.where(shadow.c.field_name.in_(fields))
        await conn.execute(stmt)

    async def list_poisoned(
        self,
        conn: AsyncConnection,
        table_name: str | None = None,
    ) -> list[PoisonedRow]:
        """Operator report of every poisoned shadow row."""
        rows: list[PoisonedRow] = []
        for kind, shadow in SHADOW_TABLES.items():
            stmt = select(shadow).where(shadow.c.error.is_not(None))
            if table_name is not None:
                stmt = stmt.where(shadow.c.table_name == table_name)
            stmt = stmt.order_by(shadow.c.table_name, shadow.c.uid)
            for row in (await conn.execute(stmt)).mappings():
                rows.append(
                    PoisonedRow(
                        kind=kind,
                        table_name=row["table_name"],
                        uid=row["uid"],
                        field_name=row.get("field_name"),
                        record_id=row.get("id"),
                        error=row["error"],
                        error_time=row["error_time"],
                    )
                )
        return rows

    async def clear_errors(
        self,
        conn: AsyncConnection,
        table_name: str | None = None,
        uid: int | None = None,
    ) -> int:
        """Make poisoned rows eligible again. Returns the number of rows cleared."""
        cleared = 0
        for shadow in SHADOW_TABLES.values():
            conditions = [shadow.c.error.is_not(None)]
            if table_name is not None:
                conditions.append(shadow.c.table_name == table_name)
            if uid is not None:
                conditions.append(shadow.c.uid == uid)
            result = await conn.execute(
                update(shadow).where(and_(*conditions)).values(error=None, error_time=None)
            )
            cleared += result.rowcount or 0
        return cleared
