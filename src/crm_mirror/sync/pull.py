"""Pull engine: applies remote deltas to a mirror table.

Incremental pulls resume from a persisted checkpoint (or from the newest
modification time already mirrored, plus a safety margin). Pages are
requested in ascending modification order and the cursor is saved after
every completed page, so an interrupted pull resumes at the failed page.

Each record is applied in its own transaction together with its listener
notifications and shadow cleanup. Fields with an unpushed local edit are
left untouched by a refresh.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import Table, delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from src.crm_mirror.core.database import utcnow
from src.crm_mirror.core.errors import RecordValueError, RemoteFetchError, SchemaError
from src.crm_mirror.metadata.accessors import FieldAccessor, build_accessors
from src.crm_mirror.metadata.fields import ModuleMetadata
from src.crm_mirror.remote.client import RemoteServiceClient
from src.crm_mirror.schema.model_sync import build_mirror_table
from src.crm_mirror.sync.checkpoints import DELETED_KEY, RECORDS_KEY, Checkpoint, CheckpointStore
from src.crm_mirror.sync.listeners import ChangeListener
from src.crm_mirror.sync.schemas import PullMode, PullResult
from src.crm_mirror.tracking.shadow import ShadowStore
from src.crm_mirror.tracking.tables import ShadowKind

logger = structlog.get_logger(__name__)


class PullEngine:
    """Fetches remote records and deletions into mirror tables.

    Args:
        engine: Async engine of the mirror database.
        client: Remote service client.
        prefix: Mirror table name prefix.
        listeners: Hooks notified of every applied insert/update.
        page_size: Records requested per page.
        margin_seconds: Added to derived checkpoints to skip the boundary record.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        client: RemoteServiceClient,
        *,
        prefix: str,
        listeners: Sequence[ChangeListener] = (),
        page_size: int = 200,
        margin_seconds: int = 1,
    ) -> None:
        self._engine = engine
        self._client = client
        self._prefix = prefix
        self._listeners = list(listeners)
        self._page_size = page_size
        self._margin = timedelta(seconds=margin_seconds)
        self._shadow = ShadowStore()
        self._checkpoints = CheckpointStore(engine)

    async def pull(
        self,
        module: ModuleMetadata,
        mode: PullMode = PullMode.INCREMENTAL,
        two_way_sync: bool = True,
        modified_since: datetime | None = None,
    ) -> PullResult:
        """Fetch remote changes and deletions for one module.

        Args:
            module: Module metadata of the mirror table.
            mode: Incremental (resume from checkpoint) or full scan.
            two_way_sync: Respect and clean up pending local changes.
            modified_since: Overrides the stored checkpoint for this run.

        Raises:
            RemoteFetchError: A page could not be fetched.
        """
        table = build_mirror_table(module, self._prefix)
        accessors = build_accessors(module)
        modified = accessors.get(module.modified_time_field)
        if modified is None:
            raise SchemaError(table.name, f"no {module.modified_time_field} field")

        result = PullResult()
        start = await self._starting_point(table, module, mode, modified_since)
        logger.info(
            "pull.started",
            module=module.module,
            table_name=table.name,
            mode=mode.value,
            modified_since=start.modified_since.isoformat() if start.modified_since else None,
            page=start.page,
        )

        await self._pull_records(table, module, accessors, modified, start, two_way_sync, result)
        await self._pull_deletions(table, module, mode, modified_since, two_way_sync, result)

        logger.info(
            "pull.completed",
            module=module.module,
            table_name=table.name,
            inserted=result.inserted,
            updated=result.updated,
            deleted=result.deleted,
            skipped=result.skipped,
        )
        return result

    # ── Checkpoints ─────────────────────────────────────────────────────────

    async def _starting_point(
        self,
        table: Table,
        module: ModuleMetadata,
        mode: PullMode,
        modified_since: datetime | None,
    ) -> Checkpoint:
        if mode == PullMode.FULL:
            await self._checkpoints.reset(table.name)
            return Checkpoint(modified_since=modified_since, page=1)
        if modified_since is not None:
            return Checkpoint(modified_since=modified_since, page=1)

        stored = await self._checkpoints.get(RECORDS_KEY, table.name)
        if stored is not None:
            return stored

        derived = await self.derive_checkpoint(table, module)
        return Checkpoint(modified_since=derived, page=1)

    async def derive_checkpoint(self, table: Table, module: ModuleMetadata) -> datetime | None:
        """Newest modification (else creation) time in the mirror, plus the margin."""
        async with self._engine.connect() as conn:
            latest = (
                await conn.execute(select(func.max(table.c[module.modified_time_field])))
            ).scalar()
            if latest is None and module.created_time_field in table.c:
                latest = (
                    await conn.execute(select(func.max(table.c[module.created_time_field])))
                ).scalar()
        if latest is None:
            return None
        if isinstance(latest, str):
            latest = datetime.fromisoformat(latest)
        return latest + self._margin

    # ── Records ─────────────────────────────────────────────────────────────

    async def _pull_records(
        self,
        table: Table,
        module: ModuleMetadata,
        accessors: dict[str, FieldAccessor],
        modified: FieldAccessor,
        start: Checkpoint,
        two_way_sync: bool,
        result: PullResult,
    ) -> None:
        since = start.modified_since
        page = start.page
        freshest: datetime | None = None

        while True:
            try:
                records = await self._client.list_records(
                    module.module,
                    sort_by=modified.descriptor.api_name,
                    sort_order="asc",
                    modified_since=since,
                    page=page,
                    per_page=self._page_size,
                )
            except RemoteFetchError as exc:
                logger.error(
                    "pull.fetch_failed",
                    module=module.module,
                    table_name=table.name,
                    page=page,
                    error=str(exc),
                )
                raise

            for record in records.records:
                await self._apply_record(table, module, accessors, record, two_way_sync, result)
                stamp = modified.read(record)
                if stamp is not None and (freshest is None or stamp > freshest):
                    freshest = stamp

            logger.debug(
                "pull.page_applied",
                module=module.module,
                page=page,
                records=len(records.records),
            )
            if not records.has_more:
                break
            page += 1
            await self._checkpoints.save(RECORDS_KEY, table.name, since, page)

        next_since = since
        if freshest is not None:
            candidate = freshest + self._margin
            if next_since is None or candidate > next_since:
                next_since = candidate
        await self._checkpoints.save(RECORDS_KEY, table.name, next_since, 1)

    async def _apply_record(
        self,
        table: Table,
        module: ModuleMetadata,
        accessors: dict[str, FieldAccessor],
        record: dict[str, Any],
        two_way_sync: bool,
        result: PullResult,
    ) -> None:
        raw_id = record.get("id")
        if raw_id is None:
            logger.warning("pull.record_without_id", module=module.module)
            result.skipped += 1
            return
        record_id = str(raw_id)

        try:
            values = {
                name: accessor.read(record)
                for name, accessor in accessors.items()
                if accessor.present(record)
            }
        except ValueError as exc:
            logger.error(
                "pull.record_invalid",
                module=module.module,
                record_id=record_id,
                error=str(exc),
            )
            raise RecordValueError(module.module, record_id, str(exc)) from exc

        async with self._engine.begin() as conn:
            if two_way_sync and await self._shadow.has_pending_delete(conn, table.name, record_id):
                logger.info("pull.record_pending_delete", table_name=table.name, record_id=record_id)
                result.skipped += 1
                return

            existing = (
                await conn.execute(select(table).where(table.c.id == record_id))
            ).mappings().first()

            if existing is None:
                await conn.execute(insert(table).values(id=record_id, **values))
                for listener in self._listeners:
                    await listener.on_insert({"id": record_id, **values}, module)
                result.inserted += 1
                logger.debug("pull.record_inserted", table_name=table.name, record_id=record_id)
                return

            uid = existing["uid"]
            if two_way_sync:
                protected = await self._shadow.protected_fields(conn, table.name, uid)
                if protected:
                    logger.info(
                        "pull.fields_protected",
                        table_name=table.name,
                        uid=uid,
                        fields=sorted(protected),
                    )
                values = {name: value for name, value in values.items() if name not in protected}

            if values:
                await conn.execute(update(table).where(table.c.uid == uid).values(**values))
                if two_way_sync:
                    await self._suppress_echo(conn, table.name, uid, list(values))

            for listener in self._listeners:
                await listener.on_update(values, dict(existing), module)
            result.updated += 1
            logger.debug("pull.record_updated", table_name=table.name, uid=uid, record_id=record_id)

    async def _suppress_echo(
        self,
        conn: AsyncConnection,
        table_name: str,
        uid: int,
        written: list[str],
    ) -> None:
        # Written fields exclude every pending local edit, so any shadow row
        # for them was produced by this very statement.
        await self._shadow.remove(conn, ShadowKind.UPDATE, table_name, uid, fields=written)

    # ── Deletions ───────────────────────────────────────────────────────────

    async def _pull_deletions(
        self,
        table: Table,
        module: ModuleMetadata,
        mode: PullMode,
        modified_since: datetime | None,
        two_way_sync: bool,
        result: PullResult,
    ) -> None:
        started_at = utcnow()
        if mode == PullMode.FULL or modified_since is not None:
            start = Checkpoint(modified_since=modified_since, page=1)
        else:
            start = await self._checkpoints.get(DELETED_KEY, table.name) or Checkpoint()

        since, page = start.modified_since, start.page
        while True:
            try:
                deleted = await self._client.list_deleted_ids(
                    module.module,
                    modified_since=since,
                    page=page,
                    per_page=self._page_size,
                )
            except RemoteFetchError as exc:
                logger.error(
                    "pull.deleted_fetch_failed",
                    module=module.module,
                    table_name=table.name,
                    page=page,
                    error=str(exc),
                )
                raise

            for record_id in deleted.ids:
                if await self._apply_deletion(table, str(record_id), two_way_sync):
                    result.deleted += 1

            if not deleted.has_more:
                break
            page += 1
            await self._checkpoints.save(DELETED_KEY, table.name, since, page)

        await self._checkpoints.save(DELETED_KEY, table.name, started_at - self._margin, 1)

    async def _apply_deletion(self, table: Table, record_id: str, two_way_sync: bool) -> bool:
        async with self._engine.begin() as conn:
            row = (
                await conn.execute(select(table.c.uid).where(table.c.id == record_id))
            ).first()
            if row is not None:
                await conn.execute(delete(table).where(table.c.uid == row.uid))
            if two_way_sync:
                await self._shadow.forget(
                    conn,
                    table.name,
                    uid=row.uid if row is not None else None,
                    record_id=record_id,
                )
        if row is not None:
            logger.debug("pull.record_deleted", table_name=table.name, record_id=record_id)
        return row is not None
