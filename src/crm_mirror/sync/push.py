"""Push engine: replays pending local changes to the remote service.

Inserts and updates are drained in batches until no eligible shadow rows
remain. A record rejected by the remote service poisons its shadow rows
instead of being retried, so it never blocks the rest of the queue.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import Table, delete, select, update
from sqlalchemy.ext.asyncio import AsyncEngine

from src.crm_mirror.core.errors import (
    ReconciliationAnomaly,
    RecordPushError,
    RemoteSaveError,
)
from src.crm_mirror.metadata.accessors import FieldAccessor, build_accessors
from src.crm_mirror.metadata.fields import ModuleMetadata
from src.crm_mirror.remote.client import RemoteServiceClient, SaveResult
from src.crm_mirror.schema.model_sync import build_mirror_table
from src.crm_mirror.sync.schemas import PushDirection, PushResult
from src.crm_mirror.tracking.shadow import ShadowStore
from src.crm_mirror.tracking.tables import ShadowKind

logger = structlog.get_logger(__name__)


class PushEngine:
    """Sends local inserts, updates and deletions of mirror tables.

    Args:
        engine: Async engine of the mirror database.
        client: Remote service client.
        prefix: Mirror table name prefix.
        batch_size: Records per remote save call.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        client: RemoteServiceClient,
        *,
        prefix: str,
        batch_size: int = 100,
    ) -> None:
        self._engine = engine
        self._client = client
        self._prefix = prefix
        self._batch_size = batch_size
        self._shadow = ShadowStore()

    async def push_to_remote(self, module: ModuleMetadata) -> PushResult:
        """Push inserts, then updates, then deletions."""
        result = await self.push_inserted_rows(module)
        result = result.merge(await self.push_updated_rows(module))
        result = result.merge(await self.push_deleted_rows(module))
        logger.info(
            "push.completed",
            module=module.module,
            inserted=result.inserted,
            updated=result.updated,
            deleted=result.deleted,
            failed=result.failed,
            merged=result.merged,
        )
        return result

    async def push_inserted_rows(self, module: ModuleMetadata) -> PushResult:
        return await self.push(module, PushDirection.INSERT)

    async def push_updated_rows(self, module: ModuleMetadata) -> PushResult:
        return await self.push(module, PushDirection.UPDATE)

    async def push(self, module: ModuleMetadata, direction: PushDirection) -> PushResult:
        """Drain one direction until no non-poisoned shadow rows remain.

        Raises:
            RemoteSaveError: A batch failed as a whole.
        """
        table = build_mirror_table(module, self._prefix)
        accessors = build_accessors(module)
        result = PushResult()

        while True:
            if direction == PushDirection.INSERT:
                pending = await self._push_insert_batch(table, module, accessors, result)
            else:
                pending = await self._push_update_batch(table, module, accessors, result)
            if not pending:
                break
        return result

    # ── Inserts ─────────────────────────────────────────────────────────────

    async def _push_insert_batch(
        self,
        table: Table,
        module: ModuleMetadata,
        accessors: dict[str, FieldAccessor],
        result: PushResult,
    ) -> int:
        async with self._engine.begin() as conn:
            uids = await self._shadow.pending_uids(
                conn, ShadowKind.INSERT, table.name, self._batch_size
            )
            if not uids:
                return 0
            rows = {
                row["uid"]: row
                for row in (
                    await conn.execute(select(table).where(table.c.uid.in_(uids)))
                ).mappings()
            }
            for uid in uids:
                if uid not in rows:
                    await self._shadow.remove(conn, ShadowKind.INSERT, table.name, uid)

        batch: list[tuple[int, dict[str, Any]]] = []
        for uid in uids:
            row = rows.get(uid)
            if row is None:
                continue
            try:
                record = self.build_insert_record(row, accessors)
            except ValueError as exc:
                await self._reject(table.name, ShadowKind.INSERT, uid, str(exc), None, result)
                continue
            batch.append((uid, record))

        if not batch:
            return len(uids)

        results = await self._send(module, table.name, [record for _, record in batch])
        for (uid, _record), outcome in zip(batch, results):
            if outcome.success and outcome.id:
                await self._confirm_insert(table, module, uid, outcome, result)
            else:
                message = outcome.message or "remote service returned no id"
                await self._reject(table.name, ShadowKind.INSERT, uid, message, None, result)
        return len(uids)

    @staticmethod
    def build_insert_record(
        row: Any,
        accessors: dict[str, FieldAccessor],
    ) -> dict[str, Any]:
        """Outbound record from every writable, non-null column of a row."""
        record: dict[str, Any] = {}
        for name, accessor in accessors.items():
            if not accessor.writable:
                continue
            value = row[name]
            if value is not None:
                accessor.write(record, value)
        return record

    async def _confirm_insert(
        self,
        table: Table,
        module: ModuleMetadata,
        uid: int,
        outcome: SaveResult,
        result: PushResult,
    ) -> None:
        record_id = str(outcome.id)
        async with self._engine.begin() as conn:
            holder = (
                await conn.execute(
                    select(table.c.uid).where(table.c.id == record_id, table.c.uid != uid)
                )
            ).first()

            if holder is not None:
                # The remote side merged this draft into a record we already mirror.
                await conn.execute(delete(table).where(table.c.uid == uid))
                await self._shadow.forget(conn, table.name, uid=uid)
                anomaly = ReconciliationAnomaly(table.name, uid, record_id, holder.uid)
                result.merged += 1
                result.anomalies.append(str(anomaly))
                logger.warning(
                    "push.duplicate_merged",
                    table_name=table.name,
                    uid=uid,
                    record_id=record_id,
                    existing_uid=holder.uid,
                )
                return

            values: dict[str, Any] = {"id": record_id}
            if outcome.modified_time is not None and module.modified_time_field in table.c:
                values[module.modified_time_field] = outcome.modified_time
            if outcome.created_time is not None and module.created_time_field in table.c:
                values[module.created_time_field] = outcome.created_time
            await conn.execute(update(table).where(table.c.uid == uid).values(**values))
            await self._shadow.remove(conn, ShadowKind.INSERT, table.name, uid)

        result.inserted += 1
        logger.debug("push.record_inserted", table_name=table.name, uid=uid, record_id=record_id)

    # ── Updates ─────────────────────────────────────────────────────────────

    async def _push_update_batch(
        self,
        table: Table,
        module: ModuleMetadata,
        accessors: dict[str, FieldAccessor],
        result: PushResult,
    ) -> int:
        batch: list[tuple[int, list[str], dict[str, Any]]] = []

        async with self._engine.begin() as conn:
            uids = await self._shadow.pending_uids(
                conn, ShadowKind.UPDATE, table.name, self._batch_size
            )
            if not uids:
                return 0
            changed = await self._shadow.pending_fields(conn, table.name, uids)
            rows = {
                row["uid"]: row
                for row in (
                    await conn.execute(select(table).where(table.c.uid.in_(uids)))
                ).mappings()
            }

            for uid in uids:
                row = rows.get(uid)
                if row is None or row["id"] is None:
                    await self._shadow.remove(conn, ShadowKind.UPDATE, table.name, uid)
                    continue

                fields = changed.get(uid, [])
                writable = [f for f in fields if f in accessors and accessors[f].writable]
                skipped = [f for f in fields if f not in writable]
                if skipped:
                    await self._shadow.remove(
                        conn, ShadowKind.UPDATE, table.name, uid, fields=skipped
                    )
                if not writable:
                    continue
                batch.append((uid, writable, row))

        records: list[tuple[int, list[str], dict[str, Any]]] = []
        for uid, fields, row in batch:
            try:
                records.append((uid, fields, self.build_update_record(row, fields, accessors)))
            except ValueError as exc:
                await self._reject(table.name, ShadowKind.UPDATE, uid, str(exc), fields, result)

        if records:
            results = await self._send(module, table.name, [record for _, _, record in records])
            for (uid, fields, _record), outcome in zip(records, results):
                if outcome.success:
                    async with self._engine.begin() as conn:
                        await self._shadow.remove(
                            conn, ShadowKind.UPDATE, table.name, uid, fields=fields
                        )
                    result.updated += 1
                    logger.debug(
                        "push.record_updated", table_name=table.name, uid=uid, fields=fields
                    )
                else:
                    message = outcome.message or "remote service rejected the update"
                    await self._reject(table.name, ShadowKind.UPDATE, uid, message, fields, result)
        return len(uids)

    @staticmethod
    def build_update_record(
        row: Any,
        fields: list[str],
        accessors: dict[str, FieldAccessor],
    ) -> dict[str, Any]:
        """Outbound record holding the natural id and the changed fields only."""
        record: dict[str, Any] = {"id": row["id"]}
        for name in fields:
            accessors[name].write(record, row[name])
        return record

    # ── Deletions ───────────────────────────────────────────────────────────

    async def push_deleted_rows(self, module: ModuleMetadata) -> PushResult:
        """Delete remote records for every pending local deletion.

        Failures are logged and the shadow row is kept for the next run.
        """
        table_name = module.table_name(self._prefix)
        result = PushResult()

        async with self._engine.connect() as conn:
            pending = await self._shadow.pending_deletes(conn, table_name)

        for uid, record_id in pending:
            if record_id is None:
                async with self._engine.begin() as conn:
                    await self._shadow.remove(conn, ShadowKind.DELETE, table_name, uid)
                continue
            try:
                await self._client.delete_record(module.module, record_id)
            except RemoteSaveError as exc:
                result.failed += 1
                result.errors.append(str(exc))
                logger.error(
                    "push.delete_failed",
                    table_name=table_name,
                    uid=uid,
                    record_id=record_id,
                    error=str(exc),
                )
                continue

            async with self._engine.begin() as conn:
                await self._shadow.remove(conn, ShadowKind.DELETE, table_name, uid)
            result.deleted += 1
            logger.debug("push.record_deleted", table_name=table_name, record_id=record_id)
        return result

    # ── Helpers ─────────────────────────────────────────────────────────────

    async def _send(
        self,
        module: ModuleMetadata,
        table_name: str,
        records: list[dict[str, Any]],
    ) -> list[SaveResult]:
        try:
            results = await self._client.save_records(module.module, records)
        except RemoteSaveError as exc:
            logger.error("push.batch_failed", table_name=table_name, error=str(exc))
            raise
        if len(results) != len(records):
            raise RemoteSaveError(
                module.module,
                f"expected {len(records)} save results, got {len(results)}",
            )
        logger.info("push.batch_sent", table_name=table_name, records=len(records))
        return results

    async def _reject(
        self,
        table_name: str,
        kind: ShadowKind,
        uid: int,
        message: str,
        fields: list[str] | None,
        result: PushResult,
    ) -> None:
        error = RecordPushError(table_name, uid, message)
        async with self._engine.begin() as conn:
            await self._shadow.poison(conn, kind, table_name, uid, message, fields=fields)
        result.failed += 1
        result.errors.append(str(error))
        logger.warning(
            "push.record_rejected",
            table_name=table_name,
            uid=uid,
            kind=kind.value,
            error=message,
        )
