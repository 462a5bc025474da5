"""Test fixtures for the CRM mirror.

Provides:
- A file-backed SQLite engine per test (tmp_path)
- FakeRemoteClient: in-memory remote CRM with paging, rejection and merge hooks
- The Contacts module metadata used across the suite
- A synchronized Contacts mirror table with triggers installed
- Small query helpers over mirror and shadow tables
"""

from __future__ import annotations

import itertools
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import Table, select, text
from sqlalchemy.ext.asyncio import AsyncEngine

from src.crm_mirror.core.database import create_mirror_engine
from src.crm_mirror.core.errors import RemoteFetchError, RemoteSaveError
from src.crm_mirror.metadata.fields import FieldDescriptor, ModuleMetadata
from src.crm_mirror.remote.client import DeletedPage, RecordPage, RemoteServiceClient, SaveResult
from src.crm_mirror.schema.model_sync import SchemaSynchronizer, build_mirror_table
from src.crm_mirror.tracking.tables import SHADOW_TABLES, ShadowKind
from src.crm_mirror.tracking.tracker import ChangeTracker

PREFIX = "zoho_"


# ── Fake remote service ──────────────────────────────────────────────────────


def remote_time(value: str) -> datetime:
    return datetime.fromisoformat(value).astimezone(timezone.utc)


class FakeRemoteClient(RemoteServiceClient):
    """In-memory remote CRM keyed by natural id.

    Records use remote API field names. Saves stamp Modified_Time from a
    clock advancing one minute per save.

    Attributes:
        records: Stored records by id.
        deleted: Deleted ids, in deletion order.
        fail_pages: Record pages whose fetch raises RemoteFetchError.
        reject: Predicate marking a saved record as rejected.
        merge_id: When set, every insert is answered with this id.
        fail_deletes: Ids whose deletion raises RemoteSaveError.
        truncate_results: Drop the last save result (count mismatch).
        list_calls / save_calls / delete_calls: Call log.
    """

    def __init__(self) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self.deleted: list[str] = []
        self.fail_pages: set[int] = set()
        self.reject: Callable[[dict[str, Any]], bool] = lambda record: False
        self.merge_id: str | None = None
        self.fail_deletes: set[str] = set()
        self.truncate_results = False
        self.list_calls: list[dict[str, Any]] = []
        self.deleted_calls: list[dict[str, Any]] = []
        self.save_calls: list[list[dict[str, Any]]] = []
        self.delete_calls: list[str] = []
        self.clock = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        self._ids = itertools.count(5000)

    def add(self, record_id: str, modified: str, **fields: Any) -> dict[str, Any]:
        record = {"id": record_id, "Modified_Time": modified, "Created_Time": modified, **fields}
        self.records[record_id] = record
        return record

    def _tick(self) -> datetime:
        self.clock += timedelta(minutes=1)
        return self.clock

    async def list_records(
        self,
        module: str,
        *,
        sort_by: str | None = None,
        sort_order: str = "asc",
        modified_since: datetime | None = None,
        page: int = 1,
        per_page: int = 200,
    ) -> RecordPage:
        self.list_calls.append(
            {"module": module, "sort_by": sort_by, "modified_since": modified_since, "page": page}
        )
        if page in self.fail_pages:
            raise RemoteFetchError(module, f"page {page} unavailable")

        rows = list(self.records.values())
        if modified_since is not None:
            since = modified_since.replace(tzinfo=timezone.utc)
            rows = [r for r in rows if remote_time(r["Modified_Time"]) >= since]
        rows.sort(key=lambda r: remote_time(r["Modified_Time"]))
        start = (page - 1) * per_page
        chunk = rows[start : start + per_page]
        return RecordPage(
            records=[dict(r) for r in chunk],
            has_more=start + per_page < len(rows),
        )

    async def list_deleted_ids(
        self,
        module: str,
        *,
        modified_since: datetime | None = None,
        page: int = 1,
        per_page: int = 200,
    ) -> DeletedPage:
        self.deleted_calls.append({"modified_since": modified_since, "page": page})
        start = (page - 1) * per_page
        return DeletedPage(
            ids=self.deleted[start : start + per_page],
            has_more=start + per_page < len(self.deleted),
        )

    async def save_records(self, module: str, records: list[dict[str, Any]]) -> list[SaveResult]:
        self.save_calls.append([dict(r) for r in records])
        results: list[SaveResult] = []
        for record in records:
            if self.reject(record):
                results.append(SaveResult(success=False, message="INVALID_DATA: rejected"))
                continue
            stamp = self._tick()
            if record.get("id"):
                stored = self.records[record["id"]]
                stored.update(record)
                stored["Modified_Time"] = stamp.isoformat()
                results.append(SaveResult(success=True, id=record["id"], modified_time=stamp))
                continue
            record_id = self.merge_id or str(next(self._ids))
            self.records[record_id] = {
                **record,
                "id": record_id,
                "Modified_Time": stamp.isoformat(),
                "Created_Time": stamp.isoformat(),
            }
            results.append(
                SaveResult(success=True, id=record_id, modified_time=stamp, created_time=stamp)
            )
        if self.truncate_results:
            results = results[:-1]
        return results

    async def delete_record(self, module: str, record_id: str) -> None:
        self.delete_calls.append(record_id)
        if record_id in self.fail_deletes:
            raise RemoteSaveError(module, f"cannot delete {record_id}")
        self.records.pop(record_id, None)
        self.deleted.append(record_id)


# ── Module metadata ──────────────────────────────────────────────────────────


def contacts_fields() -> list[FieldDescriptor]:
    return [
        FieldDescriptor(name="firstName", api_name="First_Name", type="text", max_length=40),
        FieldDescriptor(name="lastName", api_name="Last_Name", type="text", max_length=80),
        FieldDescriptor(name="email", api_name="Email", type="email", max_length=100),
        FieldDescriptor(name="annualRevenue", api_name="Annual_Revenue", type="currency"),
        FieldDescriptor(name="hobbies", api_name="Hobbies", type="multiselectpicklist"),
        FieldDescriptor(
            name="accountName",
            api_name="Account_Name",
            type="lookup",
            getter="Account_Name.id",
            setter="Account_Name.id",
        ),
        FieldDescriptor(
            name="accountName_Name",
            api_name="Account_Name",
            type="text",
            read_only=True,
            getter="Account_Name.name",
        ),
        FieldDescriptor(name="birthday", api_name="Date_of_Birth", type="date"),
        FieldDescriptor(name="employees", api_name="No_of_Employees", type="integer"),
        FieldDescriptor(
            name="modifiedTime", api_name="Modified_Time", type="datetime", read_only=True
        ),
        FieldDescriptor(name="createdTime", api_name="Created_Time", type="datetime", read_only=True),
    ]


@pytest.fixture
def contacts() -> ModuleMetadata:
    """Contacts module metadata."""
    return ModuleMetadata(module="Contacts", fields=contacts_fields())


@pytest.fixture
def remote() -> FakeRemoteClient:
    return FakeRemoteClient()


# ── Database ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Async engine on a fresh SQLite file."""
    mirror_engine = create_mirror_engine(f"sqlite+aiosqlite:///{tmp_path / 'mirror.db'}")
    yield mirror_engine
    await mirror_engine.dispose()


@pytest_asyncio.fixture
async def mirror(engine, contacts) -> Table:
    """Synchronized Contacts mirror table with change tracking installed."""
    synchronizer = SchemaSynchronizer(engine, ChangeTracker(engine), PREFIX)
    await synchronizer.synchronize(contacts, two_way_sync=True)
    return build_mirror_table(contacts, PREFIX)


# ── Query helpers ────────────────────────────────────────────────────────────


class MirrorDB:
    """Query helpers over mirror and shadow tables."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def rows(self, table: Table) -> list[dict[str, Any]]:
        async with self.engine.connect() as conn:
            result = await conn.execute(select(table).order_by(table.c.uid))
            return [dict(row) for row in result.mappings()]

    async def row(self, table: Table, uid: int) -> dict[str, Any] | None:
        async with self.engine.connect() as conn:
            result = await conn.execute(select(table).where(table.c.uid == uid))
            found = result.mappings().first()
            return dict(found) if found is not None else None

    async def shadow(self, kind: ShadowKind) -> list[dict[str, Any]]:
        shadow = SHADOW_TABLES[kind]
        async with self.engine.connect() as conn:
            result = await conn.execute(select(shadow).order_by(*shadow.primary_key.columns))
            return [dict(row) for row in result.mappings()]

    async def execute(self, sql: str, **params: Any) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(text(sql), params)

    async def insert(self, table: Table, **values: Any) -> int:
        """Insert a mirror row the way a local application would; returns its uid."""
        async with self.engine.begin() as conn:
            result = await conn.execute(table.insert().values(**values))
            return result.inserted_primary_key[0]

    async def update(self, table: Table, uid: int, **values: Any) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(table.update().where(table.c.uid == uid).values(**values))

    async def delete(self, table: Table, uid: int) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(table.delete().where(table.c.uid == uid))


@pytest.fixture
def db(engine) -> MirrorDB:
    return MirrorDB(engine)
