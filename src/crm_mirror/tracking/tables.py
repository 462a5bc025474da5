"""Shadow tables and the sync progress table.

One physical set of shadow tables serves every mirror table: the mirror
table name is part of each primary key. A non-null error marks a row as
poisoned, excluded from push batches until cleared.
"""

from __future__ import annotations

from enum import Enum

from sqlalchemy import Column, DateTime, Index, Integer, MetaData, String, Table, Text

tracking_metadata = MetaData()

LOCAL_INSERT = "local_insert"
LOCAL_UPDATE = "local_update"
LOCAL_DELETE = "local_delete"
SYNC_PROGRESS = "sync_progress"


class ShadowKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


local_insert = Table(
    LOCAL_INSERT,
    tracking_metadata,
    Column("table_name", String(100), primary_key=True),
    Column("uid", Integer, primary_key=True, autoincrement=False),
    Column("error", Text, nullable=True),
    Column("error_time", DateTime, nullable=True),
)

local_update = Table(
    LOCAL_UPDATE,
    tracking_metadata,
    Column("table_name", String(100), primary_key=True),
    Column("uid", Integer, primary_key=True, autoincrement=False),
    Column("field_name", String(100), primary_key=True),
    Column("error", Text, nullable=True),
    Column("error_time", DateTime, nullable=True),
)

local_delete = Table(
    LOCAL_DELETE,
    tracking_metadata,
    Column("table_name", String(100), primary_key=True),
    Column("uid", Integer, primary_key=True, autoincrement=False),
    Column("id", String(100), nullable=True),
    Column("error", Text, nullable=True),
    Column("error_time", DateTime, nullable=True),
    Index("ix_local_delete_table_name_id", "table_name", "id"),
)

sync_progress = Table(
    SYNC_PROGRESS,
    tracking_metadata,
    Column("config_key", String(100), primary_key=True),
    Column("table_name", String(100), primary_key=True),
    Column("modified_since", DateTime, nullable=True),
    Column("page", Integer, nullable=False, default=1),
    Column("updated_at", DateTime, nullable=True),
)

SHADOW_TABLES: dict[ShadowKind, Table] = {
    ShadowKind.INSERT: local_insert,
    ShadowKind.UPDATE: local_update,
    ShadowKind.DELETE: local_delete,
}
