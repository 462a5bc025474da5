"""Schema synchronizer: module metadata -> mirror table DDL.

Builds the desired mirror table (surrogate key, natural key, one nullable
column per mapped field) and hands it to TableDiffService. Triggers are
reprovisioned only when the table changed or when explicitly forced, so
observers never reference dropped columns.
"""

from __future__ import annotations

import hashlib

import structlog
from sqlalchemy import Column, Index, Integer, MetaData, String, Table
from sqlalchemy.ext.asyncio import AsyncEngine

from src.crm_mirror.core.errors import SchemaError
from src.crm_mirror.metadata.accessors import KEY_COLUMNS, build_accessors
from src.crm_mirror.metadata.fields import ModuleMetadata
from src.crm_mirror.schema.table_diff import TableDiffService
from src.crm_mirror.schema.type_mapper import LOOKUP_LENGTH, LocalType
from src.crm_mirror.tracking.tracker import ChangeTracker

logger = structlog.get_logger(__name__)

# PostgreSQL truncates identifiers beyond this length.
MAX_IDENTIFIER_LENGTH = 63


def index_name(prefix: str, table_name: str, column: str) -> str:
    """Deterministic index name, shortened with a hash when too long."""
    name = f"{prefix}_{table_name}_{column}"
    if len(name) <= MAX_IDENTIFIER_LENGTH:
        return name
    digest = hashlib.md5(name.encode("utf-8")).hexdigest()[:8]
    return f"{name[: MAX_IDENTIFIER_LENGTH - 9]}_{digest}"


def build_mirror_table(module: ModuleMetadata, prefix: str, metadata: MetaData | None = None) -> Table:
    """Desired mirror table for a module.

    Raises:
        UnsupportedFieldType: A field carries an unknown type tag.
        SchemaError: The modification-time field is missing or not a datetime.
    """
    table_name = module.table_name(prefix)
    accessors = build_accessors(module)

    modified = accessors.get(module.modified_time_field)
    if modified is None or modified.column.type != LocalType.DATETIME:
        raise SchemaError(
            table_name,
            f"modification time field {module.modified_time_field!r} must be a datetime field",
        )

    columns: list[Column] = [
        Column("uid", Integer, primary_key=True, autoincrement=True),
        Column("id", String(LOOKUP_LENGTH), nullable=True),
    ]
    indexes: list[Index] = [
        Index(index_name("uq", table_name, "id"), "id", unique=True),
    ]

    for descriptor in module.fields:
        if descriptor.name in KEY_COLUMNS:
            logger.warning(
                "schema.reserved_field_skipped", table_name=table_name, field=descriptor.name
            )

    for name, accessor in accessors.items():
        columns.append(Column(name, accessor.column.to_sqlalchemy(), nullable=True))
        if accessor.column.indexed:
            indexes.append(Index(index_name("ix", table_name, name), name))

    return Table(
        table_name,
        metadata if metadata is not None else MetaData(),
        *columns,
        *indexes,
        sqlite_autoincrement=True,
    )


class SchemaSynchronizer:
    """Keeps one mirror table per module in line with its field metadata.

    Args:
        engine: Async engine of the mirror database.
        tracker: Change tracker whose triggers follow schema changes.
        prefix: Mirror table name prefix.
    """

    def __init__(self, engine: AsyncEngine, tracker: ChangeTracker, prefix: str) -> None:
        self._engine = engine
        self._tracker = tracker
        self._prefix = prefix
        self._differ = TableDiffService(engine)

    async def synchronize(
        self,
        module: ModuleMetadata,
        two_way_sync: bool = True,
        force_triggers: bool = False,
    ) -> bool:
        """Create or alter the module's mirror table.

        Returns:
            True if DDL was applied to the mirror table.
        """
        table = build_mirror_table(module, self._prefix)
        changed = await self._differ.create_or_update_table(table)

        # Also creates sync_progress, which one-way pulls still use.
        await self._tracker.create_tracking_tables()
        if two_way_sync:
            if changed or force_triggers or not await self._tracker.has_triggers(table.name):
                read_only = frozenset(
                    name for name, accessor in build_accessors(module).items() if not accessor.writable
                )
                await self._tracker.create_triggers(
                    table, module.modified_time_field, untracked=read_only
                )

        logger.info(
            "schema.synchronized",
            module=module.module,
            table_name=table.name,
            changed=changed,
        )
        return changed
