"""Change tracker: shadow tables plus per-table capture triggers."""

from __future__ import annotations

import structlog
from sqlalchemy import Table, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from src.crm_mirror.core.errors import SchemaError
from src.crm_mirror.schema.table_diff import TableDiffService
from src.crm_mirror.tracking.tables import tracking_metadata
from src.crm_mirror.tracking.triggers import TriggerBuilder, builder_for

logger = structlog.get_logger(__name__)

# Columns never captured by the update trigger besides the modification time.
UNTRACKED_COLUMNS = frozenset({"uid", "id"})


class ChangeTracker:
    """Installs and removes the change-capture observers of mirror tables.

    Args:
        engine: Async engine of the mirror database.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._differ = TableDiffService(engine)
        self._tables_ready = False

    @property
    def builder(self) -> TriggerBuilder:
        dialect = self._engine.dialect
        return builder_for(dialect.name, dialect.identifier_preparer)

    async def create_tracking_tables(self) -> None:
        """Create or evolve the shadow and progress tables (once per tracker)."""
        if self._tables_ready:
            return
        for table in tracking_metadata.sorted_tables:
            await self._differ.create_or_update_table(table)
        self._tables_ready = True

    async def create_triggers(
        self,
        table: Table,
        modified_column: str,
        untracked: frozenset[str] = frozenset(),
    ) -> None:
        """Drop and recreate the three triggers of a mirror table.

        Args:
            table: Mirror table definition matching the live schema.
            modified_column: Column whose change marks a remote refresh.
            untracked: Extra columns the update trigger should ignore.
        """
        skipped = UNTRACKED_COLUMNS | {modified_column} | untracked
        tracked = [column.name for column in table.columns if column.name not in skipped]
        builder = self.builder
        statements = builder.drop_statements(table.name) + builder.create_statements(
            table.name, modified_column, tracked
        )
        await self._execute(table.name, statements)
        logger.info("tracker.triggers_created", table_name=table.name, tracked_columns=len(tracked))

    async def drop_triggers(self, table_name: str) -> None:
        """Remove the change-capture triggers of a mirror table."""
        await self._execute(table_name, self.builder.drop_statements(table_name))
        logger.info("tracker.triggers_dropped", table_name=table_name)

    async def has_triggers(self, table_name: str) -> bool:
        """True if the table carries at least one trigger."""
        async with self._engine.connect() as conn:
            result = await conn.execute(
                text(self.builder.count_statement()), {"table_name": table_name}
            )
            return bool(result.scalar())

    async def _execute(self, table_name: str, statements: list[str]) -> None:
        try:
            async with self._engine.begin() as conn:
                for statement in statements:
                    await conn.exec_driver_sql(statement)
        except SQLAlchemyError as exc:
            logger.error("tracker.ddl_failed", table_name=table_name, error=str(exc))
            raise SchemaError(table_name, str(exc)) from exc
