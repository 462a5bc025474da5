"""Create or evolve one table to match a SQLAlchemy Table definition.

The live schema is compared with Alembic's autogenerate comparison and
only the resulting operations are emitted: CREATE TABLE when absent,
otherwise column adds/drops/alters and index changes. Column alterations
run inside batch_alter_table so SQLite (which cannot ALTER a column)
transparently recreates the table.
"""

from __future__ import annotations

from typing import Any

import structlog
from alembic.autogenerate import compare_metadata
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import Column, Index, MetaData, Table, inspect
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from src.crm_mirror.core.errors import SchemaError

logger = structlog.get_logger(__name__)


def _index_columns(index: Index) -> list[str]:
    return [column.name for column in index.columns]


class TableDiffService:
    """Computes and applies the minimal DDL for a single table.

    Args:
        engine: Async engine of the mirror database.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def create_or_update_table(self, table: Table) -> bool:
        """Bring the live table in line with the definition.

        Returns:
            True if any DDL was executed, False if the table already matched.

        Raises:
            SchemaError: DDL could not be computed or applied.
        """
        try:
            async with self._engine.begin() as conn:
                return await conn.run_sync(self._sync_table, table)
        except SchemaError:
            raise
        except SQLAlchemyError as exc:
            logger.error("schema.ddl_failed", table_name=table.name, error=str(exc))
            raise SchemaError(table.name, str(exc)) from exc

    def _sync_table(self, conn: Connection, table: Table) -> bool:
        if not inspect(conn).has_table(table.name):
            table.create(conn)
            logger.info("schema.table_created", table_name=table.name)
            return True

        diffs = self.compute_diff(conn, table)
        if not diffs:
            logger.debug("schema.table_unchanged", table_name=table.name)
            return False

        self._apply_diff(conn, table, diffs)
        logger.info("schema.table_altered", table_name=table.name, operations=len(diffs))
        return True

    @staticmethod
    def compute_diff(conn: Connection, table: Table) -> list[tuple[Any, ...]]:
        """Alembic diff entries for this table only, modify groups flattened."""
        target = MetaData()
        table.to_metadata(target)

        def include_name(name: str | None, type_: str, parent_names: dict) -> bool:
            if type_ == "table":
                return name == table.name
            return True

        context = MigrationContext.configure(
            conn,
            opts={"compare_type": True, "include_name": include_name},
        )
        flat: list[tuple[Any, ...]] = []
        for entry in compare_metadata(context, target):
            if isinstance(entry, list):
                flat.extend(entry)
            else:
                flat.append(entry)
        return flat

    def _apply_diff(self, conn: Connection, table: Table, diffs: list[tuple[Any, ...]]) -> None:
        operations = Operations(MigrationContext.configure(conn))

        added_columns: list[Column] = []
        removed_columns: list[str] = []
        type_changes: list[tuple[str, dict, Any, Any]] = []
        nullable_changes: list[tuple[str, dict, bool, bool]] = []
        added_indexes: list[Index] = []
        removed_indexes: list[Index] = []

        for diff in diffs:
            kind = diff[0]
            if kind == "add_column":
                column = diff[3]
                added_columns.append(Column(column.name, column.type, nullable=True))
            elif kind == "remove_column":
                removed_columns.append(diff[3].name)
            elif kind == "modify_type":
                type_changes.append((diff[3], diff[4], diff[5], diff[6]))
            elif kind == "modify_nullable":
                nullable_changes.append((diff[3], diff[4], diff[5], diff[6]))
            elif kind == "add_index":
                added_indexes.append(diff[1])
            elif kind == "remove_index":
                removed_indexes.append(diff[1])
            else:
                logger.warning("schema.diff_ignored", table_name=table.name, kind=kind)

        for index in removed_indexes:
            operations.drop_index(index.name, table_name=table.name)
            logger.debug("schema.index_dropped", table_name=table.name, index=index.name)

        if added_columns or removed_columns or type_changes or nullable_changes:
            with operations.batch_alter_table(
                table.name,
                recreate="auto",
                table_kwargs=dict(table.dialect_kwargs),
            ) as batch:
                for column in added_columns:
                    batch.add_column(column)
                    logger.debug("schema.column_added", table_name=table.name, column=column.name)
                for name in removed_columns:
                    batch.drop_column(name)
                    logger.debug("schema.column_dropped", table_name=table.name, column=name)
                for name, existing, old_type, new_type in type_changes:
                    batch.alter_column(
                        name,
                        type_=new_type,
                        existing_type=old_type,
                        existing_nullable=existing.get("existing_nullable"),
                    )
                    logger.debug(
                        "schema.column_retyped",
                        table_name=table.name,
                        column=name,
                        old_type=str(old_type),
                        new_type=str(new_type),
                    )
                for name, existing, _old, nullable in nullable_changes:
                    batch.alter_column(
                        name,
                        nullable=nullable,
                        existing_type=existing.get("existing_type"),
                    )

        for index in added_indexes:
            operations.create_index(
                index.name,
                table.name,
                _index_columns(index),
                unique=bool(index.unique),
            )
            logger.debug("schema.index_created", table_name=table.name, index=index.name)
