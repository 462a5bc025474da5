"""Dialect-specific DDL for the change-capture triggers.

Each mirror table gets three row-level AFTER triggers:

- insert: a row inserted without a natural id is a local draft, so it is
  queued in local_insert and any stale delete/update entries for the uid
  are removed.
- update: when the modification-time column is unchanged (remote refreshes
  always advance it) and the row was already synced, one local_update row
  is upserted per tracked column whose value changed (null-safe compare).
  A changed draft instead clears the error of its local_insert row.
- delete: a synced row queues its natural id in local_delete; pending
  insert/update entries for the uid are always removed.

Upserting a shadow row clears any previous error, so a fresh local edit
makes a poisoned row eligible again.
"""

from __future__ import annotations

from sqlalchemy.sql.compiler import IdentifierPreparer

from src.crm_mirror.core.errors import SchemaError
from src.crm_mirror.tracking.tables import LOCAL_DELETE, LOCAL_INSERT, LOCAL_UPDATE


def trigger_name(table_name: str, event: str) -> str:
    return f"trg_{table_name}_on{event}"


def sql_literal(value: str) -> str:
    """Quote a string as a SQL literal."""
    return "'" + value.replace("'", "''") + "'"


class TriggerBuilder:
    """Base builder; subclasses render one dialect.

    Args:
        preparer: Dialect identifier preparer used to quote names.
    """

    events = ("insert", "update", "delete")

    def __init__(self, preparer: IdentifierPreparer) -> None:
        self._preparer = preparer

    def q(self, name: str) -> str:
        return self._preparer.quote(name)

    def create_statements(
        self,
        table_name: str,
        modified_column: str,
        tracked_columns: list[str],
    ) -> list[str]:
        raise NotImplementedError

    def drop_statements(self, table_name: str) -> list[str]:
        raise NotImplementedError

    def count_statement(self) -> str:
        """SQL counting the triggers of table :table_name."""
        raise NotImplementedError


class SQLiteTriggerBuilder(TriggerBuilder):
    def create_statements(
        self,
        table_name: str,
        modified_column: str,
        tracked_columns: list[str],
    ) -> list[str]:
        table = self.q(table_name)
        name = sql_literal(table_name)
        purge = (
            f"DELETE FROM {LOCAL_DELETE} WHERE table_name = {name} AND uid = NEW.uid;\n"
            f"  DELETE FROM {LOCAL_UPDATE} WHERE table_name = {name} AND uid = NEW.uid;"
        )

        statements = [
            f"CREATE TRIGGER {self.q(trigger_name(table_name, 'insert'))}\n"
            f"AFTER INSERT ON {table} FOR EACH ROW WHEN NEW.id IS NULL\n"
            f"BEGIN\n"
            f"  INSERT OR REPLACE INTO {LOCAL_INSERT} (table_name, uid, error, error_time)\n"
            f"  VALUES ({name}, NEW.uid, NULL, NULL);\n"
            f"  {purge}\n"
            f"END",
        ]

        if tracked_columns:
            modified = self.q(modified_column)
            captures = "\n".join(
                f"  INSERT OR REPLACE INTO {LOCAL_UPDATE}"
                f" (table_name, uid, field_name, error, error_time)\n"
                f"  SELECT {name}, NEW.uid, {sql_literal(column)}, NULL, NULL"
                f" WHERE OLD.id IS NOT NULL AND NEW.{self.q(column)} IS NOT OLD.{self.q(column)};"
                for column in tracked_columns
            )
            changed = " OR ".join(
                f"NEW.{self.q(column)} IS NOT OLD.{self.q(column)}" for column in tracked_columns
            )
            statements.append(
                f"CREATE TRIGGER {self.q(trigger_name(table_name, 'update'))}\n"
                f"AFTER UPDATE ON {table} FOR EACH ROW\n"
                f"WHEN NEW.{modified} IS OLD.{modified}\n"
                f"BEGIN\n"
                f"{captures}\n"
                f"  UPDATE {LOCAL_INSERT} SET error = NULL, error_time = NULL\n"
                f"  WHERE table_name = {name} AND uid = NEW.uid"
                f" AND OLD.id IS NULL AND NEW.id IS NULL AND ({changed});\n"
                f"END"
            )

        statements.append(
            f"CREATE TRIGGER {self.q(trigger_name(table_name, 'delete'))}\n"
            f"AFTER DELETE ON {table} FOR EACH ROW\n"
            f"BEGIN\n"
            f"  INSERT OR REPLACE INTO {LOCAL_DELETE} (table_name, uid, id, error, error_time)\n"
            f"  SELECT {name}, OLD.uid, OLD.id, NULL, NULL WHERE OLD.id IS NOT NULL;\n"
            f"  DELETE FROM {LOCAL_INSERT} WHERE table_name = {name} AND uid = OLD.uid;\n"
            f"  DELETE FROM {LOCAL_UPDATE} WHERE table_name = {name} AND uid = OLD.uid;\n"
            f"END"
        )
        return statements

    def drop_statements(self, table_name: str) -> list[str]:
        return [
            f"DROP TRIGGER IF EXISTS {self.q(trigger_name(table_name, event))}"
            for event in self.events
        ]

    def count_statement(self) -> str:
        return (
            "SELECT count(*) FROM sqlite_master "
            "WHERE type = 'trigger' AND tbl_name = :table_name"
        )


class PostgresTriggerBuilder(TriggerBuilder):
    def _function(self, table_name: str, event: str, body: str) -> list[str]:
        trigger = trigger_name(table_name, event)
        function = self.q(f"{trigger}_fn")
        return [
            f"CREATE OR REPLACE FUNCTION {function}() RETURNS trigger AS $$\n"
            f"BEGIN\n"
            f"{body}\n"
            f"  RETURN NULL;\n"
            f"END;\n"
            f"$$ LANGUAGE plpgsql",
            f"CREATE TRIGGER {self.q(trigger)} AFTER {event.upper()} ON {self.q(table_name)}\n"
            f"FOR EACH ROW EXECUTE FUNCTION {function}()",
        ]

    def create_statements(
        self,
        table_name: str,
        modified_column: str,
        tracked_columns: list[str],
    ) -> list[str]:
        name = sql_literal(table_name)

        insert_body = (
            f"  IF NEW.id IS NULL THEN\n"
            f"    INSERT INTO {LOCAL_INSERT} (table_name, uid) VALUES ({name}, NEW.uid)\n"
            f"    ON CONFLICT (table_name, uid) DO UPDATE SET error = NULL, error_time = NULL;\n"
            f"    DELETE FROM {LOCAL_DELETE} WHERE table_name = {name} AND uid = NEW.uid;\n"
            f"    DELETE FROM {LOCAL_UPDATE} WHERE table_name = {name} AND uid = NEW.uid;\n"
            f"  END IF;"
        )
        statements = self._function(table_name, "insert", insert_body)

        if tracked_columns:
            modified = self.q(modified_column)
            captures = "\n".join(
                f"    IF NEW.{self.q(column)} IS DISTINCT FROM OLD.{self.q(column)} THEN\n"
                f"      INSERT INTO {LOCAL_UPDATE} (table_name, uid, field_name)\n"
                f"      VALUES ({name}, NEW.uid, {sql_literal(column)})\n"
                f"      ON CONFLICT (table_name, uid, field_name)\n"
                f"      DO UPDATE SET error = NULL, error_time = NULL;\n"
                f"    END IF;"
                for column in tracked_columns
            )
            changed = " OR ".join(
                f"NEW.{self.q(column)} IS DISTINCT FROM OLD.{self.q(column)}"
                for column in tracked_columns
            )
            update_body = (
                f"  IF NEW.{modified} IS NOT DISTINCT FROM OLD.{modified} THEN\n"
                f"   IF OLD.id IS NOT NULL THEN\n"
                f"{captures}\n"
                f"   ELSIF NEW.id IS NULL AND ({changed}) THEN\n"
                f"    UPDATE {LOCAL_INSERT} SET error = NULL, error_time = NULL\n"
                f"    WHERE table_name = {name} AND uid = NEW.uid;\n"
                f"   END IF;\n"
                f"  END IF;"
            )
            statements += self._function(table_name, "update", update_body)

        delete_body = (
            f"  IF OLD.id IS NOT NULL THEN\n"
            f"    INSERT INTO {LOCAL_DELETE} (table_name, uid, id) VALUES ({name}, OLD.uid, OLD.id)\n"
            f"    ON CONFLICT (table_name, uid)\n"
            f"    DO UPDATE SET id = EXCLUDED.id, error = NULL, error_time = NULL;\n"
            f"  END IF;\n"
            f"  DELETE FROM {LOCAL_INSERT} WHERE table_name = {name} AND uid = OLD.uid;\n"
            f"  DELETE FROM {LOCAL_UPDATE} WHERE table_name = {name} AND uid = OLD.uid;"
        )
        statements += self._function(table_name, "delete", delete_body)
        return statements

    def drop_statements(self, table_name: str) -> list[str]:
        statements = []
        for event in self.events:
            trigger = trigger_name(table_name, event)
            statements.append(f"DROP TRIGGER IF EXISTS {self.q(trigger)} ON {self.q(table_name)}")
            statements.append(f"DROP FUNCTION IF EXISTS {self.q(f'{trigger}_fn')}()")
        return statements

    def count_statement(self) -> str:
        return (
            "SELECT count(*) FROM pg_trigger t JOIN pg_class c ON c.oid = t.tgrelid "
            "WHERE c.relname = :table_name AND NOT t.tgisinternal"
        )


def builder_for(dialect_name: str, preparer: IdentifierPreparer) -> TriggerBuilder:
    """Return the trigger builder for a dialect.

    Raises:
        SchemaError: The dialect has no trigger support here.
    """
    if dialect_name == "sqlite":
        return SQLiteTriggerBuilder(preparer)
    if dialect_name == "postgresql":
        return PostgresTriggerBuilder(preparer)
    raise SchemaError("*", f"change tracking is not supported on dialect {dialect_name!r}")
