"""Tests for the command line entry point."""

from __future__ import annotations

import json
import sqlite3

import pytest

from src.crm_mirror import cli
from src.crm_mirror.config import get_settings
from src.crm_mirror.core.lock import RunLock


@pytest.fixture
def env(tmp_path, monkeypatch, remote, contacts):
    """Settings pointing at a temporary database, metadata file and lock."""
    metadata = tmp_path / "modules.json"
    metadata.write_text(json.dumps([contacts.model_dump(mode="json")]))
    paths = {
        "db": tmp_path / "cli.db",
        "lock": tmp_path / "cli.lock",
        "metadata": metadata,
    }
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{paths['db']}")
    monkeypatch.setenv("METADATA_FILE", str(metadata))
    monkeypatch.setenv("MODULES", "Contacts")
    monkeypatch.setenv("LOCK_FILE", str(paths["lock"]))
    monkeypatch.setattr(cli, "ZohoClient", lambda *args, **kwargs: remote)
    get_settings.cache_clear()
    yield paths
    get_settings.cache_clear()


def _query(path, sql: str) -> list[tuple]:
    with sqlite3.connect(path) as conn:
        return conn.execute(sql).fetchall()


class TestParser:
    def test_sync_flags(self):
        args = cli.build_parser().parse_args(
            ["--module", "Contacts", "--module", "Leads", "sync", "--full", "--one-way"]
        )
        assert args.module == ["Contacts", "Leads"]
        assert args.full and args.one_way

    def test_modified_since_is_parsed(self):
        args = cli.build_parser().parse_args(["copy", "--modified-since", "2024-01-01T00:00:00Z"])
        assert args.modified_since.isoformat() == "2024-01-01T00:00:00"

    def test_bad_timestamp_is_rejected(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["sync", "--modified-since", "yesterday"])


class TestCommands:
    def test_sync_mirrors_remote_records(self, env, remote):
        remote.add("100", "2024-03-01T09:00:00+00:00", Last_Name="Lovelace")

        assert cli.main(["sync"]) == cli.EXIT_OK
        assert _query(env["db"], 'SELECT id, "lastName" FROM zoho_contacts') == [("100", "Lovelace")]
        assert env["lock"].read_text() == ""

    def test_errors_and_clear_errors(self, env, remote, capsys):
        assert cli.main(["sync"]) == cli.EXIT_OK
        with sqlite3.connect(env["db"]) as conn:
            conn.execute('INSERT INTO zoho_contacts ("lastName") VALUES (\'Bad\')')
        remote.reject = lambda record: True

        assert cli.main(["push"]) == cli.EXIT_OK
        capsys.readouterr()

        assert cli.main(["errors"]) == cli.EXIT_OK
        out = capsys.readouterr().out
        assert "zoho_contacts\tinsert\tuid=1" in out
        assert "INVALID_DATA: rejected" in out

        assert cli.main(["clear-errors", "--uid", "1"]) == cli.EXIT_OK
        assert cli.main(["errors"]) == cli.EXIT_OK
        assert capsys.readouterr().out == ""

    def test_module_failure_exits_with_one(self, env, remote):
        remote.fail_pages = {1}

        assert cli.main(["copy"]) == cli.EXIT_FAILURE

    def test_unknown_module_exits_with_one(self, env):
        assert cli.main(["--module", "Leads", "sync"]) == cli.EXIT_FAILURE

    def test_held_lock_exits_with_two(self, env):
        with RunLock(str(env["lock"])):
            assert cli.main(["sync"]) == cli.EXIT_LOCKED

    def test_no_lock_ignores_held_lock(self, env):
        with RunLock(str(env["lock"])):
            assert cli.main(["--no-lock", "triggers"]) == cli.EXIT_OK

    def test_unreadable_metadata_exits_with_one(self, env, tmp_path):
        missing = tmp_path / "absent.json"

        assert cli.main(["--metadata", str(missing), "sync"]) == cli.EXIT_FAILURE
