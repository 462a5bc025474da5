"""Command line entry point.

Usage:
    crm-mirror sync [--full] [--modified-since 2024-01-01T00:00:00] [--module Contacts]
    crm-mirror copy --full --metadata ./modules.json
    crm-mirror push --continue-on-error
    crm-mirror triggers
    crm-mirror errors [--module Contacts]
    crm-mirror clear-errors [--module Contacts] [--uid 42]

Exit codes: 0 success, 1 a module failed, 2 another run holds the lock.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog
from sqlalchemy.exc import SQLAlchemyError

from src.crm_mirror.config import Settings, get_settings
from src.crm_mirror.core.database import close_db, get_engine
from src.crm_mirror.core.errors import LockError, MirrorError
from src.crm_mirror.core.lock import RunLock
from src.crm_mirror.core.logging import configure_structlog
from src.crm_mirror.metadata.fields import ModuleMetadata
from src.crm_mirror.metadata.loader import load_modules
from src.crm_mirror.metadata.values import parse_datetime
from src.crm_mirror.remote.client import RemoteServiceClient
from src.crm_mirror.remote.zoho import ZohoClient
from src.crm_mirror.sync.runner import SyncRunner
from src.crm_mirror.sync.schemas import PullMode, RunReport
from src.crm_mirror.tracking.shadow import ShadowStore
from src.crm_mirror.tracking.tracker import ChangeTracker

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_LOCKED = 2

RUN_COMMANDS = ("sync", "copy", "push", "triggers")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="crm-mirror",
        description="Mirror CRM modules into a local database and push local changes back",
    )
    parser.add_argument("--metadata", default=None, help="JSON module metadata file")
    parser.add_argument(
        "--module",
        action="append",
        default=None,
        help="Module to process (repeatable, defaults to MODULES)",
    )
    parser.add_argument("--no-lock", action="store_true", help="Do not take the process lock")
    parser.add_argument(
        "--continue-on-error",
        action="store_true",
        help="Skip a failing module instead of aborting the run",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("sync", "Pull remote changes then push local changes"),
        ("copy", "Pull remote changes only"),
    ):
        command = sub.add_parser(name, help=help_text)
        command.add_argument("--full", action="store_true", help="Ignore checkpoints and rescan")
        command.add_argument(
            "--modified-since",
            type=parse_datetime,
            default=None,
            help="ISO timestamp overriding the stored checkpoint",
        )
        command.add_argument(
            "--one-way",
            action="store_true",
            help="Do not install triggers nor push local changes",
        )
        command.add_argument(
            "--force-triggers", action="store_true", help="Recreate triggers even if unchanged"
        )

    sub.add_parser("push", help="Push local changes only")
    sub.add_parser("triggers", help="Synchronize schemas and recreate triggers")
    sub.add_parser("errors", help="List poisoned shadow rows")
    clear = sub.add_parser("clear-errors", help="Make poisoned shadow rows eligible again")
    clear.add_argument("--uid", type=int, default=None, help="Only clear this row")
    return parser


async def resolve_modules(
    client: RemoteServiceClient,
    names: list[str],
    metadata_file: str | None,
) -> list[ModuleMetadata]:
    """Module metadata from the JSON file when given, else from the remote service."""
    if metadata_file:
        available = load_modules(metadata_file)
        missing = [name for name in names if name not in available]
        if missing:
            raise MirrorError(f"No metadata for modules: {', '.join(missing)}")
        return [available[name] for name in names]
    return [await client.fetch_module_metadata(name) for name in names]


def _print_report(report: RunReport) -> None:
    for module in report.modules:
        logger.info(
            "run.module_report",
            module=module.module,
            table_name=module.table_name,
            schema_changed=module.schema_changed,
            pull=module.pull.model_dump() if module.pull else None,
            push=module.push.model_dump(exclude={"errors", "anomalies"}) if module.push else None,
            error=module.error,
        )


async def run_command(args: argparse.Namespace, settings: Settings) -> int:
    engine = get_engine()
    metadata_file = args.metadata or settings.METADATA_FILE or None
    names = args.module or settings.module_names()
    described = load_modules(metadata_file) if metadata_file else {}
    table_names = [
        described.get(name, ModuleMetadata(module=name)).table_name(settings.TABLE_PREFIX)
        for name in names
    ]

    if args.command in ("errors", "clear-errors"):
        shadow = ShadowStore()
        await ChangeTracker(engine).create_tracking_tables()
        async with engine.begin() as conn:
            if args.command == "errors":
                for name in table_names if args.module else [None]:
                    for row in await shadow.list_poisoned(conn, name):
                        print(
                            f"{row.table_name}\t{row.kind.value}\tuid={row.uid}\t"
                            f"{row.field_name or row.record_id or ''}\t{row.error_time}\t{row.error}"
                        )
            else:
                cleared = 0
                for name in table_names if args.module else [None]:
                    cleared += await shadow.clear_errors(conn, name, args.uid)
                logger.info("run.errors_cleared", rows=cleared)
        return EXIT_OK

    client = ZohoClient(
        settings.ZOHO_ACCESS_TOKEN,
        base_url=settings.ZOHO_API_BASE_URL,
        api_version=settings.ZOHO_API_VERSION,
        timeout=settings.ZOHO_TIMEOUT,
        max_retries=settings.ZOHO_MAX_RETRIES,
    )
    try:
        modules = await resolve_modules(client, names, metadata_file)
        two_way = settings.TWO_WAY_SYNC and not getattr(args, "one_way", False)
        runner = SyncRunner(
            engine,
            client,
            prefix=settings.TABLE_PREFIX,
            two_way_sync=two_way,
            continue_on_error=args.continue_on_error or settings.CONTINUE_ON_ERROR,
            page_size=settings.PULL_PAGE_SIZE,
            batch_size=settings.PUSH_BATCH_SIZE,
            margin_seconds=settings.CHECKPOINT_MARGIN_SECONDS,
        )

        if args.command in ("sync", "copy"):
            mode = PullMode.FULL if args.full else PullMode.INCREMENTAL
            run = runner.sync if args.command == "sync" else runner.copy
            report = await run(
                modules,
                mode=mode,
                modified_since=args.modified_since,
                force_triggers=args.force_triggers,
            )
        elif args.command == "push":
            report = await runner.push(modules)
        else:
            report = await runner.provision_triggers(modules)
    finally:
        await client.close()

    _print_report(report)
    return report.exit_code


async def main_async(args: argparse.Namespace) -> int:
    settings = get_settings()
    try:
        return await run_command(args, settings)
    except (MirrorError, SQLAlchemyError) as exc:
        logger.error("run.aborted", command=args.command, error=str(exc))
        return EXIT_FAILURE
    finally:
        await close_db()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_structlog()
    settings = get_settings()

    if args.no_lock or args.command not in RUN_COMMANDS:
        return asyncio.run(main_async(args))

    try:
        with RunLock(settings.LOCK_FILE):
            return asyncio.run(main_async(args))
    except LockError as exc:
        logger.error("run.locked", lock_file=settings.LOCK_FILE, error=str(exc))
        return EXIT_LOCKED


if __name__ == "__main__":
    sys.exit(main())
