"""Run orchestrator: schema sync, pull and push per module.

Modules are processed one at a time and, within a module, the pull
completes before the push starts. A module failure is logged with its
cause and either recorded (continue-on-error) or re-raised.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from src.crm_mirror.core.errors import MirrorError
from src.crm_mirror.metadata.fields import ModuleMetadata
from src.crm_mirror.remote.client import RemoteServiceClient
from src.crm_mirror.schema.model_sync import SchemaSynchronizer
from src.crm_mirror.sync.listeners import ChangeListener
from src.crm_mirror.sync.pull import PullEngine
from src.crm_mirror.sync.push import PushEngine
from src.crm_mirror.sync.schemas import ModuleReport, PullMode, RunReport
from src.crm_mirror.tracking.tracker import ChangeTracker

logger = structlog.get_logger(__name__)


class SyncRunner:
    """Wires the synchronizer and engines for a set of modules.

    Args:
        engine: Async engine of the mirror database.
        client: Remote service client.
        prefix: Mirror table name prefix.
        two_way_sync: Capture local changes and push them.
        continue_on_error: Record a failing module and move on.
        listeners: Pull listener hooks.
        page_size: Pull page size.
        batch_size: Push batch size.
        margin_seconds: Checkpoint safety margin.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        client: RemoteServiceClient,
        *,
        prefix: str,
        two_way_sync: bool = True,
        continue_on_error: bool = False,
        listeners: Sequence[ChangeListener] = (),
        page_size: int = 200,
        batch_size: int = 100,
        margin_seconds: int = 1,
    ) -> None:
        self._two_way_sync = two_way_sync
        self._continue_on_error = continue_on_error
        self.tracker = ChangeTracker(engine)
        self.synchronizer = SchemaSynchronizer(engine, self.tracker, prefix)
        self.puller = PullEngine(
            engine,
            client,
            prefix=prefix,
            listeners=listeners,
            page_size=page_size,
            margin_seconds=margin_seconds,
        )
        self.pusher = PushEngine(engine, client, prefix=prefix, batch_size=batch_size)
        self._prefix = prefix

    async def copy(
        self,
        modules: Sequence[ModuleMetadata],
        mode: PullMode = PullMode.INCREMENTAL,
        modified_since: datetime | None = None,
        force_triggers: bool = False,
    ) -> RunReport:
        """Synchronize schemas and pull remote changes (fetch only)."""
        return await self._run(
            modules,
            pull=True,
            push=False,
            mode=mode,
            modified_since=modified_since,
            force_triggers=force_triggers,
        )

    async def push(self, modules: Sequence[ModuleMetadata]) -> RunReport:
        """Push pending local changes without pulling."""
        return await self._run(modules, pull=False, push=True)

    async def sync(
        self,
        modules: Sequence[ModuleMetadata],
        mode: PullMode = PullMode.INCREMENTAL,
        modified_since: datetime | None = None,
        force_triggers: bool = False,
    ) -> RunReport:
        """Pull then push every module."""
        return await self._run(
            modules,
            pull=True,
            push=self._two_way_sync,
            mode=mode,
            modified_since=modified_since,
            force_triggers=force_triggers,
        )

    async def provision_triggers(self, modules: Sequence[ModuleMetadata]) -> RunReport:
        """Synchronize schemas and recreate every table's triggers."""
        report = RunReport()
        for module in modules:
            module_report = ModuleReport(module=module.module, table_name=module.table_name(self._prefix))
            try:
                module_report.schema_changed = await self.synchronizer.synchronize(
                    module, two_way_sync=True, force_triggers=True
                )
            except (MirrorError, SQLAlchemyError) as exc:
                self._fail(module_report, exc)
            report.modules.append(module_report)
        return report

    async def _run(
        self,
        modules: Sequence[ModuleMetadata],
        *,
        pull: bool,
        push: bool,
        mode: PullMode = PullMode.INCREMENTAL,
        modified_since: datetime | None = None,
        force_triggers: bool = False,
    ) -> RunReport:
        report = RunReport()
        for module in modules:
            module_report = ModuleReport(module=module.module, table_name=module.table_name(self._prefix))
            report.modules.append(module_report)
            try:
                if pull:
                    module_report.schema_changed = await self.synchronizer.synchronize(
                        module,
                        two_way_sync=self._two_way_sync,
                        force_triggers=force_triggers,
                    )
                    module_report.pull = await self.puller.pull(
                        module,
                        mode=mode,
                        two_way_sync=self._two_way_sync,
                        modified_since=modified_since,
                    )
                if push:
                    await self.tracker.create_tracking_tables()
                    module_report.push = await self.pusher.push_to_remote(module)
            except (MirrorError, SQLAlchemyError) as exc:
                self._fail(module_report, exc)
        return report

    def _fail(self, module_report: ModuleReport, exc: Exception) -> None:
        module_report.error = f"{type(exc).__name__}: {exc}"
        logger.error(
            "runner.module_failed",
            module=module_report.module,
            table_name=module_report.table_name,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        if not self._continue_on_error:
            raise exc
