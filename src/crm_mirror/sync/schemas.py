"""Pydantic models for synchronization results and reports."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from src.crm_mirror.tracking.tables import ShadowKind


class PullMode(str, Enum):
    INCREMENTAL = "incremental"
    FULL = "full"


class PushDirection(str, Enum):
    INSERT = "insert"
    UPDATE = "update"


class PullResult(BaseModel):
    """Counts of rows applied by one pull."""

    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0


class PushResult(BaseModel):
    """Outcome of pushing local changes for one table.

    merged counts local drafts removed because the remote service returned
    a natural id already mirrored by another row.
    """

    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0
    merged: int = 0
    errors: list[str] = Field(default_factory=list)
    anomalies: list[str] = Field(default_factory=list)

    def merge(self, other: PushResult) -> PushResult:
        return PushResult(
            inserted=self.inserted + other.inserted,
            updated=self.updated + other.updated,
            deleted=self.deleted + other.deleted,
            failed=self.failed + other.failed,
            merged=self.merged + other.merged,
            errors=self.errors + other.errors,
            anomalies=self.anomalies + other.anomalies,
        )


class ModuleReport(BaseModel):
    module: str
    table_name: str = ""
    schema_changed: bool = False
    pull: PullResult | None = None
    push: PushResult | None = None
    error: str | None = None


class RunReport(BaseModel):
    modules: list[ModuleReport] = Field(default_factory=list)

    @property
    def failed(self) -> list[ModuleReport]:
        return [report for report in self.modules if report.error is not None]

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0


class PoisonedRow(BaseModel):
    """A shadow row carrying a terminal push error."""

    kind: ShadowKind
    table_name: str
    uid: int
    field_name: str | None = None
    record_id: str | None = None
    error: str
    error_time: datetime | None = None
