"""Exception taxonomy for the mirror.

Fatal errors (schema, remote listing, whole-batch remote failures) propagate
to the run orchestrator, which decides between skipping the module and
aborting the run. Per-record failures are never raised: RecordPushError and
ReconciliationAnomaly describe outcomes that are persisted or logged.
"""

from __future__ import annotations


class MirrorError(Exception):
    """Base class for every error raised by the mirror."""


class SchemaError(MirrorError):
    """DDL for a mirror table could not be computed or applied."""

    def __init__(self, table_name: str, message: str) -> None:
        super().__init__(f"{table_name}: {message}")
        self.table_name = table_name
        self.message = message


class UnsupportedFieldType(MirrorError):
    """A remote field carries a type tag with no local column mapping."""

    def __init__(self, field_name: str, type_tag: str) -> None:
        super().__init__(f'Unknown type "{type_tag}" for field "{field_name}"')
        self.field_name = field_name
        self.type_tag = type_tag


class RemoteServiceError(MirrorError):
    """The remote CRM service could not be reached or answered unexpectedly."""

    def __init__(self, module: str, message: str) -> None:
        super().__init__(f"{module}: {message}")
        self.module = module
        self.message = message


class RemoteFetchError(RemoteServiceError):
    """Listing records or deleted ids failed."""


class RemoteSaveError(RemoteServiceError):
    """A save or delete call failed as a whole."""


class RecordPushError(MirrorError):
    """The remote service rejected a single record of a batch."""

    def __init__(self, table_name: str, uid: int, message: str) -> None:
        super().__init__(f"{table_name}[uid={uid}]: {message}")
        self.table_name = table_name
        self.uid = uid
        self.message = message


class ReconciliationAnomaly(MirrorError):
    """A pushed row received a natural id already held by another local row."""

    def __init__(self, table_name: str, uid: int, record_id: str, existing_uid: int) -> None:
        super().__init__(
            f"{table_name}[uid={uid}]: remote id {record_id} already mirrored "
            f"by uid={existing_uid}, local duplicate removed"
        )
        self.table_name = table_name
        self.uid = uid
        self.record_id = record_id
        self.existing_uid = existing_uid


class LockError(MirrorError):
    """Another synchronization run holds the process lock."""


class RecordValueError(MirrorError):
    """A pulled record carries a value its column type cannot hold."""

    def __init__(self, module: str, record_id: str, message: str) -> None:
        super().__init__(f"{module}[id={record_id}]: {message}")
        self.module = module
        self.record_id = record_id
        self.message = message
