"""Static field accessors built once per module.

A FieldAccessor binds a local column to the paths it is read from and
written to in a remote record, and carries the column spec that drives
value coercion in both directions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from src.crm_mirror.metadata.fields import FieldDescriptor, ModuleMetadata
from src.crm_mirror.metadata.values import from_remote, to_remote
from src.crm_mirror.schema.type_mapper import ColumnSpec, is_lookup_tag, map_type

logger = structlog.get_logger(__name__)

# Columns owned by the mirror itself.
KEY_COLUMNS = frozenset({"uid", "id"})

# Display-name companions derived remotely from a lookup id.
_COMPANION_SUFFIXES = ("_OwnerName", "_Name")


def _get_path(record: dict[str, Any], path: str) -> Any:
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _set_path(record: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = record
    for part in parts[:-1]:
        nested = current.get(part)
        if not isinstance(nested, dict):
            nested = {}
            current[part] = nested
        current = nested
    current[parts[-1]] = value


@dataclass(frozen=True)
class FieldAccessor:
    descriptor: FieldDescriptor
    column: ColumnSpec
    getter: str
    setter: str | None
    writable: bool

    @property
    def name(self) -> str:
        return self.descriptor.name

    def present(self, record: dict[str, Any]) -> bool:
        """True if the record carries this field at all (even as null)."""
        return self.getter.split(".", 1)[0] in record

    def read(self, record: dict[str, Any]) -> Any:
        """Read and coerce this field's value from a remote record."""
        return from_remote(self.column, _get_path(record, self.getter))

    def write(self, record: dict[str, Any], value: Any) -> None:
        """Write a column value into an outbound remote record."""
        if self.setter is None:
            raise ValueError(f"Field {self.name} has no setter binding")
        _set_path(record, self.setter, to_remote(self.column, value))


def is_lookup_companion(name: str, lookup_names: set[str]) -> bool:
    """True if name is the display-name twin of a lookup field."""
    for suffix in _COMPANION_SUFFIXES:
        if name.endswith(suffix):
            base = name[: -len(suffix)]
            if base in lookup_names or f"{base}_Id" in lookup_names or f"{base}Id" in lookup_names:
                return True
    return False


def build_accessors(module: ModuleMetadata) -> dict[str, FieldAccessor]:
    """Build the name -> accessor map for a module.

    Duplicate descriptor names keep the first occurrence. Raises
    UnsupportedFieldType for unknown type tags.
    """
    lookup_names = {d.name for d in module.fields if is_lookup_tag(d.type)}
    system_fields = module.system_fields()

    accessors: dict[str, FieldAccessor] = {}
    for descriptor in module.fields:
        if descriptor.name in accessors:
            logger.warning(
                "metadata.duplicate_field",
                module=module.module,
                field=descriptor.name,
            )
            continue
        if descriptor.name in KEY_COLUMNS:
            continue

        writable = (
            descriptor.setter is not None
            and not descriptor.read_only
            and descriptor.name not in system_fields
            and not is_lookup_companion(descriptor.name, lookup_names)
        )
        accessors[descriptor.name] = FieldAccessor(
            descriptor=descriptor,
            column=map_type(descriptor),
            getter=descriptor.getter or descriptor.api_name,
            setter=descriptor.setter,
            writable=writable,
        )
    return accessors
