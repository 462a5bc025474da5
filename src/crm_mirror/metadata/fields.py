"""Field descriptor feed consumed by the mirror.

A ModuleMetadata describes one remote module: its names, its ordered field
descriptors and which fields carry the creation/modification timestamps.
Descriptors are produced by a metadata generator (the remote client's
field settings endpoint, or a JSON file) and are read-only to the core.
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, Field, model_validator

DEFAULT_MODIFIED_TIME_FIELD = "modifiedTime"
DEFAULT_CREATED_TIME_FIELD = "createdTime"

# Timestamps owned by the remote service; never written outward.
DEFAULT_DATE_FIELDS = frozenset({"createdTime", "modifiedTime", "lastActivityTime"})


class FieldDescriptor(BaseModel):
    """Metadata for one remote field.

    getter/setter are dotted paths into a remote record ("Account_Name.id").
    When omitted they default to api_name; read-only fields get no setter.
    """

    name: str
    api_name: str = ""
    type: str
    max_length: int | None = None
    decimal_places: int | None = None
    required: bool = False
    read_only: bool = False
    getter: str | None = None
    setter: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _default_bindings(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        api_name = data.get("api_name") or data.get("name")
        data["api_name"] = api_name
        if "getter" not in data:
            data["getter"] = api_name
        if "setter" not in data:
            data["setter"] = None if data.get("read_only") else api_name
        return data


class ModuleMetadata(BaseModel):
    """One remote module and its field descriptors."""

    module: str
    plural_name: str = ""
    fields: list[FieldDescriptor] = Field(default_factory=list)
    modified_time_field: str = DEFAULT_MODIFIED_TIME_FIELD
    created_time_field: str = DEFAULT_CREATED_TIME_FIELD

    @model_validator(mode="before")
    @classmethod
    def _default_plural(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("plural_name"):
            data = {**data, "plural_name": data.get("module", "")}
        return data

    def table_name(self, prefix: str) -> str:
        """Mirror table name for this module."""
        return table_name_for(self.plural_name, prefix)

    def system_fields(self) -> frozenset[str]:
        """Local names of remote-owned timestamp fields."""
        return DEFAULT_DATE_FIELDS | {self.modified_time_field, self.created_time_field}


def table_name_for(plural_name: str, prefix: str) -> str:
    """Compute a table name from the module plural name.

    The concatenated name is upper-camelized then underscored, so
    "zoho_" + "Potential Contacts" gives "zoho_potential_contacts".
    """
    words = re.split(r"[\s_\-]+", f"{prefix}{plural_name}")
    camel = "".join(word[:1].upper() + word[1:] for word in words if word)
    return re.sub(r"\B([A-Z])", r"_\1", camel).lower()
