"""Remote field type tag -> local column type.

map_type() is pure and total over the known remote type tags. Unknown tags
raise UnsupportedFieldType at schema-sync time instead of defaulting to a
column type that may silently corrupt values.

Every generated column is nullable: drafts created locally must be
storable before the remote service has validated required fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.types import TypeEngine

from src.crm_mirror.core.errors import UnsupportedFieldType
from src.crm_mirror.metadata.fields import FieldDescriptor

# Longest string stored as VARCHAR; anything longer becomes TEXT.
MAX_STRING_LENGTH = 255
DEFAULT_STRING_LENGTH = 255
LOOKUP_LENGTH = 100
OWNER_LOOKUP_LENGTH = 25
DECIMAL_PRECISION = 18
DEFAULT_DECIMAL_SCALE = 2

# Separator for multi-valued fields flattened into one column.
MULTI_VALUE_SEPARATOR = ";"


class LocalType(str, Enum):
    STRING = "string"
    TEXT = "text"
    DATE = "date"
    DATETIME = "datetime"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    BIGINT = "bigint"
    DECIMAL = "decimal"
    FLOAT = "float"


@dataclass(frozen=True)
class ColumnSpec:
    """Local column shape for one remote field."""

    type: LocalType
    length: int | None = None
    precision: int | None = None
    scale: int | None = None
    indexed: bool = False
    multi_valued: bool = False

    def to_sqlalchemy(self) -> TypeEngine:
        """Build the SQLAlchemy column type."""
        if self.type == LocalType.STRING:
            return String(self.length or DEFAULT_STRING_LENGTH)
        if self.type == LocalType.TEXT:
            return Text()
        if self.type == LocalType.DATE:
            return Date()
        if self.type == LocalType.DATETIME:
            return DateTime()
        if self.type == LocalType.BOOLEAN:
            return Boolean()
        if self.type == LocalType.INTEGER:
            return Integer()
        if self.type == LocalType.BIGINT:
            return BigInteger()
        if self.type == LocalType.DECIMAL:
            return Numeric(self.precision, self.scale)
        return Float()


# Legacy (v1 API) tags mapped onto the canonical lower-case tags.
LEGACY_TYPE_TAGS: dict[str, str] = {
    "Lookup ID": "lookup",
    "Lookup": "lookup",
    "OwnerLookup": "ownerlookup",
    "UserLookup": "userlookup",
    "Formula": "formula",
    "DateTime": "datetime",
    "Date": "date",
    "Boolean": "boolean",
    "TextArea": "textarea",
    "BigInt": "bigint",
    "Phone": "phone",
    "Auto Number": "autonumber",
    "Text": "text",
    "URL": "website",
    "Email": "email",
    "Website": "website",
    "Pick List": "picklist",
    "Multiselect Pick List": "multiselectpicklist",
    "Double": "double",
    "Percent": "percent",
    "Integer": "integer",
    "Currency": "currency",
    "Decimal": "decimal",
}

_SIZED_STRING_TAGS = frozenset(
    {"text", "email", "phone", "website", "url", "picklist", "autonumber", "formula"}
)
_LOOKUP_TAGS = frozenset({"lookup", "userlookup"})
_MULTI_VALUE_TAGS = frozenset({"multiselectpicklist", "multiselectlookup", "multiuserlookup"})


def normalize_type_tag(tag: str) -> str:
    """Return the canonical lower-case form of a remote type tag."""
    return LEGACY_TYPE_TAGS.get(tag, tag.strip().lower())


def is_lookup_tag(tag: str) -> bool:
    """True for single-valued reference fields (lookups and owner lookups)."""
    canonical = normalize_type_tag(tag)
    return canonical in _LOOKUP_TAGS or canonical == "ownerlookup"


def _sized_string(max_length: int | None) -> tuple[LocalType, int | None]:
    if max_length is not None and max_length > MAX_STRING_LENGTH:
        return LocalType.TEXT, None
    return LocalType.STRING, max_length or DEFAULT_STRING_LENGTH


def map_type(descriptor: FieldDescriptor) -> ColumnSpec:
    """Map a remote field descriptor to its local column spec.

    Raises:
        UnsupportedFieldType: The descriptor's type tag is not recognised.
    """
    tag = normalize_type_tag(descriptor.type)

    if tag in _LOOKUP_TAGS:
        return ColumnSpec(LocalType.STRING, length=LOOKUP_LENGTH, indexed=True)
    if tag == "ownerlookup":
        return ColumnSpec(LocalType.STRING, length=OWNER_LOOKUP_LENGTH, indexed=True)
    if tag in _SIZED_STRING_TAGS:
        local_type, length = _sized_string(descriptor.max_length)
        return ColumnSpec(local_type, length=length)
    if tag in _MULTI_VALUE_TAGS:
        local_type, length = _sized_string(descriptor.max_length)
        if tag != "multiselectpicklist":
            local_type, length = LocalType.TEXT, None
        return ColumnSpec(local_type, length=length, multi_valued=True)
    if tag == "textarea":
        return ColumnSpec(LocalType.TEXT)
    if tag == "date":
        return ColumnSpec(LocalType.DATE)
    if tag == "datetime":
        return ColumnSpec(LocalType.DATETIME)
    if tag == "boolean":
        return ColumnSpec(LocalType.BOOLEAN)
    if tag == "integer":
        return ColumnSpec(LocalType.INTEGER)
    if tag == "bigint":
        return ColumnSpec(LocalType.BIGINT)
    if tag in ("currency", "decimal"):
        scale = descriptor.decimal_places
        return ColumnSpec(
            LocalType.DECIMAL,
            precision=DECIMAL_PRECISION,
            scale=DEFAULT_DECIMAL_SCALE if scale is None else scale,
        )
    if tag in ("double", "percent"):
        return ColumnSpec(LocalType.FLOAT)

    raise UnsupportedFieldType(descriptor.name, descriptor.type)
