"""Tests for module metadata, accessors and value coercion."""

from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal

import pytest

from src.crm_mirror.core.errors import MirrorError
from src.crm_mirror.metadata.accessors import build_accessors, is_lookup_companion
from src.crm_mirror.metadata.fields import FieldDescriptor, ModuleMetadata, table_name_for
from src.crm_mirror.metadata.loader import load_modules
from src.crm_mirror.metadata.values import coerce_local, parse_datetime, to_remote
from src.crm_mirror.schema.type_mapper import ColumnSpec, LocalType


# ── Descriptors and table names ──────────────────────────────────────────────


class TestFieldDescriptor:
    def test_bindings_default_to_api_name(self):
        descriptor = FieldDescriptor(name="firstName", api_name="First_Name", type="text")
        assert descriptor.getter == "First_Name"
        assert descriptor.setter == "First_Name"

    def test_api_name_defaults_to_name(self):
        assert FieldDescriptor(name="Email", type="email").api_name == "Email"

    def test_read_only_has_no_setter(self):
        descriptor = FieldDescriptor(name="modifiedTime", api_name="Modified_Time", type="datetime", read_only=True)
        assert descriptor.setter is None


class TestTableNames:
    def test_prefix_and_plural(self):
        assert table_name_for("Contacts", "zoho_") == "zoho_contacts"

    def test_camel_case_plural(self):
        assert table_name_for("PotentialContacts", "zoho_") == "zoho_potential_contacts"

    def test_spaced_plural(self):
        assert table_name_for("Sales Orders", "zoho_") == "zoho_sales_orders"

    def test_plural_defaults_to_module(self, contacts):
        assert contacts.plural_name == "Contacts"
        assert contacts.table_name("crm_") == "crm_contacts"


# ── Accessors ────────────────────────────────────────────────────────────────


class TestAccessors:
    def test_lookup_reads_nested_id(self, contacts):
        accessors = build_accessors(contacts)
        record = {"Account_Name": {"id": "42", "name": "Acme"}}
        assert accessors["accountName"].read(record) == "42"
        assert accessors["accountName_Name"].read(record) == "Acme"

    def test_lookup_writes_nested_id(self, contacts):
        accessors = build_accessors(contacts)
        record: dict = {}
        accessors["accountName"].write(record, "42")
        assert record == {"Account_Name": {"id": "42"}}

    def test_writability(self, contacts):
        accessors = build_accessors(contacts)
        assert accessors["firstName"].writable
        assert accessors["accountName"].writable
        assert not accessors["accountName_Name"].writable
        assert not accessors["modifiedTime"].writable
        assert not accessors["createdTime"].writable

    def test_companion_by_naming_convention(self):
        assert is_lookup_companion("owner_OwnerName", {"owner"})
        assert is_lookup_companion("accountName_Name", {"accountName"})
        assert not is_lookup_companion("last_Name", {"accountName"})

    def test_companion_is_not_writable_even_with_setter(self):
        module = ModuleMetadata(
            module="Deals",
            fields=[
                FieldDescriptor(name="owner", type="ownerlookup", getter="Owner.id", setter="Owner.id"),
                FieldDescriptor(name="owner_OwnerName", type="text", setter="Owner.name"),
                FieldDescriptor(name="modifiedTime", type="datetime"),
            ],
        )
        assert not build_accessors(module)["owner_OwnerName"].writable

    def test_duplicate_fields_keep_first(self):
        module = ModuleMetadata(
            module="Leads",
            fields=[
                FieldDescriptor(name="company", type="text", max_length=50),
                FieldDescriptor(name="company", type="textarea"),
            ],
        )
        accessors = build_accessors(module)
        assert list(accessors) == ["company"]
        assert accessors["company"].column.length == 50

    def test_identifier_fields_are_skipped(self):
        module = ModuleMetadata(module="Leads", fields=[FieldDescriptor(name="id", type="text")])
        assert build_accessors(module) == {}

    def test_present(self, contacts):
        accessors = build_accessors(contacts)
        assert accessors["firstName"].present({"First_Name": None})
        assert not accessors["firstName"].present({"Last_Name": "B"})


# ── Value coercion ───────────────────────────────────────────────────────────


class TestValues:
    def test_datetime_normalized_to_naive_utc(self):
        parsed = parse_datetime("2024-03-01T14:00:00+02:00")
        assert parsed == datetime(2024, 3, 1, 12, 0)
        assert parsed.tzinfo is None

    def test_datetime_to_remote_carries_offset(self):
        spec = ColumnSpec(LocalType.DATETIME)
        assert to_remote(spec, datetime(2024, 3, 1, 12, 0)) == "2024-03-01T12:00:00+00:00"

    def test_date_formats(self):
        spec = ColumnSpec(LocalType.DATE)
        assert coerce_local(spec, "2024-03-01") == date(2024, 3, 1)
        assert coerce_local(spec, "03/01/2024") == date(2024, 3, 1)
        assert to_remote(spec, date(2024, 3, 1)) == "2024-03-01"

    def test_multi_value_join_and_split(self):
        spec = ColumnSpec(LocalType.STRING, length=255, multi_valued=True)
        assert coerce_local(spec, ["Golf", "Chess"]) == "Golf;Chess"
        assert to_remote(spec, "Golf;Chess") == ["Golf", "Chess"]

    def test_multi_lookup_collapses_references(self):
        spec = ColumnSpec(LocalType.TEXT, multi_valued=True)
        assert coerce_local(spec, [{"id": "1", "name": "A"}, {"id": "2"}]) == "1;2"

    def test_numeric_casts(self):
        assert coerce_local(ColumnSpec(LocalType.DECIMAL, precision=18, scale=2), "12.50") == Decimal("12.50")
        assert coerce_local(ColumnSpec(LocalType.INTEGER), "7") == 7
        assert to_remote(ColumnSpec(LocalType.DECIMAL, precision=18, scale=2), Decimal("12.50")) == 12.5
        assert coerce_local(ColumnSpec(LocalType.FLOAT), "") is None

    @pytest.mark.parametrize("value", ["lots", "N/A", "Infinity", "NaN"])
    def test_bad_numbers_raise_value_error(self, value):
        with pytest.raises(ValueError):
            coerce_local(ColumnSpec(LocalType.INTEGER), value)
        with pytest.raises(ValueError):
            to_remote(ColumnSpec(LocalType.INTEGER), value)
        with pytest.raises(ValueError):
            to_remote(ColumnSpec(LocalType.DECIMAL, precision=18, scale=2), value)

    def test_boolean_strings(self):
        spec = ColumnSpec(LocalType.BOOLEAN)
        assert coerce_local(spec, "true") is True
        assert coerce_local(spec, "0") is False
        with pytest.raises(ValueError):
            coerce_local(spec, "maybe")

    def test_none_passes_through(self):
        assert to_remote(ColumnSpec(LocalType.DATETIME), None) is None


# ── Loader ───────────────────────────────────────────────────────────────────


class TestLoadModules:
    def test_list_format(self, tmp_path):
        path = tmp_path / "modules.json"
        path.write_text(
            json.dumps(
                [
                    {
                        "module": "Contacts",
                        "fields": [
                            {"name": "lastName", "api_name": "Last_Name", "type": "text"},
                            {"name": "modifiedTime", "api_name": "Modified_Time", "type": "datetime"},
                        ],
                    }
                ]
            )
        )
        modules = load_modules(path)
        assert list(modules) == ["Contacts"]
        assert modules["Contacts"].fields[0].getter == "Last_Name"

    def test_mapping_format(self, tmp_path):
        path = tmp_path / "modules.json"
        path.write_text(json.dumps({"Leads": {"plural_name": "Leads", "fields": []}}))
        assert load_modules(path)["Leads"].module == "Leads"

    def test_invalid_metadata(self, tmp_path):
        path = tmp_path / "modules.json"
        path.write_text(json.dumps([{"module": "Leads", "fields": [{"name": "x"}]}]))
        with pytest.raises(MirrorError):
            load_modules(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(MirrorError):
            load_modules(tmp_path / "absent.json")

    def test_malformed_json(self, tmp_path):
        path = tmp_path / "modules.json"
        path.write_text("[{")
        with pytest.raises(MirrorError):
            load_modules(path)
