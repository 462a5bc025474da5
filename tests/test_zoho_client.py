"""Tests for the Zoho CRM REST client, using httpx.MockTransport."""

from __future__ import annotations

import json
from datetime import datetime

import httpx
import pytest

from src.crm_mirror.core.errors import RemoteFetchError, RemoteSaveError
from src.crm_mirror.metadata.accessors import build_accessors
from src.crm_mirror.remote.zoho import ZohoClient, camel_name, descriptors_from_settings


def _client(handler, **kwargs) -> ZohoClient:
    return ZohoClient(
        "token-123",
        transport=httpx.MockTransport(handler),
        backoff=0,
        **kwargs,
    )


# ── Listing ──────────────────────────────────────────────────────────────────


class TestListRecords:
    @pytest.mark.asyncio
    async def test_page_request(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={"data": [{"id": "1", "Last_Name": "A"}], "info": {"more_records": True}},
            )

        client = _client(handler)
        page = await client.list_records(
            "Contacts",
            sort_by="Modified_Time",
            modified_since=datetime(2024, 3, 1, 12, 0),
            page=2,
            per_page=50,
        )
        await client.close()

        assert page.records == [{"id": "1", "Last_Name": "A"}]
        assert page.has_more is True
        request = seen[0]
        assert request.url.path == "/crm/v2/Contacts"
        assert request.url.params["page"] == "2"
        assert request.url.params["per_page"] == "50"
        assert request.url.params["sort_by"] == "Modified_Time"
        assert request.url.params["sort_order"] == "asc"
        assert request.headers["If-Modified-Since"] == "2024-03-01T12:00:00+00:00"
        assert request.headers["Authorization"] == "Zoho-oauthtoken token-123"

    @pytest.mark.asyncio
    async def test_not_modified_is_empty(self):
        client = _client(lambda request: httpx.Response(304))
        page = await client.list_records("Contacts")
        await client.close()

        assert page.records == []
        assert page.has_more is False

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"data": [], "info": {"more_records": False}})

        client = _client(handler, max_retries=3)
        await client.list_records("Contacts")
        await client.close()

        assert calls["n"] == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_fetch_error(self):
        client = _client(lambda request: httpx.Response(429), max_retries=2)

        with pytest.raises(RemoteFetchError):
            await client.list_records("Contacts")
        await client.close()

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(401, json={"code": "INVALID_TOKEN"})

        client = _client(handler)
        with pytest.raises(RemoteFetchError):
            await client.list_records("Contacts")
        await client.close()

        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_deleted_ids(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/crm/v2/Contacts/deleted"
            assert request.url.params["type"] == "all"
            return httpx.Response(
                200,
                json={"data": [{"id": 11}, {"id": "12"}], "info": {"more_records": False}},
            )

        client = _client(handler)
        page = await client.list_deleted_ids("Contacts")
        await client.close()

        assert page.ids == ["11", "12"]


# ── Saving ───────────────────────────────────────────────────────────────────


class TestSaveRecords:
    @pytest.mark.asyncio
    async def test_inserts_and_updates_keep_input_order(self):
        def handler(request: httpx.Request) -> httpx.Response:
            records = json.loads(request.content)["data"]
            if request.method == "POST":
                data = [
                    {
                        "status": "success",
                        "details": {
                            "id": f"new-{n}",
                            "Modified_Time": "2024-03-01T12:00:00+02:00",
                            "Created_Time": "2024-03-01T12:00:00+02:00",
                        },
                    }
                    for n, _ in enumerate(records)
                ]
            else:
                data = [{"status": "success", "details": {"id": r["id"]}} for r in records]
            return httpx.Response(200, json={"data": data})

        client = _client(handler)
        results = await client.save_records(
            "Contacts",
            [{"Last_Name": "A"}, {"id": "7", "Last_Name": "B"}, {"Last_Name": "C"}],
        )
        await client.close()

        assert [r.id for r in results] == ["new-0", "7", "new-1"]
        assert results[0].modified_time == datetime(2024, 3, 1, 10, 0)

    @pytest.mark.asyncio
    async def test_per_record_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400,
                json={
                    "data": [
                        {
                            "status": "error",
                            "code": "MANDATORY_NOT_FOUND",
                            "message": "required field not found",
                            "details": {"api_name": "Last_Name"},
                        }
                    ]
                },
            )

        client = _client(handler)
        [result] = await client.save_records("Contacts", [{"First_Name": "A"}])
        await client.close()

        assert result.success is False
        assert result.message.startswith("MANDATORY_NOT_FOUND")

    @pytest.mark.asyncio
    async def test_whole_batch_failure(self):
        client = _client(lambda request: httpx.Response(401, text="unauthorized"))

        with pytest.raises(RemoteSaveError):
            await client.save_records("Contacts", [{"Last_Name": "A"}])
        await client.close()

    @pytest.mark.asyncio
    async def test_delete(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data": [{"status": "success"}]})

        client = _client(handler)
        await client.delete_record("Contacts", "42")
        await client.close()

        assert seen[0].method == "DELETE"
        assert seen[0].url.path == "/crm/v2/Contacts/42"

    @pytest.mark.asyncio
    async def test_delete_failure(self):
        client = _client(
            lambda request: httpx.Response(
                200, json={"data": [{"status": "error", "message": "record in use"}]}
            )
        )

        with pytest.raises(RemoteSaveError):
            await client.delete_record("Contacts", "42")
        await client.close()


# ── Module metadata ──────────────────────────────────────────────────────────


class TestModuleMetadata:
    def test_camel_name(self):
        assert camel_name("First_Name") == "firstName"
        assert camel_name("Email") == "email"
        assert camel_name("Modified_Time") == "modifiedTime"

    def test_lookup_companion_fields(self):
        descriptors = descriptors_from_settings(
            [
                {"api_name": "Owner", "data_type": "ownerlookup"},
                {"api_name": "Account_Name", "data_type": "lookup"},
                {"api_name": "Photo", "data_type": "profileimage"},
            ]
        )

        names = [d.name for d in descriptors]
        assert names == ["owner", "owner_OwnerName", "accountName", "accountName_Name"]
        assert descriptors[0].getter == "Owner.id"
        assert descriptors[1].getter == "Owner.name"
        assert descriptors[1].read_only

    @pytest.mark.asyncio
    async def test_fetch_module_metadata(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/crm/v2/settings/fields"
            assert request.url.params["module"] == "Contacts"
            return httpx.Response(
                200,
                json={
                    "fields": [
                        {"api_name": "Last_Name", "data_type": "text", "length": 80},
                        {"api_name": "Modified_Time", "data_type": "datetime", "read_only": True},
                        {"api_name": "Account_Name", "data_type": "lookup"},
                    ]
                },
            )

        client = _client(handler)
        module = await client.fetch_module_metadata("Contacts")
        await client.close()

        accessors = build_accessors(module)
        assert module.table_name("zoho_") == "zoho_contacts"
        assert accessors["lastName"].column.length == 80
        assert accessors["accountName"].writable
        assert not accessors["accountName_Name"].writable
        assert not accessors["modifiedTime"].writable
