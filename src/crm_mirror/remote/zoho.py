"""Async client for the Zoho CRM REST API.

Provides ZohoClient implementing RemoteServiceClient with retry logic
(tenacity, exponential backoff) on transport errors, rate limiting and
server errors. Every other failure is mapped onto RemoteFetchError or
RemoteSaveError carrying the module name.

Also generates ModuleMetadata from the field settings endpoint: local
column names are the camel-cased API names, lookups map to their id plus
a read-only display-name companion, and non-scalar fields are omitted.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.crm_mirror.core.errors import RemoteFetchError, RemoteSaveError
from src.crm_mirror.metadata.fields import FieldDescriptor, ModuleMetadata
from src.crm_mirror.metadata.values import parse_datetime
from src.crm_mirror.remote.client import (
    DeletedPage,
    RecordPage,
    RemoteServiceClient,
    SaveResult,
)
from src.crm_mirror.schema.type_mapper import normalize_type_tag

logger = structlog.get_logger(__name__)

# Status codes worth retrying: rate limiting and transient server errors.
RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})

# Field types with no scalar column representation.
IGNORED_FIELD_TYPES = frozenset({"subform", "fileupload", "imageupload", "profileimage"})

_OWNER_COMPANION = "_OwnerName"
_LOOKUP_COMPANION = "_Name"


class TransientResponseError(httpx.HTTPStatusError):
    """A retryable HTTP status answered by the service."""


_TRANSIENT_ERRORS = (httpx.TransportError, TransientResponseError)


def camel_name(api_name: str) -> str:
    """Local column name for a Zoho API name: "First_Name" -> "firstName"."""
    parts = [part for part in api_name.split("_") if part]
    if not parts:
        return api_name
    head = parts[0][:1].lower() + parts[0][1:]
    return head + "".join(part[:1].upper() + part[1:] for part in parts[1:])


def descriptors_from_settings(fields: list[dict[str, Any]]) -> list[FieldDescriptor]:
    """Translate the field settings payload into field descriptors."""
    descriptors: list[FieldDescriptor] = []
    for field in fields:
        api_name = field.get("api_name")
        data_type = str(field.get("data_type") or "").lower()
        if not api_name or not data_type or data_type in IGNORED_FIELD_TYPES:
            continue

        name = camel_name(api_name)
        read_only = bool(field.get("read_only")) or data_type in ("formula", "autonumber")
        tag = normalize_type_tag(data_type)

        if tag in ("lookup", "ownerlookup", "userlookup"):
            descriptors.append(
                FieldDescriptor(
                    name=name,
                    api_name=api_name,
                    type=tag,
                    read_only=read_only,
                    required=bool(field.get("system_mandatory")),
                    getter=f"{api_name}.id",
                    setter=None if read_only else f"{api_name}.id",
                )
            )
            suffix = _OWNER_COMPANION if tag == "ownerlookup" else _LOOKUP_COMPANION
            descriptors.append(
                FieldDescriptor(
                    name=f"{name}{suffix}",
                    api_name=api_name,
                    type="text",
                    read_only=True,
                    getter=f"{api_name}.name",
                    setter=None,
                )
            )
            continue

        descriptors.append(
            FieldDescriptor(
                name=name,
                api_name=api_name,
                type=tag,
                max_length=field.get("length"),
                decimal_places=field.get("decimal_place"),
                required=bool(field.get("system_mandatory")),
                read_only=read_only,
            )
        )
    return descriptors


def _zoho_retry(attempts: int, backoff: float):
    return retry(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=backoff, min=backoff, max=10 * backoff),
        retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        reraise=True,
    )


class ZohoClient(RemoteServiceClient):
    """Zoho CRM REST client.

    Args:
        access_token: OAuth access token sent as "Zoho-oauthtoken".
        base_url: API domain, e.g. https://www.zohoapis.com.
        api_version: REST API version path segment.
        timeout: Per-request timeout in seconds.
        max_retries: Attempts for transient failures.
        backoff: Exponential backoff multiplier in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://www.zohoapis.com",
        api_version: str = "v2",
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/crm/{api_version}",
            headers={"Authorization": f"Zoho-oauthtoken {access_token}"},
            timeout=timeout,
            transport=transport,
        )
        self._request = _zoho_retry(max_retries, backoff)(self._send_once)

    async def close(self) -> None:
        await self._client.aclose()

    async def _send_once(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        response = await self._client.request(method, url, **kwargs)
        if response.status_code in RETRYABLE_STATUS:
            logger.warning("zoho.transient_status", url=url, status=response.status_code)
            raise TransientResponseError(
                f"Transient status {response.status_code}",
                request=response.request,
                response=response,
            )
        return response

    @staticmethod
    def _modified_header(modified_since: datetime | None) -> dict[str, str]:
        if modified_since is None:
            return {}
        stamp = modified_since
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        return {"If-Modified-Since": stamp.isoformat(timespec="seconds")}

    async def _fetch(
        self,
        module: str,
        url: str,
        params: dict[str, Any],
        modified_since: datetime | None,
    ) -> dict[str, Any]:
        try:
            response = await self._request(
                "GET", url, params=params, headers=self._modified_header(modified_since)
            )
            if response.status_code in (204, 304):
                return {}
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("zoho.fetch_failed", module=module, url=url, error=str(exc))
            raise RemoteFetchError(module, str(exc)) from exc

    async def list_records(
        self,
        module: str,
        *,
        sort_by: str | None = None,
        sort_order: str = "asc",
        modified_since: datetime | None = None,
        page: int = 1,
        per_page: int = 200,
    ) -> RecordPage:
        params: dict[str, Any] = {"page": page, "per_page": per_page}
        if sort_by:
            params["sort_by"] = sort_by
            params["sort_order"] = sort_order
        body = await self._fetch(module, f"/{module}", params, modified_since)
        return RecordPage(
            records=body.get("data", []),
            has_more=bool(body.get("info", {}).get("more_records", False)),
        )

    async def list_deleted_ids(
        self,
        module: str,
        *,
        modified_since: datetime | None = None,
        page: int = 1,
        per_page: int = 200,
    ) -> DeletedPage:
        params = {"type": "all", "page": page, "per_page": per_page}
        body = await self._fetch(module, f"/{module}/deleted", params, modified_since)
        return DeletedPage(
            ids=[str(entry["id"]) for entry in body.get("data", []) if entry.get("id")],
            has_more=bool(body.get("info", {}).get("more_records", False)),
        )

    async def save_records(self, module: str, records: list[dict[str, Any]]) -> list[SaveResult]:
        """Insert records without "id" (POST) and update the others (PUT).

        Results are returned in input order.
        """
        results: list[SaveResult | None] = [None] * len(records)
        inserts = [i for i, record in enumerate(records) if not record.get("id")]
        updates = [i for i, record in enumerate(records) if record.get("id")]

        for method, positions in (("POST", inserts), ("PUT", updates)):
            if not positions:
                continue
            entries = await self._save(module, method, [records[i] for i in positions])
            if len(entries) != len(positions):
                raise RemoteSaveError(
                    module, f"{method} returned {len(entries)} results for {len(positions)} records"
                )
            for position, entry in zip(positions, entries):
                results[position] = self._save_result(entry)

        return [result for result in results if result is not None]

    async def _save(self, module: str, method: str, records: list[dict[str, Any]]) -> list[dict]:
        try:
            response = await self._request(method, f"/{module}", json={"data": records})
            # Per-record failures come back with 400/202 and a data array.
            if response.status_code >= 400 and "data" not in _safe_json(response):
                response.raise_for_status()
            return _safe_json(response).get("data", [])
        except httpx.HTTPError as exc:
            logger.error("zoho.save_failed", module=module, method=method, error=str(exc))
            raise RemoteSaveError(module, str(exc)) from exc

    @staticmethod
    def _save_result(entry: dict[str, Any]) -> SaveResult:
        details = entry.get("details") or {}
        success = str(entry.get("status", "")).lower() == "success"
        if not success:
            message = f"{entry.get('code', 'ERROR')}: {entry.get('message', '')}"
            if details:
                message = f"{message} {details}"
            return SaveResult(success=False, message=message)
        return SaveResult(
            success=True,
            id=str(details["id"]) if details.get("id") else None,
            message=entry.get("message"),
            modified_time=parse_datetime(details.get("Modified_Time")),
            created_time=parse_datetime(details.get("Created_Time")),
        )

    async def delete_record(self, module: str, record_id: str) -> None:
        try:
            response = await self._request("DELETE", f"/{module}/{record_id}")
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("zoho.delete_failed", module=module, record_id=record_id, error=str(exc))
            raise RemoteSaveError(module, str(exc)) from exc

        for entry in _safe_json(response).get("data", []):
            if str(entry.get("status", "")).lower() != "success":
                raise RemoteSaveError(
                    module, f"delete of {record_id} failed: {entry.get('message', '')}"
                )
        logger.info("zoho.record_deleted", module=module, record_id=record_id)

    async def fetch_module_metadata(self, module: str) -> ModuleMetadata:
        body = await self._fetch(module, "/settings/fields", {"module": module}, None)
        fields = descriptors_from_settings(body.get("fields", []))
        logger.info("zoho.metadata_fetched", module=module, fields=len(fields))
        return ModuleMetadata(module=module, plural_name=module, fields=fields)


def _safe_json(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
