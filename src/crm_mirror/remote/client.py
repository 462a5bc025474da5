"""Remote CRM service client interface consumed by the pull and push engines.

Every concrete client (Zoho CRM REST, test doubles) implements this ABC.
Records are plain dicts keyed by remote API field names; "id" is the
natural identifier.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from src.crm_mirror.metadata.fields import ModuleMetadata


class RecordPage(BaseModel):
    records: list[dict[str, Any]] = Field(default_factory=list)
    has_more: bool = False


class DeletedPage(BaseModel):
    ids: list[str] = Field(default_factory=list)
    has_more: bool = False


class SaveResult(BaseModel):
    """Per-record outcome of a save call, in input order."""

    success: bool
    id: str | None = None
    message: str | None = None
    modified_time: datetime | None = None
    created_time: datetime | None = None


class RemoteServiceClient(ABC):
    """Abstract interface of the remote CRM service.

    Methods:
        list_records: One page of records modified since a timestamp.
        list_deleted_ids: One page of deleted record ids.
        save_records: Create (no "id") or update (with "id") a batch.
        delete_record: Delete one record by natural id.
        fetch_module_metadata: Field descriptors of a module.
    """

    @abstractmethod
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
        """Fetch one page of records.

        Raises:
            RemoteFetchError: The page could not be fetched.
        """
        ...

    @abstractmethod
    async def list_deleted_ids(
        self,
        module: str,
        *,
        modified_since: datetime | None = None,
        page: int = 1,
        per_page: int = 200,
    ) -> DeletedPage:
        """Fetch one page of deleted record ids.

        Raises:
            RemoteFetchError: The page could not be fetched.
        """
        ...

    @abstractmethod
    async def save_records(self, module: str, records: list[dict[str, Any]]) -> list[SaveResult]:
        """Create or update records, returning one result per input record.

        Raises:
            RemoteSaveError: The batch as a whole failed.
        """
        ...

    @abstractmethod
    async def delete_record(self, module: str, record_id: str) -> None:
        """Delete a record.

        Raises:
            RemoteSaveError: The deletion failed.
        """
        ...

    async def fetch_module_metadata(self, module: str) -> ModuleMetadata:
        """Field metadata of a module, for clients that can describe modules."""
        raise NotImplementedError(f"{type(self).__name__} cannot describe modules")

    async def close(self) -> None:
        """Release client resources."""
        return None
