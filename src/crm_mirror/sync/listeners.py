"""Listener hooks notified of every record applied by a pull.

Listeners run inside the transaction of the applied row: raising from a
hook rolls the row back and aborts the pull for that module.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from src.crm_mirror.metadata.fields import ModuleMetadata


class ChangeListener(ABC):
    """Observer of pull-applied inserts and updates."""

    @abstractmethod
    async def on_insert(self, data: dict[str, Any], module: ModuleMetadata) -> None:
        """A remote record was inserted locally with the given column values."""
        ...

    @abstractmethod
    async def on_update(
        self,
        new: dict[str, Any],
        old: dict[str, Any],
        module: ModuleMetadata,
    ) -> None:
        """A mirror row was refreshed; new holds the applied values only."""
        ...
