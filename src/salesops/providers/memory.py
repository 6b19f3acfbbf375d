"""In-process Record Provider for development and tests."""

from __future__ import annotations

import copy
import uuid
from typing import Any

from src.salesops.errors import ReadOnlyProviderError
from src.salesops.providers.base import RecordProvider
from src.salesops.records.schemas import EntityType


class MemoryRecordProvider(RecordProvider):
    """Keeps raw records in per-entity lists.

    Args:
        name: Provider name used in logs and partial-error annotations.
        records: Initial raw records keyed by entity type (or its string value).
        writable: Whether writes are accepted.
    """

    def __init__(
        self,
        name: str = "memory",
        records: dict[EntityType | str, list[dict[str, Any]]] | None = None,
        writable: bool = True,
    ) -> None:
        self.name = name
        self.writable = writable
        self._records: dict[EntityType, list[dict[str, Any]]] = {
            entity_type: [] for entity_type in EntityType
        }
        for key, rows in (records or {}).items():
            self._records[EntityType(key)] = [dict(row) for row in rows]
        self.fetch_count = 0

    async def fetch(self, entity_type: EntityType) -> list[dict[str, Any]]:
        self.fetch_count += 1
        return copy.deepcopy(self._records[entity_type])

    async def create(self, entity_type: EntityType, record: dict[str, Any]) -> dict[str, Any]:
        self._check_writable()
        stored = copy.deepcopy(record)
        stored.setdefault("id", str(uuid.uuid4()))
        self._records[entity_type].append(stored)
        return copy.deepcopy(stored)

    async def update(
        self, entity_type: EntityType, record_id: str, changes: dict[str, Any]
    ) -> dict[str, Any] | None:
        self._check_writable()
        for stored in self._records[entity_type]:
            if str(stored.get("id")) == record_id:
                stored.update(copy.deepcopy(changes))
                return copy.deepcopy(stored)
        return None

    def _check_writable(self) -> None:
        if not self.writable:
            raise ReadOnlyProviderError(f"{self.name} does not accept writes")
