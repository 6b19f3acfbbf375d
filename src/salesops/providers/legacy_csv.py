"""Legacy flat-file Record Provider -- read-only CSV exports.

One file per entity type (``deals.csv``, ``callbacks.csv`` ...) in a directory.
A missing file means the legacy store holds nothing for that entity type.
Files are parsed in a worker thread so large exports do not stall the event loop.
"""

from __future__ import annotations

import asyncio
import csv
from pathlib import Path
from typing import Any

import structlog

from src.salesops.providers.base import ReadOnlyProvider
from src.salesops.records.schemas import EntityType

logger = structlog.get_logger(__name__)

DEFAULT_FILES: dict[EntityType, str] = {
    entity_type: f"{entity_type.value}.csv" for entity_type in EntityType
}


class LegacyCsvProvider(ReadOnlyProvider):
    """Reads raw records from CSV exports.

    Args:
        directory: Folder holding the CSV files.
        files: Entity type -> file name. Defaults to ``<entity>.csv``.
        encoding: File encoding; the default strips a UTF-8 BOM.
    """

    def __init__(
        self,
        directory: str | Path,
        files: dict[EntityType, str] | None = None,
        encoding: str = "utf-8-sig",
        name: str = "legacy_csv",
    ) -> None:
        self._directory = Path(directory)
        self._files = files or DEFAULT_FILES
        self._encoding = encoding
        self.name = name

    async def fetch(self, entity_type: EntityType) -> list[dict[str, Any]]:
        file_name = self._files.get(entity_type)
        if file_name is None:
            return []
        path = self._directory / file_name
        if not path.exists():
            logger.debug("legacy_csv.file_missing", entity_type=entity_type.value, path=str(path))
            return []
        return await asyncio.to_thread(self._read, path)

    def _read(self, path: Path) -> list[dict[str, Any]]:
        with path.open(newline="", encoding=self._encoding) as handle:
            reader = csv.DictReader(handle)
            return [
                {key.strip(): value for key, value in row.items() if key}
                for row in reader
            ]
