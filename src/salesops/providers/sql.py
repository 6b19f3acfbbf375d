"""Relational Record Provider -- SQLAlchemy async engine over the legacy tables.

Reads return raw rows exactly as stored (``DealID``, ``SalesAgentID``,
``sales_team`` ...) and are normalized downstream. Writes translate canonical
wire names to the legacy column names via SQL_COLUMN_MAP.

Tables are addressed with lightweight ``table()``/``column()`` constructs rather
than ORM models: this layer does not own the schema.
"""

from __future__ import annotations

import json
from typing import Any

import structlog
from sqlalchemy import column, insert, literal_column, select, table, update
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from src.salesops.providers.base import RecordProvider
from src.salesops.records.field_mapping import SQL_COLUMN_MAP, SQL_TABLES, to_sql_row
from src.salesops.records.schemas import EntityType

logger = structlog.get_logger(__name__)


def _to_column_value(value: Any) -> Any:
    """Lists and maps are stored as JSON text (e.g. notification ``to``)."""
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return value


class SqlRecordProvider(RecordProvider):
    """Record Provider backed by an async SQLAlchemy engine.

    Args:
        engine: AsyncEngine connected to the relational store.
        tables: Entity type -> table name. Defaults to SQL_TABLES.
        name: Provider name used in logs and partial-error annotations.
    """

    writable = True

    def __init__(
        self,
        engine: AsyncEngine,
        tables: dict[EntityType, str] | None = None,
        name: str = "sql",
    ) -> None:
        self._engine = engine
        self._tables = tables or SQL_TABLES
        self.name = name

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> SqlRecordProvider:
        engine = create_async_engine(url, pool_pre_ping=True)
        return cls(engine, **kwargs)

    def _id_column(self, entity_type: EntityType) -> str:
        return SQL_COLUMN_MAP[entity_type]["id"]

    async def fetch(self, entity_type: EntityType) -> list[dict[str, Any]]:
        stmt = select(literal_column("*")).select_from(table(self._tables[entity_type]))
        async with self._engine.connect() as conn:
            result = await conn.execute(stmt)
            rows = [dict(row) for row in result.mappings().all()]
        logger.debug("sql_provider.fetched", entity_type=entity_type.value, count=len(rows))
        return rows

    async def create(self, entity_type: EntityType, record: dict[str, Any]) -> dict[str, Any]:
        row = {key: _to_column_value(value) for key, value in to_sql_row(entity_type, record).items()}
        target = table(self._tables[entity_type], *[column(name) for name in row])

        async with self._engine.begin() as conn:
            await conn.execute(insert(target).values(**row))

        logger.info(
            "sql_provider.record_created",
            entity_type=entity_type.value,
            record_id=record.get("id"),
        )
        return row

    async def update(
        self, entity_type: EntityType, record_id: str, changes: dict[str, Any]
    ) -> dict[str, Any] | None:
        values = {key: _to_column_value(value) for key, value in to_sql_row(entity_type, changes).items()}
        id_column = self._id_column(entity_type)
        values.pop(id_column, None)
        target = table(
            self._tables[entity_type],
            column(id_column),
            *[column(name) for name in values],
        )

        async with self._engine.begin() as conn:
            if values:
                result = await conn.execute(
                    update(target).where(target.c[id_column] == record_id).values(**values)
                )
                if result.rowcount == 0:
                    return None
            refreshed = await conn.execute(
                select(literal_column("*"))
                .select_from(target)
                .where(target.c[id_column] == record_id)
            )
            row = refreshed.mappings().first()

        if row is None:
            return None
        logger.info("sql_provider.record_updated", entity_type=entity_type.value, record_id=record_id)
        return dict(row)

    async def close(self) -> None:
        await self._engine.dispose()
