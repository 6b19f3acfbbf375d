"""Record Provider abstract base class and the entity-type routing registry.

Every backend (relational store, document store, legacy CSV files) implements
RecordProvider. Providers return loosely-typed raw dicts; normalization happens
later in the Aggregator so each backend stays a thin I/O adapter.

ProviderRegistry decides which providers serve which entity type. Reads fan out
to every provider of an entity type; writes go to the first writable one.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import structlog

from src.salesops.config import Settings
from src.salesops.errors import ReadOnlyProviderError, UnknownEntityTypeError
from src.salesops.records.schemas import EntityType

logger = structlog.get_logger(__name__)


class RecordProvider(ABC):
    """Abstract interface for a persistent record source.

    Methods:
        fetch: Return every raw record of an entity type.
        create: Persist a canonical wire dict, return the stored raw record.
        update: Apply canonical wire changes to one record, return it or None.
        close: Release connections held by the provider.
    """

    name: str = "provider"
    writable: bool = True

    @abstractmethod
    async def fetch(self, entity_type: EntityType) -> list[dict[str, Any]]:
        """Return all raw records of ``entity_type``."""
        ...

    @abstractmethod
    async def create(self, entity_type: EntityType, record: dict[str, Any]) -> dict[str, Any]:
        """Persist a new record, return the stored raw record."""
        ...

    @abstractmethod
    async def update(
        self, entity_type: EntityType, record_id: str, changes: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Update one record by id, return the stored raw record or None if absent."""
        ...

    async def close(self) -> None:
        """Release provider resources. Default: nothing to release."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r}>"


class ReadOnlyProvider(RecordProvider):
    """Base for providers that only serve reads."""

    writable = False

    async def create(self, entity_type: EntityType, record: dict[str, Any]) -> dict[str, Any]:
        raise ReadOnlyProviderError(f"{self.name} does not accept writes")

    async def update(
        self, entity_type: EntityType, record_id: str, changes: dict[str, Any]
    ) -> dict[str, Any] | None:
        raise ReadOnlyProviderError(f"{self.name} does not accept writes")


class ProviderRegistry:
    """Maps each entity type to its ordered Record Providers.

    Args:
        routes: Entity type -> providers, in priority order. When two providers
            return the same record id, the earlier provider's copy is kept.
    """

    def __init__(self, routes: dict[EntityType, list[RecordProvider]]) -> None:
        self._routes = {entity_type: list(providers) for entity_type, providers in routes.items()}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        available: dict[str, RecordProvider],
    ) -> ProviderRegistry:
        """Build routes from ``ENTITY_SOURCES``, skipping providers not configured."""
        routes: dict[EntityType, list[RecordProvider]] = {}
        for entity_name, provider_names in settings.ENTITY_SOURCES.items():
            try:
                entity_type = EntityType(entity_name)
            except ValueError:
                raise UnknownEntityTypeError(
                    f"ENTITY_SOURCES names unknown entity type: {entity_name}"
                ) from None

            providers: list[RecordProvider] = []
            for provider_name in provider_names:
                provider = available.get(provider_name)
                if provider is None:
                    logger.warning(
                        "providers.not_configured",
                        entity_type=entity_name,
                        provider=provider_name,
                    )
                    continue
                providers.append(provider)
            routes[entity_type] = providers
        return cls(routes)

    def providers_for(self, entity_type: EntityType) -> list[RecordProvider]:
        return list(self._routes.get(entity_type, []))

    def write_target(self, entity_type: EntityType) -> RecordProvider:
        """First writable provider for ``entity_type``.

        Raises:
            ReadOnlyProviderError: If no writable provider serves the entity type.
        """
        for provider in self._routes.get(entity_type, []):
            if provider.writable:
                return provider
        raise ReadOnlyProviderError(f"No writable provider configured for {entity_type.value}")

    def entity_types_for(self, provider: RecordProvider) -> list[EntityType]:
        """Entity types routed to ``provider``, in routing order."""
        return [
            entity_type
            for entity_type, providers in self._routes.items()
            if provider in providers
        ]

    def all_providers(self) -> list[RecordProvider]:
        """Every distinct provider, in first-seen order."""
        seen: list[RecordProvider] = []
        for providers in self._routes.values():
            for provider in providers:
                if provider not in seen:
                    seen.append(provider)
        return seen

    async def close(self) -> None:
        for provider in self.all_providers():
            try:
                await provider.close()
            except Exception:
                logger.warning("providers.close_failed", provider=provider.name, exc_info=True)
