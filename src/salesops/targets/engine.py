"""Target Progress Engine -- applies "deal recorded" events to stored targets.

Reads the agent's target for the period straight from the providers (bypassing
the cache), folds the deal in with apply_deal_event, and writes the new counters
back to the targets write provider. Events for the same (agent, period) are
serialized with a per-key asyncio.Lock so concurrent deals never lose an
increment within this process.

A missing target is reported as None ("not found"), never as an error.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal

import structlog

from src.salesops.aggregation.aggregator import Aggregator
from src.salesops.providers.base import ProviderRegistry
from src.salesops.records.schemas import EntityType, Target
from src.salesops.targets.progress import apply_deal_event, normalize_period, period_of

logger = structlog.get_logger(__name__)

# Fields written back after an event; everything else on the target is left alone.
_PROGRESS_FIELDS = ("currentSales", "currentDeals", "salesProgress", "dealsProgress", "status", "updatedAt")


class TargetProgressEngine:
    """Applies deal events to Target records.

    Args:
        aggregator: Used to read current targets.
        registry: Resolves the targets write provider.
        clock: Wall-clock source for the default period and ``updatedAt``.
    """

    def __init__(
        self,
        aggregator: Aggregator,
        registry: ProviderRegistry,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._aggregator = aggregator
        self._registry = registry
        self._clock = clock
        # (agent, period) -> (lock, callers holding or awaiting it); dropped when unused
        self._locks: dict[tuple[str, str], tuple[asyncio.Lock, int]] = {}

    def resolve_period(self, period: object = None) -> str:
        """Normalize ``period``; the current month when omitted.

        Raises:
            ValueError: If ``period`` is given but not a recognizable year-month.
        """
        if period is None or period == "":
            return period_of(self._clock())
        resolved = normalize_period(period)
        if resolved is None:
            raise ValueError(f"not a year-month period: {period!r}")
        return resolved

    async def find(self, agent_id: str, period: str) -> Target | None:
        targets = await self._aggregator.load_records(EntityType.TARGETS, fresh=True)
        for target in targets:
            if target.agent_id == agent_id and target.period == period:
                return target
        return None

    async def record_deal(
        self,
        agent_id: str,
        deal_amount: Decimal | int | str,
        period: object = None,
    ) -> Target | None:
        """Apply one recorded deal to the agent's target for ``period``.

        Returns:
            The updated Target, or None when the agent has no target for the period.

        Raises:
            ValueError: If the amount is negative or not a number, or the period is unreadable.
            ProviderUnavailable: If the targets could not be read.
        """
        period = self.resolve_period(period)
        key = (agent_id, period)
        lock, users = self._locks.get(key, (None, 0))
        lock = lock or asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                updated = await self._apply(agent_id, period, deal_amount)
        finally:
            lock, users = self._locks[key]
            if users == 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

        if updated is not None:
            logger.info(
                "targets.progress_applied",
                agent_id=agent_id,
                period=period,
                target_id=updated.id,
                current_sales=str(updated.current_sales),
                current_deals=updated.current_deals,
                status=updated.status.value,
            )
        return updated

    async def _apply(
        self, agent_id: str, period: str, deal_amount: Decimal | int | str
    ) -> Target | None:
        target = await self.find(agent_id, period)
        if target is None:
            logger.info("targets.not_found", agent_id=agent_id, period=period)
            return None

        updated = apply_deal_event(target, deal_amount).model_copy(
            update={"updated_at": self._clock()}
        )
        wire = updated.to_wire()
        changes = {name: wire[name] for name in _PROGRESS_FIELDS}

        provider = self._registry.write_target(EntityType.TARGETS)
        stored = await provider.update(EntityType.TARGETS, target.id, changes)
        if stored is None:
            logger.info(
                "targets.not_found",
                agent_id=agent_id,
                period=period,
                target_id=target.id,
                provider=provider.name,
            )
            return None
        return updated
