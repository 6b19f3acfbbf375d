"""Derived dashboard analytics over role-filtered record sets.

Pure functions: the same filtered records always produce the same numbers.
Chart series are ordered by amount descending, then by name, so ties never
reorder between refreshes.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from decimal import ROUND_HALF_UP, Decimal

from pydantic import Field

from src.salesops.records.schemas import (
    Callback,
    CallbackStatus,
    CanonicalModel,
    Deal,
    Target,
    TargetStatus,
)

TOP_AGENT_LIMIT = 5
_CENT = Decimal("0.01")


class SalesBucket(CanonicalModel):
    """Sales total for one chart category (agent, team, service tier)."""

    key: str
    label: str = ""
    sales: Decimal = Decimal("0")
    deals: int = 0


class TargetSummary(CanonicalModel):
    total: int = 0
    exceeded: int = 0
    on_track: int = 0
    behind: int = 0


class Analytics(CanonicalModel):
    """Dashboard KPIs serialized with camelCase keys (``totalRevenue`` ...)."""

    total_deals: int = 0
    total_revenue: Decimal = Decimal("0")
    average_deal_size: Decimal = Decimal("0")
    distinct_agents: int = 0
    total_callbacks: int = 0
    pending_callbacks: int = 0
    completed_callbacks: int = 0
    conversion_rate: float = 0.0
    top_agents: list[SalesBucket] = Field(default_factory=list)
    sales_by_team: list[SalesBucket] = Field(default_factory=list)
    sales_by_service_tier: list[SalesBucket] = Field(default_factory=list)
    targets: TargetSummary | None = None


def conversion_rate(completed: int, total: int) -> float:
    """``completed / total * 100`` rounded to 2 places; 0 when there are no callbacks."""
    if total <= 0:
        return 0.0
    return round(completed / total * 100, 2)


def _bucket(deals: Iterable[Deal], key_of, label_of) -> list[SalesBucket]:
    buckets: dict[str, SalesBucket] = {}
    for deal in deals:
        key = key_of(deal) or "unassigned"
        bucket = buckets.get(key)
        if bucket is None:
            bucket = buckets[key] = SalesBucket(key=key, label=label_of(deal) or key)
        bucket.sales += deal.amount_paid
        bucket.deals += 1
    return sorted(buckets.values(), key=lambda b: (-b.sales, b.label, b.key))


def summarize_targets(targets: Sequence[Target]) -> TargetSummary:
    summary = TargetSummary(total=len(targets))
    for target in targets:
        if target.status is TargetStatus.EXCEEDED:
            summary.exceeded += 1
        elif target.status is TargetStatus.ON_TRACK:
            summary.on_track += 1
        else:
            summary.behind += 1
    return summary


def compute_analytics(
    deals: Sequence[Deal] | None = None,
    callbacks: Sequence[Callback] | None = None,
    targets: Sequence[Target] | None = None,
) -> Analytics:
    """Derive KPIs and chart series from already filtered records.

    Args:
        deals: Visible deals in the requested date range (complete set, not a page).
        callbacks: Visible callbacks in the requested date range.
        targets: Visible targets; the summary is omitted when None.
    """
    deals = deals or []
    callbacks = callbacks or []

    total_revenue = sum((deal.amount_paid for deal in deals), Decimal("0"))
    average = (
        (total_revenue / len(deals)).quantize(_CENT, rounding=ROUND_HALF_UP)
        if deals
        else Decimal("0")
    )
    completed = sum(1 for cb in callbacks if cb.status is CallbackStatus.COMPLETED)
    pending = sum(1 for cb in callbacks if cb.status is CallbackStatus.PENDING)

    return Analytics(
        total_deals=len(deals),
        total_revenue=total_revenue,
        average_deal_size=average,
        distinct_agents=len({deal.sales_agent_id for deal in deals}),
        total_callbacks=len(callbacks),
        pending_callbacks=pending,
        completed_callbacks=completed,
        conversion_rate=conversion_rate(completed, len(callbacks)),
        top_agents=_bucket(deals, lambda d: d.sales_agent_id, lambda d: d.sales_agent_name)[
            :TOP_AGENT_LIMIT
        ],
        sales_by_team=_bucket(deals, lambda d: d.sales_team, lambda d: d.sales_team),
        sales_by_service_tier=_bucket(deals, lambda d: d.service_tier, lambda d: d.service_tier),
        targets=summarize_targets(targets) if targets is not None else None,
    )
