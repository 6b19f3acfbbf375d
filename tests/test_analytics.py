"""Tests for derived dashboard analytics (pure functions)."""

from __future__ import annotations

from decimal import Decimal

from src.salesops.aggregation.analytics import (
    TOP_AGENT_LIMIT,
    compute_analytics,
    conversion_rate,
    summarize_targets,
)
from src.salesops.records.schemas import Callback, CallbackStatus, Deal, Target, TargetStatus


def deal(ref: str, amount: str, agent: str, name: str = "", team: str = "", tier: str = "") -> Deal:
    return Deal(
        id=ref,
        deal_ref=ref,
        customer_name=f"Customer {ref}",
        amount_paid=Decimal(amount),
        sales_agent_id=agent,
        sales_agent_name=name,
        sales_team=team,
        service_tier=tier,
    )


def callback(cb_id: str, status: CallbackStatus) -> Callback:
    return Callback(id=cb_id, customer_name="C", phone="555", status=status)


class TestConversionRate:
    def test_rounded_to_two_places(self):
        assert conversion_rate(2, 3) == 66.67

    def test_no_callbacks(self):
        assert conversion_rate(0, 0) == 0.0


class TestComputeAnalytics:
    def test_empty_input(self):
        analytics = compute_analytics()
        assert analytics.total_deals == 0
        assert analytics.average_deal_size == Decimal("0")
        assert analytics.top_agents == []
        assert analytics.targets is None

    def test_ties_are_ordered_by_label(self):
        analytics = compute_analytics(
            deals=[
                deal("1", "100", "u2", name="Zed"),
                deal("2", "100", "u1", name="Amy"),
                deal("3", "300", "u3", name="Max"),
            ]
        )
        assert [bucket.label for bucket in analytics.top_agents] == ["Max", "Amy", "Zed"]

    def test_top_agents_are_limited(self):
        deals = [deal(str(i), str(100 + i), f"u{i}") for i in range(TOP_AGENT_LIMIT + 3)]
        analytics = compute_analytics(deals=deals)
        assert len(analytics.top_agents) == TOP_AGENT_LIMIT
        assert analytics.top_agents[0].key == f"u{TOP_AGENT_LIMIT + 2}"
        assert analytics.distinct_agents == TOP_AGENT_LIMIT + 3

    def test_unassigned_buckets(self):
        analytics = compute_analytics(deals=[deal("1", "50", "u1"), deal("2", "25", "u1", team="a")])
        teams = {bucket.key: bucket for bucket in analytics.sales_by_team}
        assert teams["unassigned"].sales == Decimal("50")
        assert teams["a"].deals == 1

    def test_callback_counts(self):
        analytics = compute_analytics(
            callbacks=[
                callback("1", CallbackStatus.PENDING),
                callback("2", CallbackStatus.COMPLETED),
                callback("3", CallbackStatus.COMPLETED),
                callback("4", CallbackStatus.CONTACTED),
            ]
        )
        assert analytics.pending_callbacks == 1
        assert analytics.completed_callbacks == 2
        assert analytics.conversion_rate == 50.0

    def test_money_stays_exact(self):
        analytics = compute_analytics(deals=[deal("1", "0.10", "u1"), deal("2", "0.20", "u1")])
        wire = analytics.to_wire()
        assert wire["totalRevenue"] == "0.30"
        assert wire["averageDealSize"] == "0.15"


class TestTargetSummary:
    def test_counts_per_status(self):
        targets = [
            Target(id="a", agent_id="u1", period="2025-03", status=TargetStatus.EXCEEDED),
            Target(id="b", agent_id="u2", period="2025-03", status=TargetStatus.ON_TRACK),
            Target(id="c", agent_id="u3", period="2025-03"),
        ]
        summary = summarize_targets(targets)
        assert (summary.total, summary.exceeded, summary.on_track, summary.behind) == (3, 1, 1, 1)
