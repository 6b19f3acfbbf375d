"""Tests for record mutations: normalization, write, invalidation and wake-up.

Runs against a DashboardServices graph over the seeded MemoryRecordProvider.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from conftest import MANAGER, NOW, fixed_clock
from src.salesops.errors import (
    ConflictError,
    InvalidTransitionError,
    NormalizationError,
    NotFoundError,
    ReadOnlyProviderError,
    RecipientValidationError,
)
from src.salesops.providers.base import ProviderRegistry, ReadOnlyProvider
from src.salesops.records.schemas import CallbackStatus, EntityType, TargetStatus
from src.salesops.records.service import validate_callback_transition
from src.salesops.services import DashboardServices


# ── Test Doubles ─────────────────────────────────────────────────────────────


class RefusingProvider(ReadOnlyProvider):
    name = "down"

    async def fetch(self, entity_type: EntityType) -> list[dict[str, Any]]:
        raise ConnectionError("refused")


def deal_payload(**overrides) -> dict:
    payload = {
        "dealRef": "D-10",
        "customerName": "Zeta",
        "amountPaid": "3000",
        "salesAgentId": "u-s1",
        "salesTeam": "alpha",
        "signupDate": "2025-03-10",
    }
    payload.update(overrides)
    return payload


# ── Deals ────────────────────────────────────────────────────────────────────


class TestCreateDeal:
    @pytest.mark.asyncio
    async def test_deal_is_written_and_target_advanced(self, services, memory_provider):
        recorded = await services.records.create_deal(deal_payload())
        deal, target = recorded.deal, recorded.target

        assert deal.id == "D-10"
        assert deal.amount_paid == Decimal("3000")
        assert recorded.target_error is None
        assert target is not None
        assert target.id == "t1"
        assert target.current_sales == Decimal("3000")
        assert target.current_deals == 1
        assert target.status is TargetStatus.BEHIND

        stored = await memory_provider.fetch(EntityType.DEALS)
        assert stored[-1]["dealRef"] == "D-10"
        assert stored[-1]["createdAt"] == NOW.isoformat().replace("+00:00", "Z")

    @pytest.mark.asyncio
    async def test_cached_views_are_invalidated(self, services):
        before = await services.aggregator.fetch_unified(MANAGER, [EntityType.DEALS, EntityType.TARGETS])
        assert before.metadata.totals["deals"] == 4

        await services.records.create_deal(deal_payload())
        after = await services.aggregator.fetch_unified(MANAGER, [EntityType.DEALS, EntityType.TARGETS])

        assert after.metadata.totals["deals"] == 5
        t1 = next(t for t in after.data["targets"] if t["id"] == "t1")
        assert t1["currentSales"] == "3000"

    @pytest.mark.asyncio
    async def test_deal_outside_any_target_period(self, services):
        recorded = await services.records.create_deal(deal_payload(signupDate="2024-12-01"))
        assert recorded.deal.id == "D-10"
        assert recorded.target is None
        assert recorded.target_error is None

    @pytest.mark.asyncio
    async def test_target_failure_does_not_fail_the_stored_deal(
        self, settings, memory_provider
    ):
        routes = {entity_type: [memory_provider] for entity_type in EntityType}
        routes[EntityType.TARGETS] = [RefusingProvider()]
        graph = DashboardServices.build(
            settings, registry=ProviderRegistry(routes), clock=fixed_clock
        )
        try:
            recorded = await graph.records.create_deal(deal_payload(dealRef="D-77"))
        finally:
            await graph.close()

        assert recorded.deal.id == "D-77"
        assert recorded.target is None
        assert "refused" in recorded.target_error
        stored = await memory_provider.fetch(EntityType.DEALS)
        assert [d for d in stored if d.get("dealRef") == "D-77"]

    @pytest.mark.asyncio
    async def test_invalid_deal_is_rejected_before_writing(self, services, memory_provider):
        with pytest.raises(NormalizationError):
            await services.records.create_deal(deal_payload(amountPaid="-10"))
        assert len(await memory_provider.fetch(EntityType.DEALS)) == 5

    @pytest.mark.asyncio
    async def test_subscribers_and_other_workers_are_told(self, services):
        relay = AsyncMock()
        services.records.relay = relay

        with patch.object(
            services.broadcaster, "notify", wraps=services.broadcaster.notify
        ) as notify:
            await services.records.create_deal(deal_payload())

        notified = [call.args[0] for call in notify.call_args_list]
        assert [EntityType.DEALS] in notified
        assert [EntityType.TARGETS] in notified
        relay.publish.assert_any_await([EntityType.DEALS])

    @pytest.mark.asyncio
    async def test_read_only_route_rejects_writes(self, services, memory_provider):
        memory_provider.writable = False
        with pytest.raises(ReadOnlyProviderError):
            await services.records.create_deal(deal_payload())


# ── Callbacks ────────────────────────────────────────────────────────────────


class TestCallbacks:
    @pytest.mark.asyncio
    async def test_create_assigns_id_and_timestamp(self, services):
        callback = await services.records.create_callback(
            {"customerName": "Dee", "phone": "555-0100", "salesAgentId": "u-s1"}
        )
        assert callback.id
        assert callback.created_at == NOW
        assert callback.status is CallbackStatus.PENDING

    @pytest.mark.asyncio
    async def test_forward_transition_is_stored(self, services, memory_provider):
        updated = await services.records.update_callback_status("c1", CallbackStatus.CONTACTED)

        assert updated.status is CallbackStatus.CONTACTED
        stored = {row["id"]: row for row in await memory_provider.fetch(EntityType.CALLBACKS)}
        assert stored["c1"]["status"] == "contacted"

    @pytest.mark.asyncio
    async def test_backward_transition_is_rejected(self, services):
        with pytest.raises(InvalidTransitionError):
            await services.records.update_callback_status("c2", CallbackStatus.CONTACTED)

    @pytest.mark.asyncio
    async def test_cancelled_is_terminal(self, services):
        with pytest.raises(InvalidTransitionError):
            await services.records.update_callback_status("c3", CallbackStatus.PENDING)

    @pytest.mark.asyncio
    async def test_same_status_is_a_no_op(self, services):
        with patch.object(services.broadcaster, "notify") as notify:
            current = await services.records.update_callback_status("c1", CallbackStatus.PENDING)
        assert current.status is CallbackStatus.PENDING
        notify.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_callback(self, services):
        with pytest.raises(NotFoundError):
            await services.records.update_callback_status("nope", CallbackStatus.COMPLETED)

    @pytest.mark.parametrize(
        "from_status, to_status",
        [
            (CallbackStatus.PENDING, CallbackStatus.COMPLETED),
            (CallbackStatus.CONTACTED, CallbackStatus.CANCELLED),
            (CallbackStatus.COMPLETED, CallbackStatus.CANCELLED),
        ],
    )
    def test_valid_transitions(self, from_status, to_status):
        validate_callback_transition(from_status, to_status)

    @pytest.mark.parametrize(
        "from_status, to_status",
        [
            (CallbackStatus.CONTACTED, CallbackStatus.PENDING),
            (CallbackStatus.COMPLETED, CallbackStatus.CONTACTED),
            (CallbackStatus.CANCELLED, CallbackStatus.COMPLETED),
            (CallbackStatus.CANCELLED, CallbackStatus.CANCELLED),
        ],
    )
    def test_invalid_transitions(self, from_status, to_status):
        with pytest.raises(InvalidTransitionError):
            validate_callback_transition(from_status, to_status)


# ── Targets ──────────────────────────────────────────────────────────────────


class TestTargets:
    @pytest.mark.asyncio
    async def test_create_starts_from_zero(self, services):
        target = await services.records.create_target(
            {
                "agentId": "u-s1",
                "monthlyTarget": 5000,
                "dealsTarget": 5,
                "period": "2025-04",
                "currentSales": 4000,
                "currentDeals": 3,
            }
        )
        assert target.current_sales == Decimal("0")
        assert target.current_deals == 0
        assert target.status is TargetStatus.BEHIND

    @pytest.mark.asyncio
    async def test_duplicate_agent_period_conflicts(self, services):
        with pytest.raises(ConflictError):
            await services.records.create_target(
                {"agentId": "u-s1", "monthlyTarget": 1, "period": "2025-03"}
            )

    @pytest.mark.asyncio
    async def test_apply_progress(self, services):
        target = await services.records.apply_target_progress("u-s2", Decimal("200"))
        assert target.current_sales == Decimal("1000")
        assert target.status is TargetStatus.EXCEEDED

    @pytest.mark.asyncio
    async def test_apply_progress_without_target(self, services):
        with pytest.raises(NotFoundError, match="no target found"):
            await services.records.apply_target_progress("u-s1", 10, period="2023-01")


# ── Notifications ────────────────────────────────────────────────────────────


class TestNotifications:
    @pytest.mark.asyncio
    async def test_create_for_known_users(self, services):
        notification = await services.records.create_notification(
            {"title": "Heads up", "recipients": ["ALL", "u-s2"], "type": "alert"}
        )
        assert notification.recipients == ["ALL", "u-s2"]
        assert notification.timestamp == NOW
        assert notification.notification_type == "alert"
        assert notification.read is False

    @pytest.mark.asyncio
    async def test_unknown_recipient_is_rejected(self, services, memory_provider):
        with pytest.raises(RecipientValidationError) as exc_info:
            await services.records.create_notification(
                {"title": "Hi", "recipients": ["u-s1", "ghost"]}
            )
        assert exc_info.value.unknown == ["ghost"]
        assert len(await memory_provider.fetch(EntityType.NOTIFICATIONS)) == 3

    @pytest.mark.asyncio
    async def test_recipients_are_required(self, services):
        with pytest.raises(NormalizationError):
            await services.records.create_notification({"title": "Hi", "recipients": []})

    @pytest.mark.asyncio
    async def test_mark_read(self, services, memory_provider):
        notification = await services.records.mark_notification_read("n1")
        assert notification.read is True
        stored = {row["id"]: row for row in await memory_provider.fetch(EntityType.NOTIFICATIONS)}
        assert stored["n1"]["read"] is True

    @pytest.mark.asyncio
    async def test_mark_read_unknown(self, services):
        with pytest.raises(NotFoundError):
            await services.records.mark_notification_read("missing")
