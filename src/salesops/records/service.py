"""Record mutations -- write, invalidate, wake.

Every mutation follows the same order:

1. normalize and validate the payload (canonical invariants, transitions,
   recipients),
2. write to the entity type's write provider and wait for it,
3. invalidate every cached view of the touched entity types,
4. wake Change Broadcaster subscriptions (and other workers via the relay).

Write failures surface to the caller; there is no partial success for a
single write.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import structlog

from src.salesops.aggregation.aggregator import Aggregator
from src.salesops.errors import (
    ConflictError,
    InvalidTransitionError,
    NormalizationError,
    NotFoundError,
    RecipientValidationError,
)
from src.salesops.providers.base import ProviderRegistry
from src.salesops.realtime.broadcaster import ChangeBroadcaster
from src.salesops.realtime.relay import CacheInvalidationRelay
from src.salesops.records.normalizer import RecordNormalizer
from src.salesops.records.schemas import (
    ALL_RECIPIENTS,
    Callback,
    CallbackStatus,
    Deal,
    EntityType,
    Notification,
    Target,
)
from src.salesops.targets.engine import TargetProgressEngine
from src.salesops.targets.progress import period_of

logger = structlog.get_logger(__name__)

# Forward-only callback workflow; cancelled is reachable from every open state.
VALID_CALLBACK_TRANSITIONS: dict[CallbackStatus, set[CallbackStatus]] = {
    CallbackStatus.PENDING: {
        CallbackStatus.CONTACTED,
        CallbackStatus.COMPLETED,
        CallbackStatus.CANCELLED,
    },
    CallbackStatus.CONTACTED: {CallbackStatus.COMPLETED, CallbackStatus.CANCELLED},
    CallbackStatus.COMPLETED: {CallbackStatus.CANCELLED},
    CallbackStatus.CANCELLED: set(),  # Terminal
}


@dataclass
class DealRecorded:
    """Outcome of recording a deal.

    ``target`` is None when the agent has no target for the deal's period, or
    when applying the deal to it failed; ``target_error`` tells the two apart.
    """

    deal: Deal
    target: Target | None = None
    target_error: str | None = None


def validate_callback_transition(from_status: CallbackStatus, to_status: CallbackStatus) -> None:
    """Raise InvalidTransitionError unless ``from_status -> to_status`` is allowed.

    Staying in the same open status is a no-op and always valid.
    """
    if from_status == to_status and from_status is not CallbackStatus.CANCELLED:
        return
    if to_status not in VALID_CALLBACK_TRANSITIONS.get(from_status, set()):
        raise InvalidTransitionError(from_status.value, to_status.value)


class RecordService:
    """Mutation entry point shared by the HTTP routes.

    Args:
        aggregator: Reads current records (users, callbacks, targets).
        registry: Resolves write providers.
        broadcaster: Woken after every successful write.
        target_engine: Applies deal events to targets.
        normalizer: Validates payloads into canonical records.
        relay: Optional cross-process invalidation relay.
        clock: Wall-clock source for ``createdAt``/``timestamp`` defaults.
    """

    def __init__(
        self,
        aggregator: Aggregator,
        registry: ProviderRegistry,
        broadcaster: ChangeBroadcaster,
        target_engine: TargetProgressEngine,
        normalizer: RecordNormalizer | None = None,
        relay: CacheInvalidationRelay | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._aggregator = aggregator
        self._registry = registry
        self._broadcaster = broadcaster
        self._targets = target_engine
        self._normalizer = normalizer or RecordNormalizer()
        self.relay = relay
        self._clock = clock

    # ── Creation ────────────────────────────────────────────────────────

    async def create_deal(self, payload: dict[str, Any]) -> DealRecorded:
        """Record a deal and feed it to the Target Progress Engine.

        Once the deal is stored the call succeeds. A failure while applying it
        to the agent's target is logged and reported in ``target_error``.

        Raises:
            NormalizationError: If the payload is not a valid deal.
            ReadOnlyProviderError: If no writable provider serves deals.
        """
        deal: Deal = await self._create(EntityType.DEALS, payload)
        await self._after_write([EntityType.DEALS])

        moment = deal.signup_date or deal.created_at or self._clock()
        try:
            target = await self._targets.record_deal(
                deal.sales_agent_id, deal.amount_paid, period_of(moment)
            )
        except Exception as exc:
            logger.warning(
                "targets.progress_failed",
                deal_id=deal.id,
                agent_id=deal.sales_agent_id,
                error=str(exc),
            )
            return DealRecorded(deal=deal, target_error=str(exc) or type(exc).__name__)

        if target is not None:
            await self._after_write([EntityType.TARGETS])
        return DealRecorded(deal=deal, target=target)

    async def create_callback(self, payload: dict[str, Any]) -> Callback:
        callback = await self._create(EntityType.CALLBACKS, payload)
        await self._after_write([EntityType.CALLBACKS])
        return callback

    async def create_target(self, payload: dict[str, Any]) -> Target:
        """Create a target. Progress counters always start at zero.

        Raises:
            ConflictError: If the agent already has a target for the period.
        """
        payload = {
            key: value
            for key, value in payload.items()
            if key not in ("currentSales", "currentDeals", "current_sales", "current_deals")
        }
        candidate = self._prepare(EntityType.TARGETS, payload)
        if await self._targets.find(candidate.agent_id, candidate.period) is not None:
            raise ConflictError(
                f"Target already exists for agent {candidate.agent_id} in {candidate.period}"
            )
        target = await self._write(EntityType.TARGETS, candidate)
        await self._after_write([EntityType.TARGETS])
        return target

    async def create_notification(self, payload: dict[str, Any]) -> Notification:
        """Create a notification addressed to existing users or to everyone.

        Raises:
            RecipientValidationError: If a recipient is not an existing user id.
        """
        payload = {**payload}
        payload.setdefault("timestamp", self._clock().isoformat())
        notification: Notification = self._prepare(EntityType.NOTIFICATIONS, payload)
        await self.validate_recipients(notification.recipients)
        notification = await self._write(EntityType.NOTIFICATIONS, notification)
        await self._after_write([EntityType.NOTIFICATIONS])
        return notification

    async def validate_recipients(self, recipients: list[str]) -> None:
        if not recipients:
            raise NormalizationError(EntityType.NOTIFICATIONS.value, "recipients required")
        addressed = [r for r in recipients if r != ALL_RECIPIENTS]
        if not addressed:
            return
        users = await self._aggregator.load_records(EntityType.USERS)
        known = {user.id for user in users}
        unknown = [r for r in addressed if r not in known]
        if unknown:
            raise RecipientValidationError(unknown)

    # ── Updates ─────────────────────────────────────────────────────────

    async def update_callback_status(self, callback_id: str, status: CallbackStatus) -> Callback:
        """Move a callback along its workflow.

        Raises:
            NotFoundError: If no callback has ``callback_id``.
            InvalidTransitionError: If the move goes backwards or leaves ``cancelled``.
        """
        callbacks = await self._aggregator.load_records(EntityType.CALLBACKS, fresh=True)
        current = next((cb for cb in callbacks if cb.id == callback_id), None)
        if current is None:
            raise NotFoundError(f"Callback not found: {callback_id}")

        validate_callback_transition(current.status, status)
        if current.status == status:
            return current

        provider = self._registry.write_target(EntityType.CALLBACKS)
        stored = await provider.update(EntityType.CALLBACKS, callback_id, {"status": status.value})
        if stored is None:
            raise NotFoundError(f"Callback not found in {provider.name}: {callback_id}")

        logger.info(
            "records.callback_status_changed",
            callback_id=callback_id,
            from_status=current.status.value,
            to_status=status.value,
        )
        await self._after_write([EntityType.CALLBACKS])
        return current.model_copy(update={"status": status})

    async def apply_target_progress(
        self,
        agent_id: str,
        deal_amount: Decimal | int | str,
        period: str | None = None,
    ) -> Target:
        """Apply a deal amount to the agent's target directly.

        Raises:
            NotFoundError: If the agent has no target for the period.
        """
        target = await self._targets.record_deal(agent_id, deal_amount, period)
        if target is None:
            raise NotFoundError("no target found")
        await self._after_write([EntityType.TARGETS])
        return target

    async def mark_notification_read(self, notification_id: str) -> Notification:
        notifications = await self._aggregator.load_records(EntityType.NOTIFICATIONS, fresh=True)
        current = next((n for n in notifications if n.id == notification_id), None)
        if current is None:
            raise NotFoundError(f"Notification not found: {notification_id}")
        if current.read:
            return current

        provider = self._registry.write_target(EntityType.NOTIFICATIONS)
        stored = await provider.update(EntityType.NOTIFICATIONS, notification_id, {"read": True})
        if stored is None:
            raise NotFoundError(f"Notification not found in {provider.name}: {notification_id}")
        await self._after_write([EntityType.NOTIFICATIONS])
        return current.model_copy(update={"read": True})

    # ── Internals ───────────────────────────────────────────────────────

    def _prepare(self, entity_type: EntityType, payload: dict[str, Any]) -> Any:
        """Fill id/createdAt defaults and normalize into a canonical record."""
        raw = {**payload}
        if not raw.get("id") and entity_type is not EntityType.DEALS:
            raw["id"] = str(uuid.uuid4())
        if entity_type is not EntityType.NOTIFICATIONS:
            raw.setdefault("createdAt", self._clock().isoformat())
        return self._normalizer.normalize(entity_type, raw)

    async def _write(self, entity_type: EntityType, record: Any) -> Any:
        provider = self._registry.write_target(entity_type)
        await provider.create(entity_type, record.to_wire())
        logger.info(
            "records.created",
            entity_type=entity_type.value,
            record_id=record.id,
            provider=provider.name,
        )
        return record

    async def _create(self, entity_type: EntityType, payload: dict[str, Any]) -> Any:
        return await self._write(entity_type, self._prepare(entity_type, payload))

    async def _after_write(self, entity_types: Iterable[EntityType]) -> None:
        entity_types = list(entity_types)
        for entity_type in entity_types:
            self._aggregator.cache.invalidate(f"{entity_type.value}:")
        self._broadcaster.notify(entity_types)
        if self.relay is not None:
            await self.relay.publish(entity_types)
