"""Record Normalizer -- maps raw backend records onto canonical shapes.

Every backend spells the same field differently (``amountPaid`` vs ``amount`` vs
``AMOUNT``). FIELD_SOURCES holds one priority list per canonical field; the first
non-empty raw value wins. Unparsable numeric fields become 0.
A record missing its identity fields is dropped and counted, never fatal to the
batch. Normalization is pure: no I/O, no clock, no shared state.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError

from src.salesops.errors import NormalizationError
from src.salesops.records.field_mapping import FIELD_SOURCES
from src.salesops.records.schemas import (
    ALL_RECIPIENTS,
    RECORD_MODELS,
    CallbackStatus,
    CanonicalModel,
    DealStatus,
    EntityType,
    Target,
)
from src.salesops.targets.progress import normalize_period, recompute

logger = structlog.get_logger(__name__)

# Status spellings seen across backends that differ from the canonical enum.
_DEAL_STATUS_ALIASES: dict[str, DealStatus] = {
    "completed": DealStatus.CLOSED,
    "won": DealStatus.CLOSED,
    "closed_won": DealStatus.CLOSED,
    "canceled": DealStatus.CANCELLED,
    "refunded": DealStatus.CANCELLED,
    "in_progress": DealStatus.ACTIVE,
    "open": DealStatus.ACTIVE,
}

_CALLBACK_STATUS_ALIASES: dict[str, CallbackStatus] = {
    "canceled": CallbackStatus.CANCELLED,
    "done": CallbackStatus.COMPLETED,
    "called": CallbackStatus.CONTACTED,
    "in_progress": CallbackStatus.CONTACTED,
}

_TRUE_STRINGS = {"true", "1", "yes", "y", "t"}


class NormalizationResult(BaseModel):
    """Canonical records produced from one raw batch plus the drop count."""

    entity_type: EntityType
    records: list[Any] = Field(default_factory=list)
    dropped: int = 0
    drop_reasons: list[str] = Field(default_factory=list)


# ── Value coercion ──────────────────────────────────────────────────────────


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, (list, tuple, dict)) and not value:
        return True
    return False


def pick(raw: dict[str, Any], sources: tuple[str, ...]) -> Any:
    """First non-empty value among ``sources`` in ``raw``, else None."""
    for name in sources:
        value = raw.get(name)
        if not _is_empty(value):
            return value
    return None


def to_decimal(value: Any) -> Decimal:
    """Parse money: ``"$1,200.50"`` -> 1200.50, garbage -> 0."""
    if value is None or isinstance(value, bool):
        return Decimal("0")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(repr(value))
    else:
        text = "".join(ch for ch in str(value) if ch.isdigit() or ch in ".-")
        try:
            result = Decimal(text)
        except InvalidOperation:
            return Decimal("0")
    return result if result.is_finite() else Decimal("0")


def to_int(value: Any) -> int:
    """Parse a count; unparsable -> 0."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    try:
        return int(to_decimal(value))
    except (ValueError, OverflowError):
        return 0


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return False


def _from_epoch(seconds: float) -> datetime | None:
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def to_datetime(value: Any) -> datetime | None:
    """Read ISO strings, epoch seconds/milliseconds, ``{seconds: ...}`` maps and dates.

    Naive values are taken as UTC. Unreadable values give None.
    """
    if _is_empty(value):
        return None
    parsed: datetime | None = None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = _from_epoch(value / 1000 if value > 1e11 else value)
    elif isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        if isinstance(seconds, (int, float)):
            parsed = _from_epoch(seconds)
    elif isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return to_datetime(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed is None:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def to_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = to_datetime(value)
    return parsed.date() if parsed else None


def to_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def to_recipients(value: Any) -> list[str]:
    """Recipients arrive as a list, a JSON array string, or comma-separated text."""
    if _is_empty(value):
        return []
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            try:
                value = json.loads(text)
            except ValueError:
                value = text.strip("[]").split(",")
        else:
            value = text.split(",")
    if not isinstance(value, (list, tuple, set)):
        value = [value]
    recipients: list[str] = []
    for item in value:
        name = to_text(item).strip('"')
        if not name:
            continue
        if name.upper() == ALL_RECIPIENTS:
            name = ALL_RECIPIENTS
        if name not in recipients:
            recipients.append(name)
    return recipients


def _derived_id(entity_type: EntityType, *parts: Any) -> str:
    """Deterministic id for records whose backend carries none."""
    digest = hashlib.sha1("|".join(to_text(p) for p in parts).encode("utf-8")).hexdigest()
    return f"{entity_type.value[:-1]}-{digest[:16]}"


def _status(value: Any, enum_cls: type, aliases: dict[str, Any]) -> Any:
    text = to_text(value).lower().replace(" ", "_").replace("-", "_")
    if not text:
        return None
    try:
        return enum_cls(text)
    except ValueError:
        return aliases.get(text)


# ── Normalizer ──────────────────────────────────────────────────────────────


class RecordNormalizer:
    """Maps raw provider records onto canonical records.

    Args:
        field_sources: Optional priority tables overriding FIELD_SOURCES.
    """

    def __init__(
        self,
        field_sources: dict[EntityType, dict[str, tuple[str, ...]]] | None = None,
    ) -> None:
        self._sources = field_sources or FIELD_SOURCES

    def normalize(self, entity_type: EntityType, raw: dict[str, Any]) -> CanonicalModel:
        """Normalize one raw record.

        Raises:
            NormalizationError: If identity fields are missing or a value
                violates a canonical invariant (e.g. a negative amount).
        """
        if not isinstance(raw, dict):
            raise NormalizationError(entity_type.value, "record is not a mapping")

        sources = self._sources[entity_type]
        picked = {field: pick(raw, names) for field, names in sources.items()}
        builder = getattr(self, f"_build_{entity_type.value}")

        try:
            return RECORD_MODELS[entity_type].model_validate(builder(picked))
        except ValidationError as exc:
            fields = ",".join(str(err["loc"][0]) for err in exc.errors() if err["loc"])
            raise NormalizationError(entity_type.value, f"invalid fields: {fields}") from None

    def normalize_many(
        self, entity_type: EntityType, raws: Iterable[dict[str, Any]]
    ) -> NormalizationResult:
        """Normalize a batch; failing records are dropped and counted."""
        result = NormalizationResult(entity_type=entity_type)
        for raw in raws:
            try:
                result.records.append(self.normalize(entity_type, raw))
            except NormalizationError as exc:
                result.dropped += 1
                result.drop_reasons.append(exc.reason)

        if result.dropped:
            logger.info(
                "normalizer.records_dropped",
                entity_type=entity_type.value,
                dropped=result.dropped,
                kept=len(result.records),
            )
        return result

    # ── Per-entity builders ─────────────────────────────────────────────

    @staticmethod
    def _build_deals(p: dict[str, Any]) -> dict[str, Any]:
        customer = to_text(p["customer_name"])
        deal_ref = to_text(p["deal_ref"])
        if not customer or not deal_ref:
            raise NormalizationError("deals", "missing customerName or dealRef")
        agent = to_text(p["sales_agent_id"])
        if not agent:
            raise NormalizationError("deals", "missing salesAgentId")
        if p["amount_paid"] is not None and to_decimal(p["amount_paid"]) < 0:
            raise NormalizationError("deals", "negative amountPaid")

        return {
            "id": to_text(p["id"]) or deal_ref,
            "deal_ref": deal_ref,
            "customer_name": customer,
            "amount_paid": to_decimal(p["amount_paid"]),
            "sales_agent_id": agent,
            "sales_agent_name": to_text(p["sales_agent_name"]),
            "closing_agent_id": to_text(p["closing_agent_id"]),
            "sales_team": to_text(p["sales_team"]),
            "service_tier": to_text(p["service_tier"]),
            "status": _status(p["status"], DealStatus, _DEAL_STATUS_ALIASES) or DealStatus.PENDING,
            "signup_date": to_date(p["signup_date"]),
            "created_at": to_datetime(p["created_at"]),
        }

    @staticmethod
    def _build_callbacks(p: dict[str, Any]) -> dict[str, Any]:
        customer = to_text(p["customer_name"])
        phone = to_text(p["phone"])
        if not customer or not phone:
            raise NormalizationError("callbacks", "missing customerName or phone")
        created_at = to_datetime(p["created_at"])

        return {
            "id": to_text(p["id"]) or _derived_id(EntityType.CALLBACKS, customer, phone, created_at),
            "customer_name": customer,
            "phone": phone,
            "email": to_text(p["email"]),
            "sales_agent_id": to_text(p["sales_agent_id"]),
            "sales_agent_name": to_text(p["sales_agent_name"]),
            "sales_team": to_text(p["sales_team"]),
            "first_call_date": to_date(p["first_call_date"]),
            "first_call_time": to_text(p["first_call_time"]),
            "reason": to_text(p["reason"]),
            "notes": to_text(p["notes"]),
            "status": (
                _status(p["status"], CallbackStatus, _CALLBACK_STATUS_ALIASES)
                or CallbackStatus.PENDING
            ),
            "created_by_id": to_text(p["created_by_id"]),
            "created_at": created_at,
        }

    @staticmethod
    def _build_targets(p: dict[str, Any]) -> dict[str, Any]:
        agent = to_text(p["agent_id"])
        period = normalize_period(p["period"])
        if not agent or not period:
            raise NormalizationError("targets", "missing agentId or period")

        target = Target.model_validate({
            "id": to_text(p["id"]) or _derived_id(EntityType.TARGETS, agent, period),
            "agent_id": agent,
            "agent_name": to_text(p["agent_name"]),
            "manager_id": to_text(p["manager_id"]),
            "monthly_target": to_decimal(p["monthly_target"]),
            "deals_target": to_int(p["deals_target"]),
            "period": period,
            "current_sales": to_decimal(p["current_sales"]),
            "current_deals": to_int(p["current_deals"]),
            "created_at": to_datetime(p["created_at"]),
            "updated_at": to_datetime(p["updated_at"]),
        })
        # Status is always derived from the counters, never trusted from storage.
        return recompute(target).model_dump()

    @staticmethod
    def _build_notifications(p: dict[str, Any]) -> dict[str, Any]:
        timestamp = to_datetime(p["timestamp"])
        title = to_text(p["title"])
        message = to_text(p["message"])
        record_id = to_text(p["id"])
        if not record_id:
            if not title and not message:
                raise NormalizationError("notifications", "missing id and content")
            record_id = _derived_id(EntityType.NOTIFICATIONS, title, message, timestamp)

        return {
            "id": record_id,
            "title": title,
            "message": message,
            "recipients": to_recipients(p["recipients"]),
            "notification_type": to_text(p["notification_type"]) or "info",
            "priority": to_text(p["priority"]).lower() or "medium",
            "read": to_bool(p["read"]),
            "timestamp": timestamp,
        }

    @staticmethod
    def _build_users(p: dict[str, Any]) -> dict[str, Any]:
        user_id = to_text(p["id"])
        if not user_id:
            raise NormalizationError("users", "missing id")
        return {
            "id": user_id,
            "name": to_text(p["name"]),
            "role": to_text(p["role"]).lower(),
            "team_id": to_text(p["team_id"]),
        }


def denormalize(record: CanonicalModel) -> dict[str, Any]:
    """Serialize a canonical record to its camelCase wire dict."""
    return record.to_wire()
