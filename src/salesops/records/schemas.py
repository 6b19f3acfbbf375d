"""Canonical record shapes and requester identity.

Defines:
- Enums: EntityType, Role, DealStatus, CallbackStatus, TargetStatus
- Requester: the (role, user id, team) triple every read is scoped by
- Canonical records: Deal, Callback, Target, Notification, User

Canonical records use snake_case attributes and serialize with camelCase aliases
(``amountPaid``, ``salesAgentId``) which is the shape dashboard clients consume.
Money is carried as Decimal end to end so amounts survive re-serialization exactly.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Union
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.salesops.errors import UnknownEntityTypeError

# Sentinel recipient addressing every user.
ALL_RECIPIENTS = "ALL"


# ── Enums ───────────────────────────────────────────────────────────────────


class EntityType(str, Enum):
    """Record families served by the aggregation layer."""

    DEALS = "deals"
    CALLBACKS = "callbacks"
    TARGETS = "targets"
    NOTIFICATIONS = "notifications"
    USERS = "users"

    @classmethod
    def parse_list(cls, raw: str | list[str]) -> list[EntityType]:
        """Parse ``deals,callbacks`` (or a list) into unique entity types, order kept.

        Raises:
            UnknownEntityTypeError: If a name is not a supported entity type.
        """
        names = raw.split(",") if isinstance(raw, str) else raw
        result: list[EntityType] = []
        for name in names:
            name = name.strip().lower()
            if not name:
                continue
            try:
                entity_type = cls(name)
            except ValueError:
                raise UnknownEntityTypeError(f"Unknown data type: {name}") from None
            if entity_type not in result:
                result.append(entity_type)
        return result


class Role(str, Enum):
    """Closed set of requester roles. Anything else is treated as no role."""

    MANAGER = "manager"
    TEAM_LEADER = "team-leader"
    SALESMAN = "salesman"
    CUSTOMER_SERVICE = "customer-service"


# Legacy spellings seen in stored user records.
_ROLE_ALIASES: dict[str, Role] = {
    "team_leader": Role.TEAM_LEADER,
    "customer_service": Role.CUSTOMER_SERVICE,
}


def parse_role(raw: str | None) -> Role | None:
    """Map a raw role string onto Role, or None when it is not recognized."""
    if not raw:
        return None
    value = raw.strip().lower()
    try:
        return Role(value)
    except ValueError:
        return _ROLE_ALIASES.get(value)


class DealStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class CallbackStatus(str, Enum):
    PENDING = "pending"
    CONTACTED = "contacted"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TargetStatus(str, Enum):
    BEHIND = "behind"
    ON_TRACK = "on-track"
    EXCEEDED = "exceeded"


# ── Requester ───────────────────────────────────────────────────────────────


class Requester(BaseModel):
    """Identity a record set is scoped to.

    ``role`` is None when the caller supplied a role string outside the closed
    set; the Role Filter then returns nothing.
    """

    model_config = ConfigDict(frozen=True)

    role: Role | None = None
    user_id: str = ""
    team: str = ""

    @classmethod
    def from_raw(cls, role: str | None, user_id: str | None, team: str | None) -> Requester:
        return cls(role=parse_role(role), user_id=user_id or "", team=team or "")

    @property
    def scope_key(self) -> str:
        """Stable cache-key fragment for this requester.

        Ids are percent-encoded so a ``:`` inside one can never shift a
        segment boundary and collide with another requester.
        """
        role = self.role.value if self.role else "none"
        return ":".join(quote(part, safe="") for part in (role, self.user_id, self.team))


# ── Canonical Records ───────────────────────────────────────────────────────


class CanonicalModel(BaseModel):
    """Base for canonical records: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        """JSON-safe dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


class Deal(CanonicalModel):
    id: str
    deal_ref: str
    customer_name: str
    amount_paid: Decimal = Field(default=Decimal("0"), ge=0)
    sales_agent_id: str = Field(min_length=1)
    sales_agent_name: str = ""
    closing_agent_id: str = ""
    sales_team: str = ""
    service_tier: str = ""
    status: DealStatus = DealStatus.PENDING
    signup_date: date | None = None
    created_at: datetime | None = None


class Callback(CanonicalModel):
    id: str
    customer_name: str
    phone: str
    email: str = ""
    sales_agent_id: str = ""
    sales_agent_name: str = ""
    sales_team: str = ""
    first_call_date: date | None = None
    first_call_time: str = ""
    reason: str = ""
    notes: str = ""
    status: CallbackStatus = CallbackStatus.PENDING
    created_by_id: str = ""
    created_at: datetime | None = None


class Target(CanonicalModel):
    id: str
    agent_id: str
    agent_name: str = ""
    manager_id: str = ""
    monthly_target: Decimal = Field(default=Decimal("0"), ge=0)
    deals_target: int = Field(default=0, ge=0)
    period: str  # YYYY-MM
    current_sales: Decimal = Field(default=Decimal("0"), ge=0)
    current_deals: int = Field(default=0, ge=0)
    sales_progress: float = 0.0
    deals_progress: float = 0.0
    status: TargetStatus = TargetStatus.BEHIND
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Notification(CanonicalModel):
    id: str
    title: str = ""
    message: str = ""
    recipients: list[str] = Field(default_factory=list)
    notification_type: str = Field(default="info", alias="type")
    priority: str = "medium"
    read: bool = False
    timestamp: datetime | None = None


class User(CanonicalModel):
    id: str
    name: str = ""
    role: str = ""
    team_id: str = ""


CanonicalRecord = Union[Deal, Callback, Target, Notification, User]

RECORD_MODELS: dict[EntityType, type[CanonicalModel]] = {
    EntityType.DEALS: Deal,
    EntityType.CALLBACKS: Callback,
    EntityType.TARGETS: Target,
    EntityType.NOTIFICATIONS: Notification,
    EntityType.USERS: User,
}
