"""Target endpoints: create a monthly target and apply deal amounts to it."""

from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.salesops.api.deps import MUTATION_ERRORS, get_services, to_http_error
from src.salesops.services import DashboardServices

router = APIRouter(prefix="/targets", tags=["targets"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class CreateTargetRequest(BaseModel):
    """Request body for a target. Progress counters are not accepted."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    agent_id: str = Field(min_length=1)
    agent_name: str | None = None
    manager_id: str | None = None
    monthly_target: Decimal = Field(default=Decimal("0"), ge=0)
    deals_target: int = Field(default=0, ge=0)
    period: str = Field(pattern=r"^\d{4}-(0[1-9]|1[0-2])$")


class TargetProgressRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    agent_id: str = Field(min_length=1)
    deal_amount: Decimal = Field(ge=0)
    period: str | None = None


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_target(
    body: CreateTargetRequest,
    services: DashboardServices = Depends(get_services),
):
    """Create a target; 409 when the agent already has one for the period."""
    payload = body.model_dump(mode="json", by_alias=True, exclude_none=True)
    try:
        target = await services.records.create_target(payload)
    except MUTATION_ERRORS as exc:
        raise to_http_error(exc) from exc
    return {"success": True, "data": target.to_wire()}


@router.patch("/progress")
async def apply_target_progress(
    body: TargetProgressRequest,
    services: DashboardServices = Depends(get_services),
):
    """Add one deal of ``dealAmount`` to the agent's target (current month by default)."""
    try:
        target = await services.records.apply_target_progress(
            body.agent_id, body.deal_amount, body.period
        )
    except MUTATION_ERRORS as exc:
        raise to_http_error(exc) from exc
    return {"success": True, "data": target.to_wire()}
