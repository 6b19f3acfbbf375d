"""Deal endpoints: create a deal (feeding target progress) and stream the deal list."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.salesops.api.deps import MUTATION_ERRORS, get_requester, get_services, to_http_error
from src.salesops.api.v1.unified import SSE_HEADERS
from src.salesops.realtime.broadcaster import ARRAY, stream_subscription
from src.salesops.records.schemas import EntityType, Requester
from src.salesops.services import DashboardServices

router = APIRouter(prefix="/deals", tags=["deals"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class CreateDealRequest(BaseModel):
    """Request body for recording a deal."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str | None = None
    deal_ref: str = Field(min_length=1)
    customer_name: str = Field(min_length=1)
    amount_paid: Decimal = Field(default=Decimal("0"), ge=0)
    sales_agent_id: str = Field(min_length=1)
    sales_agent_name: str | None = None
    closing_agent_id: str | None = None
    sales_team: str | None = None
    service_tier: str | None = None
    status: str | None = None
    signup_date: date | None = None


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_deal(
    body: CreateDealRequest,
    services: DashboardServices = Depends(get_services),
):
    """Record a deal and apply it to the agent's target for the deal's month.

    ``target`` is null when the agent has no target for that period, and also
    when updating the target failed; ``targetError`` then says why. The deal
    itself is stored either way.
    """
    payload = body.model_dump(mode="json", by_alias=True, exclude_none=True)
    try:
        recorded = await services.records.create_deal(payload)
    except MUTATION_ERRORS as exc:
        raise to_http_error(exc) from exc
    return {
        "success": True,
        "data": recorded.deal.to_wire(),
        "target": recorded.target.to_wire() if recorded.target is not None else None,
        "targetError": recorded.target_error,
    }


@router.get("/stream")
async def stream_deals(
    request: Request,
    requester: Requester = Depends(get_requester),
    services: DashboardServices = Depends(get_services),
):
    """Server-Sent Events: the requester's deal list on every recompute."""
    return StreamingResponse(
        stream_subscription(
            services.broadcaster,
            request.is_disconnected,
            requester,
            [EntityType.DEALS],
            shape=ARRAY,
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
