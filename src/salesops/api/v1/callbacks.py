"""Callback endpoints: schedule a callback and move it through its workflow."""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.salesops.api.deps import MUTATION_ERRORS, get_services, to_http_error
from src.salesops.records.schemas import CallbackStatus
from src.salesops.services import DashboardServices

router = APIRouter(prefix="/callbacks", tags=["callbacks"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class CreateCallbackRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    customer_name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    email: str | None = None
    sales_agent_id: str | None = None
    sales_agent_name: str | None = None
    sales_team: str | None = None
    first_call_date: date | None = None
    first_call_time: str | None = None
    reason: str | None = None
    notes: str | None = None
    created_by_id: str | None = None


class UpdateCallbackStatusRequest(BaseModel):
    status: CallbackStatus


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_callback(
    body: CreateCallbackRequest,
    services: DashboardServices = Depends(get_services),
):
    payload = body.model_dump(mode="json", by_alias=True, exclude_none=True)
    try:
        callback = await services.records.create_callback(payload)
    except MUTATION_ERRORS as exc:
        raise to_http_error(exc) from exc
    return {"success": True, "data": callback.to_wire()}


@router.patch("/{callback_id}")
async def update_callback_status(
    callback_id: str,
    body: UpdateCallbackStatusRequest,
    services: DashboardServices = Depends(get_services),
):
    """Change a callback's status. Backward moves and leaving ``cancelled`` are 422."""
    try:
        callback = await services.records.update_callback_status(callback_id, body.status)
    except MUTATION_ERRORS as exc:
        raise to_http_error(exc) from exc
    return {"success": True, "data": callback.to_wire()}
