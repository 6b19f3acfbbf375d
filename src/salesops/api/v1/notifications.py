"""Notification endpoints: send, mark as read, and stream the requester's list."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from src.salesops.api.deps import MUTATION_ERRORS, get_requester, get_services, to_http_error
from src.salesops.api.v1.unified import SSE_HEADERS
from src.salesops.realtime.broadcaster import ARRAY, stream_subscription
from src.salesops.records.schemas import EntityType, Requester
from src.salesops.services import DashboardServices

router = APIRouter(prefix="/notifications", tags=["notifications"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class CreateNotificationRequest(BaseModel):
    """Request body for a notification. ``recipients`` may contain ``ALL``."""

    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1)
    message: str = ""
    recipients: list[str] = Field(min_length=1)
    notification_type: str = Field(default="info", alias="type")
    priority: str = "medium"


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_notification(
    body: CreateNotificationRequest,
    services: DashboardServices = Depends(get_services),
):
    """Send a notification; 422 when a recipient is not an existing user."""
    payload = body.model_dump(mode="json", by_alias=True)
    try:
        notification = await services.records.create_notification(payload)
    except MUTATION_ERRORS as exc:
        raise to_http_error(exc) from exc
    return {"success": True, "data": notification.to_wire()}


@router.post("/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    services: DashboardServices = Depends(get_services),
):
    try:
        notification = await services.records.mark_notification_read(notification_id)
    except MUTATION_ERRORS as exc:
        raise to_http_error(exc) from exc
    return {"success": True, "data": notification.to_wire()}


@router.get("/stream")
async def stream_notifications(
    request: Request,
    requester: Requester = Depends(get_requester),
    services: DashboardServices = Depends(get_services),
):
    """Server-Sent Events: the requester's notification list, newest first."""
    return StreamingResponse(
        stream_subscription(
            services.broadcaster,
            request.is_disconnected,
            requester,
            [EntityType.NOTIFICATIONS],
            shape=ARRAY,
            interval_seconds=services.settings.NOTIFICATION_STREAM_INTERVAL_SECONDS,
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
