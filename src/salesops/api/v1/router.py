"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.salesops.api.v1 import callbacks, deals, health, notifications, targets, unified

router = APIRouter()

router.include_router(health.router)
router.include_router(unified.router)
router.include_router(deals.router)
router.include_router(callbacks.router)
router.include_router(targets.router)
router.include_router(notifications.router)
