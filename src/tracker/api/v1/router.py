"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.tracker.api.v1 import health, salesforce

router = APIRouter()

router.include_router(health.router)
router.include_router(salesforce.router)
router.include_router(salesforce.callback_router)
