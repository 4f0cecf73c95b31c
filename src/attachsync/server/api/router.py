"""Main API router that includes all sub-routers."""

from __future__ import annotations

from fastapi import APIRouter

from attachsync.server.api import attachments, health, uploads, webhooks

router = APIRouter()

# Include all API routers
router.include_router(health.router)
router.include_router(attachments.router)
router.include_router(uploads.router)
router.include_router(webhooks.router)
