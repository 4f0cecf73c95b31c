"""Health check API route."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from attachsync.server.api.deps import get_engine
from attachsync.server.schemas import HealthResponse
from attachsync.sync.orchestrator import SyncOrchestrator

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def health_check(engine: SyncOrchestrator = Depends(get_engine)) -> HealthResponse:
    """Check server health."""
    return HealthResponse(
        status="ok",
        remote_configured=engine.config.remote_configured,
        workers=engine.pool.state.name.lower(),
    )
