"""FastAPI dependencies for API routes."""

from __future__ import annotations

import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from attachsync.core.errors import ErrorCategory, SyncError, classify
from attachsync.sync.orchestrator import SyncOrchestrator

# Security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# HTTP status returned for each error category
CATEGORY_STATUS: dict[ErrorCategory, int] = {
    ErrorCategory.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorCategory.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCategory.AUTH: status.HTTP_502_BAD_GATEWAY,
    ErrorCategory.CONFLICT: status.HTTP_409_CONFLICT,
}


def get_engine(request: Request) -> SyncOrchestrator:
    """Get the sync engine from app state."""
    engine: SyncOrchestrator = request.app.state.engine
    return engine


def require_api_key(
    request: Request,
    api_key: str | None = Depends(api_key_header),
) -> None:
    """Check the X-API-Key header when an API key is configured."""
    expected: str | None = get_engine(request).config.api_key
    if not expected:
        return
    if api_key is None or not hmac.compare_digest(api_key, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )


def status_for(exc: SyncError) -> int:
    """Return the HTTP status code reported for a sync error."""
    return CATEGORY_STATUS.get(classify(exc), status.HTTP_503_SERVICE_UNAVAILABLE)
