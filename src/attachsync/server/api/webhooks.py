"""Webhook receiver and subscription API routes.

The receiver authenticates deliveries by HMAC signature, not by API key.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from attachsync.server.api.deps import get_engine, require_api_key
from attachsync.server.schemas import (
    SubscriptionRequest,
    SubscriptionResponse,
    WebhookResponse,
    subscription_to_response,
)
from attachsync.sync.orchestrator import SyncOrchestrator
from attachsync.sync.webhooks import SIGNATURE_HEADER, WebhookOutcome

router = APIRouter(prefix="/api", tags=["webhooks"])

# HTTP status returned for each delivery outcome
OUTCOME_STATUS: dict[WebhookOutcome, int] = {
    WebhookOutcome.ACCEPTED: status.HTTP_202_ACCEPTED,
    WebhookOutcome.REJECTED: status.HTTP_401_UNAUTHORIZED,
    WebhookOutcome.MALFORMED: status.HTTP_400_BAD_REQUEST,
    WebhookOutcome.IGNORED: status.HTTP_200_OK,
}


@router.post("/webhooks/{subscription_id}", response_model=WebhookResponse)
async def receive_webhook(
    subscription_id: str,
    request: Request,
    signature: str | None = Header(None, alias=SIGNATURE_HEADER),
    engine: SyncOrchestrator = Depends(get_engine),
) -> JSONResponse:
    """Receive a tracker notification."""
    raw_body = await request.body()
    result = await run_in_threadpool(
        engine.webhooks.handle, subscription_id, raw_body, signature
    )
    code = OUTCOME_STATUS[result.outcome]
    if result.duplicate:
        code = status.HTTP_200_OK
    body = WebhookResponse(
        outcome=result.outcome.value,
        job_id=result.job_id,
        duplicate=result.duplicate,
        reason=result.reason,
    )
    return JSONResponse(status_code=code, content=body.model_dump())


# === Subscriptions ===


@router.post(
    "/subscriptions",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
def create_subscription(
    request: SubscriptionRequest,
    engine: SyncOrchestrator = Depends(get_engine),
) -> SubscriptionResponse:
    """Register a webhook subscription. The response carries the secret."""
    subscription = engine.webhooks.register_subscription(
        request.callback_url,
        secret=request.secret,
        event_types=request.event_types,
    )
    return subscription_to_response(subscription, include_secret=True)


@router.get(
    "/subscriptions",
    response_model=list[SubscriptionResponse],
    dependencies=[Depends(require_api_key)],
)
def list_subscriptions(
    active_only: bool = False,
    engine: SyncOrchestrator = Depends(get_engine),
) -> list[SubscriptionResponse]:
    """List webhook subscriptions."""
    return [
        subscription_to_response(s) for s in engine.db.list_subscriptions(active_only=active_only)
    ]


@router.delete("/subscriptions/{subscription_id}", dependencies=[Depends(require_api_key)])
def deactivate_subscription(
    subscription_id: str,
    engine: SyncOrchestrator = Depends(get_engine),
) -> Response:
    """Deactivate a webhook subscription."""
    if engine.webhooks.deactivate_subscription(subscription_id):
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Subscription not found: {subscription_id}",
    )
