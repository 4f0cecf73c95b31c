"""Inbound webhook processing.

This module provides:
- verify_signature: HMAC-SHA256 check of a raw delivery body
- translate: Map a tracker event to the job that reconciles it
- WebhookIngress: Authenticate, deduplicate and enqueue deliveries

A delivery is identified by (subscription, work item, revision). The
identity is stored as the dedup_key of the WEBHOOK_ACCEPTED event, which
is written in the same transaction as the job, so a redelivery can never
produce a second job.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from attachsync.core.types import EventSource, JobType, Severity
from attachsync.store.database import DuplicateEventError

if TYPE_CHECKING:
    from attachsync.store.database import Database
    from attachsync.store.models import WebhookSubscription
    from attachsync.sync.queue import JobQueue

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
SIGNATURE_PREFIX = "sha256="

DISCOVERY_EVENTS = frozenset({"workitem.created", "workitem.updated", "workitem.restored"})
REFRESH_EVENTS = frozenset({"workitem.deleted"})


class WebhookOutcome(StrEnum):
    """Result of processing one delivery."""

    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    MALFORMED = "MALFORMED"
    IGNORED = "IGNORED"


@dataclass
class WebhookResult:
    """Outcome of WebhookIngress.handle()."""

    outcome: WebhookOutcome
    job_id: int | None = None
    duplicate: bool = False
    reason: str | None = None

    @property
    def accepted(self) -> bool:
        return self.outcome == WebhookOutcome.ACCEPTED


@dataclass(frozen=True)
class WebhookEvent:
    """The fields of a delivery the engine relies on."""

    event_type: str
    work_item_id: int
    revision: int


@dataclass(frozen=True)
class JobRequest:
    """Job a webhook event translates to."""

    job_type: JobType
    work_item_id: int


def sign(payload: bytes, secret: str) -> str:
    """Compute the hex HMAC-SHA256 signature of a payload."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: str | None, secret: str) -> bool:
    """Check a delivery signature in constant time.

    Args:
        payload: Raw request body.
        signature: Hex digest, optionally prefixed with "sha256=".
        secret: Shared secret of the subscription.

    Returns:
        True if the signature matches.
    """
    if not signature:
        return False
    candidate = signature.strip()
    if candidate.lower().startswith(SIGNATURE_PREFIX):
        candidate = candidate[len(SIGNATURE_PREFIX) :]
    return hmac.compare_digest(sign(payload, secret), candidate.lower())


def parse_event(raw_body: bytes) -> WebhookEvent:
    """Extract the event type, work item and revision of a delivery.

    Work item update events carry the work item in resource.workItemId and
    the revision in resource.revision.rev; other events use resource.id and
    resource.rev.

    Raises:
        ValueError: If the body is not JSON or a field is missing.
    """
    try:
        body = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Body is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise ValueError("Body is not a JSON object")

    event_type = body.get("eventType")
    resource = body.get("resource")
    if not event_type or not isinstance(resource, dict):
        raise ValueError("Missing eventType or resource")

    work_item_id = resource.get("workItemId", resource.get("id"))
    revision: Any = resource.get("revision", resource.get("rev"))
    if isinstance(revision, dict):
        revision = revision.get("rev")
    if work_item_id is None or revision is None:
        raise ValueError("Missing resource id or revision")
    try:
        return WebhookEvent(str(event_type), int(work_item_id), int(revision))
    except (TypeError, ValueError) as e:
        raise ValueError(f"Non-numeric resource id or revision: {e}") from e


def translate(event: WebhookEvent) -> JobRequest | None:
    """Map a tracker event to a reconciliation job.

    Returns:
        DOWNLOAD discovery for created/updated/restored work items, a LINK
        refresh for deleted ones, None for anything else.
    """
    if event.event_type in DISCOVERY_EVENTS:
        return JobRequest(JobType.DOWNLOAD, event.work_item_id)
    if event.event_type in REFRESH_EVENTS:
        return JobRequest(JobType.LINK, event.work_item_id)
    return None


def idempotency_key(subscription_id: str, work_item_id: int, revision: int) -> str:
    """Build the dedup key of a delivery."""
    return f"webhook:{subscription_id}:{work_item_id}:{revision}"


class WebhookIngress:
    """Authenticates webhook deliveries and turns them into jobs."""

    def __init__(self, db: Database, queue: JobQueue, priority: int = 3) -> None:
        self._db = db
        self._queue = queue
        self._priority = priority

    # === Subscription management ===

    def register_subscription(
        self,
        callback_url: str,
        secret: str | None = None,
        event_types: list[str] | None = None,
    ) -> WebhookSubscription:
        """Register a subscription, generating a secret when none is given."""
        subscription = self._db.create_subscription(
            callback_url=callback_url,
            secret=secret or secrets.token_hex(32),
            event_types=event_types,
        )
        logger.info(
            "Registered webhook subscription %s for %s",
            subscription.subscription_id,
            callback_url,
        )
        return subscription

    def deactivate_subscription(self, subscription_id: str) -> bool:
        """Stop accepting deliveries for a subscription."""
        found = self._db.set_subscription_active(subscription_id, False)
        if found:
            logger.info("Deactivated webhook subscription %s", subscription_id)
        return found

    # === Delivery ===

    def _reject(self, subscription_id: str, reason: str) -> WebhookResult:
        self._db.append_event(
            "WEBHOOK_REJECTED",
            EventSource.WEBHOOK,
            severity=Severity.WARN,
            message=reason,
            context={"subscription_id": subscription_id},
        )
        logger.warning("Rejected webhook for %s: %s", subscription_id, reason)
        return WebhookResult(WebhookOutcome.REJECTED, reason=reason)

    def handle(
        self,
        subscription_id: str,
        raw_body: bytes,
        signature: str | None,
    ) -> WebhookResult:
        """Process one delivery.

        Args:
            subscription_id: Subscription the delivery was addressed to.
            raw_body: Raw request body (the signed bytes).
            signature: Value of the signature header.

        Returns:
            The outcome. Only ACCEPTED deliveries with duplicate=False
            create a job.
        """
        subscription = self._db.get_subscription(subscription_id)
        if subscription is None:
            return self._reject(subscription_id, "Unknown subscription")
        if not subscription.is_active:
            return self._reject(subscription_id, "Subscription is inactive")

        if not verify_signature(raw_body, signature, subscription.secret):
            reason = "Missing signature" if not signature else "Signature mismatch"
            self._db.record_subscription_verification(subscription_id, reason)
            return self._reject(subscription_id, reason)
        self._db.record_subscription_verification(subscription_id, None)

        try:
            event = parse_event(raw_body)
        except ValueError as e:
            self._db.append_event(
                "WEBHOOK_MALFORMED",
                EventSource.WEBHOOK,
                severity=Severity.WARN,
                message=str(e),
                context={"subscription_id": subscription_id},
            )
            logger.warning("Malformed webhook for %s: %s", subscription_id, e)
            return WebhookResult(WebhookOutcome.MALFORMED, reason=str(e))

        request = translate(event) if subscription.accepts(event.event_type) else None
        if request is None:
            logger.debug("Ignoring %s event for %s", event.event_type, subscription_id)
            return WebhookResult(WebhookOutcome.IGNORED, reason=event.event_type)

        key = idempotency_key(subscription_id, event.work_item_id, event.revision)
        if self._db.event_exists(key):
            logger.info("Duplicate webhook delivery %s", key)
            return WebhookResult(WebhookOutcome.ACCEPTED, duplicate=True)

        try:
            job = self._queue.enqueue(
                request.job_type,
                request.work_item_id,
                priority=self._priority,
                source=EventSource.WEBHOOK,
                dedup_key=key,
                message=f"{event.event_type} rev {event.revision}",
                context={
                    "subscription_id": subscription_id,
                    "event_type": event.event_type,
                    "revision": event.revision,
                },
            )
        except DuplicateEventError:
            logger.info("Duplicate webhook delivery %s (concurrent)", key)
            return WebhookResult(WebhookOutcome.ACCEPTED, duplicate=True)

        logger.info(
            "Accepted %s for work item %d as %s job %d",
            event.event_type,
            event.work_item_id,
            request.job_type,
            job.id,
        )
        return WebhookResult(WebhookOutcome.ACCEPTED, job_id=job.id)
