"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from attachsync.store.models import (
    AttachmentRecord,
    DeduplicationEntry,
    EventLogEntry,
    SyncJob,
    WebhookSubscription,
    as_utc,
)


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


# === Attachment schemas ===


class AttachmentResponse(BaseModel):
    """Attachment record in responses."""

    attachment_id: str
    work_item_id: int
    file_name: str
    file_size: int | None
    content_hash: str | None
    mime_type: str | None
    source: str
    remote_reference: str | None
    sync_status: str
    retry_count: int
    last_error: str | None
    created_at: str
    updated_at: str
    deleted_at: str | None


class LinkRequest(BaseModel):
    """Request body for a manual link."""

    comment: str | None = None


# === Job and event schemas ===


class JobResponse(BaseModel):
    """Sync job in responses."""

    id: int
    work_item_id: int
    attachment_id: str | None
    job_type: str
    status: str
    priority: int
    retry_count: int
    max_retries: int
    error_category: str | None
    error_message: str | None
    created_at: str
    next_retry_at: str | None
    completed_at: str | None


class EventResponse(BaseModel):
    """Event log entry in responses."""

    id: int
    event_type: str
    severity: str
    source: str
    work_item_id: int | None
    attachment_id: str | None
    job_id: int | None
    message: str | None
    context: dict[str, Any]
    created_at: str


class StatusResponse(BaseModel):
    """Sync state of a work item."""

    work_item_id: int
    total_attachments: int
    counts: dict[str, int]
    total_size_bytes: int
    last_modified: str | None
    recent_jobs: list[JobResponse]
    recent_events: list[EventResponse]
    unlinked: list[AttachmentResponse]


class ReconcileResponse(BaseModel):
    """Outcome of a reconciliation pass."""

    work_item_id: int
    remote_count: int
    created: list[str]
    deletions: list[str]


class DedupResponse(BaseModel):
    """Dedup index entry."""

    content_hash: str
    work_item_scope: str
    first_attachment_id: str
    remote_reference: str
    duplicate_count: int


# === Upload session schemas ===


class SessionStartRequest(BaseModel):
    """Request body to open a chunked upload session."""

    work_item_id: int
    file_name: str = Field(min_length=1)
    total_size: int
    chunk_size: int | None = None
    mime_type: str | None = None
    link: bool = False
    comment: str | None = None


class SessionResponse(BaseModel):
    """Upload session progress."""

    session_id: str
    status: str
    work_item_id: int
    file_name: str
    total_size: int
    chunk_size: int
    total_chunks: int
    chunks_received: int
    missing_chunks: list[int]
    percent: float
    expires_at: str
    attachment_id: str | None
    last_error: str | None


# === Webhook schemas ===


class WebhookResponse(BaseModel):
    """Outcome of a webhook delivery."""

    outcome: str
    job_id: int | None = None
    duplicate: bool = False
    reason: str | None = None


class SubscriptionRequest(BaseModel):
    """Request body to register a webhook subscription."""

    callback_url: str
    secret: str | None = None
    event_types: list[str] | None = None


class SubscriptionResponse(BaseModel):
    """Webhook subscription in responses. The secret is only shown on creation."""

    subscription_id: str
    callback_url: str
    event_types: list[str]
    is_active: bool
    last_verified_at: str | None
    verification_error: str | None
    secret: str | None = None


# === Health schema ===


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    remote_configured: bool
    workers: str


# === Converters ===


def attachment_to_response(record: AttachmentRecord) -> AttachmentResponse:
    """Convert AttachmentRecord to response model."""
    return AttachmentResponse(
        attachment_id=record.attachment_id,
        work_item_id=record.work_item_id,
        file_name=record.file_name,
        file_size=record.file_size,
        content_hash=record.content_hash,
        mime_type=record.mime_type,
        source=record.source,
        remote_reference=record.remote_reference,
        sync_status=record.sync_status,
        retry_count=record.retry_count,
        last_error=record.last_error,
        created_at=_iso(record.created_at) or "",
        updated_at=_iso(record.updated_at) or "",
        deleted_at=_iso(record.deleted_at),
    )


def job_to_response(job: SyncJob) -> JobResponse:
    """Convert SyncJob to response model."""
    return JobResponse(
        id=job.id,
        work_item_id=job.work_item_id,
        attachment_id=job.attachment_id,
        job_type=job.job_type,
        status=job.status,
        priority=job.priority,
        retry_count=job.retry_count,
        max_retries=job.max_retries,
        error_category=job.error_category,
        error_message=job.error_message,
        created_at=_iso(job.created_at) or "",
        next_retry_at=_iso(job.next_retry_at),
        completed_at=_iso(job.completed_at),
    )


def event_to_response(entry: EventLogEntry) -> EventResponse:
    """Convert EventLogEntry to response model."""
    return EventResponse(
        id=entry.id,
        event_type=entry.event_type,
        severity=entry.severity,
        source=entry.source,
        work_item_id=entry.work_item_id,
        attachment_id=entry.attachment_id,
        job_id=entry.job_id,
        message=entry.message,
        context=entry.context or {},
        created_at=_iso(entry.created_at) or "",
    )


def dedup_to_response(entry: DeduplicationEntry) -> DedupResponse:
    """Convert DeduplicationEntry to response model."""
    return DedupResponse(
        content_hash=entry.content_hash,
        work_item_scope=entry.work_item_scope,
        first_attachment_id=entry.first_attachment_id,
        remote_reference=entry.remote_reference,
        duplicate_count=entry.duplicate_count,
    )


def subscription_to_response(
    subscription: WebhookSubscription, include_secret: bool = False
) -> SubscriptionResponse:
    """Convert WebhookSubscription to response model."""
    event_types = [t for t in (subscription.event_types or "").split(",") if t]
    return SubscriptionResponse(
        subscription_id=subscription.subscription_id,
        callback_url=subscription.callback_url,
        event_types=event_types,
        is_active=subscription.is_active,
        last_verified_at=_iso(subscription.last_verified_at),
        verification_error=subscription.verification_error,
        secret=subscription.secret if include_secret else None,
    )
