"""Sync module - Sessions, deduplication, job queue, workers and webhooks."""

from attachsync.sync.dedup import DeduplicationIndex, scope_key
from attachsync.sync.locks import KeyedLock
from attachsync.sync.orchestrator import SyncOrchestrator
from attachsync.sync.queue import JobQueue
from attachsync.sync.reconcile import ReconcileResult, Reconciler
from attachsync.sync.retry import RetryDecision, RetryPolicy, decide
from attachsync.sync.sessions import SessionProgress, UploadSessionManager
from attachsync.sync.transfer import ContentTransfer, Delivery
from attachsync.sync.webhooks import (
    WebhookIngress,
    WebhookOutcome,
    WebhookResult,
    translate,
    verify_signature,
)

__all__ = [
    # Orchestration
    "SyncOrchestrator",
    # Sessions
    "SessionProgress",
    "UploadSessionManager",
    # Deduplication
    "ContentTransfer",
    "DeduplicationIndex",
    "Delivery",
    "KeyedLock",
    "scope_key",
    # Queue
    "JobQueue",
    "RetryDecision",
    "RetryPolicy",
    "decide",
    # Inbound
    "ReconcileResult",
    "Reconciler",
    "WebhookIngress",
    "WebhookOutcome",
    "WebhookResult",
    "translate",
    "verify_signature",
]
