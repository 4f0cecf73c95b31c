"""Content deduplication index.

A content hash is transferred to the remote tracker at most once per
scope. Later uploads of the same bytes reuse the first remote reference.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from attachsync.core.types import DedupScope

if TYPE_CHECKING:
    from attachsync.store.database import Database
    from attachsync.store.models import DeduplicationEntry

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"


def scope_key(mode: DedupScope | str, work_item_id: int) -> str:
    """Build the dedup scope key for a work item.

    Args:
        mode: "global" shares one index across all work items; "work_item"
            keeps one index per work item.
        work_item_id: Work item of the upload.

    Returns:
        "global" or "work_item:<id>".
    """
    if DedupScope(mode) == DedupScope.GLOBAL:
        return GLOBAL_SCOPE
    return f"work_item:{work_item_id}"


class DeduplicationIndex:
    """Lookups and claims against the deduplication_index relation."""

    def __init__(self, db: Database, mode: DedupScope | str = DedupScope.WORK_ITEM) -> None:
        self._db = db
        self._mode = DedupScope(mode)

    @property
    def mode(self) -> DedupScope:
        return self._mode

    def scope_for(self, work_item_id: int) -> str:
        """Return the scope key used for uploads to a work item."""
        return scope_key(self._mode, work_item_id)

    def lookup(self, content_hash: str, scope: str) -> DeduplicationEntry | None:
        """Find the live entry for a content hash.

        An entry whose canonical attachment has since been deleted is
        removed and reported as a miss.

        Args:
            content_hash: Fingerprint of the content.
            scope: Scope key from scope_for().

        Returns:
            The entry, or None on a miss.
        """
        entry = self._db.get_dedup_entry(content_hash, scope)
        if entry is None:
            return None

        canonical = self._db.get_attachment(entry.first_attachment_id)
        if canonical is None or canonical.is_deleted:
            logger.info(
                "Dropping dedup entry for %s: canonical attachment %s is gone",
                content_hash[:12],
                entry.first_attachment_id,
            )
            self._db.delete_dedup_entry(entry.id)
            return None
        return entry

    def record_hit(self, entry: DeduplicationEntry) -> DeduplicationEntry:
        """Count one reuse of an entry."""
        updated = self._db.increment_duplicate_count(entry.id)
        logger.debug(
            "Dedup hit for %s in %s (count=%d)",
            entry.content_hash[:12],
            entry.work_item_scope,
            updated.duplicate_count,
        )
        return updated

    def claim(
        self,
        content_hash: str,
        scope: str,
        attachment_id: str,
        remote_reference: str,
    ) -> DeduplicationEntry:
        """Register the first transfer of a content hash.

        When another writer already registered the hash, its entry wins and
        is returned unchanged.
        """
        entry, created = self._db.create_dedup_entry(
            content_hash, scope, attachment_id, remote_reference
        )
        if not created:
            logger.info(
                "Dedup entry for %s already claimed by %s",
                content_hash[:12],
                entry.first_attachment_id,
            )
        return entry
