"""Tests for the dedup index, keyed locks and content transfer."""

from __future__ import annotations

import threading
import time

import pytest

from attachsync.core.types import AttachmentSource, DedupScope
from attachsync.remote.adapter import ObjectMetadata
from attachsync.store.database import Database
from attachsync.store.models import AttachmentRecord
from attachsync.sync.dedup import DeduplicationIndex, scope_key
from attachsync.sync.locks import KeyedLock
from attachsync.sync.transfer import ContentTransfer

HASH = "a" * 64


class TestScope:
    """Tests for scope keys."""

    def test_scope_key(self) -> None:
        """Work item scope embeds the id; global scope does not."""
        assert scope_key(DedupScope.WORK_ITEM, 7) == "work_item:7"
        assert scope_key("global", 7) == "global"

    def test_invalid_mode(self) -> None:
        """Unknown modes are rejected."""
        with pytest.raises(ValueError):
            scope_key("tenant", 1)


class TestDeduplicationIndex:
    """Tests for DeduplicationIndex."""

    def test_claim_and_lookup(self, db: Database) -> None:
        """A claimed hash is found in its scope only."""
        index = DeduplicationIndex(db)
        record = db.create_attachment(1, "a", AttachmentSource.TOOL)
        index.claim(HASH, index.scope_for(1), record.attachment_id, "ref-1")

        entry = index.lookup(HASH, index.scope_for(1))
        assert entry is not None
        assert entry.remote_reference == "ref-1"
        assert index.lookup(HASH, index.scope_for(2)) is None

    def test_global_scope(self, db: Database) -> None:
        """Global mode shares entries across work items."""
        index = DeduplicationIndex(db, "global")
        record = db.create_attachment(1, "a", AttachmentSource.TOOL)
        index.claim(HASH, index.scope_for(1), record.attachment_id, "ref-1")
        assert index.lookup(HASH, index.scope_for(99)) is not None

    def test_first_claim_wins(self, db: Database) -> None:
        """A second claim returns the existing entry."""
        index = DeduplicationIndex(db)
        first = db.create_attachment(1, "a", AttachmentSource.TOOL)
        second = db.create_attachment(1, "b", AttachmentSource.TOOL)
        scope = index.scope_for(1)
        index.claim(HASH, scope, first.attachment_id, "ref-1")
        entry = index.claim(HASH, scope, second.attachment_id, "ref-2")
        assert entry.first_attachment_id == first.attachment_id
        assert entry.remote_reference == "ref-1"

    def test_entry_of_deleted_record_is_dropped(self, db: Database) -> None:
        """Lookups ignore and remove entries whose canonical record is gone."""
        index = DeduplicationIndex(db)
        scope = index.scope_for(1)
        db.create_dedup_entry(HASH, scope, "vanished", "ref-1")

        assert index.lookup(HASH, scope) is None
        assert db.get_dedup_entry(HASH, scope) is None

    def test_soft_delete_drops_entry(self, db: Database) -> None:
        """Soft-deleting the canonical record removes its entry."""
        index = DeduplicationIndex(db)
        record = db.create_attachment(1, "a", AttachmentSource.TOOL)
        scope = index.scope_for(1)
        index.claim(HASH, scope, record.attachment_id, "ref-1")

        db.soft_delete_attachment(record.attachment_id)

        assert index.lookup(HASH, scope) is None

    def test_record_hit(self, db: Database) -> None:
        """Hits increment the duplicate count."""
        index = DeduplicationIndex(db)
        record = db.create_attachment(1, "a", AttachmentSource.TOOL)
        entry = index.claim(HASH, index.scope_for(1), record.attachment_id, "ref-1")
        index.record_hit(entry)
        assert index.record_hit(entry).duplicate_count == 2


class TestKeyedLock:
    """Tests for KeyedLock."""

    def test_same_key_serializes(self) -> None:
        """Holders of one key never overlap."""
        locks = KeyedLock()
        active = 0
        peak = 0
        guard = threading.Lock()

        def work() -> None:
            nonlocal active, peak
            with locks.hold("k"):
                with guard:
                    active += 1
                    peak = max(peak, active)
                time.sleep(0.01)
                with guard:
                    active -= 1

        threads = [threading.Thread(target=work) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert peak == 1
        assert len(locks) == 0

    def test_different_keys_do_not_block(self) -> None:
        """A held key does not block another key."""
        locks = KeyedLock()
        with locks.hold("a"):
            done = threading.Event()

            def other() -> None:
                with locks.hold("b"):
                    done.set()

            thread = threading.Thread(target=other)
            thread.start()
            assert done.wait(1.0)
            thread.join()
            assert len(locks) == 1


class TestContentTransfer:
    """Tests for ContentTransfer.deliver."""

    def test_send_failure_registers_nothing(self, db: Database, adapter) -> None:
        """Nothing is claimed when the transfer raises."""
        index = DeduplicationIndex(db)
        transfer = ContentTransfer(adapter, index, KeyedLock())
        registered: list[str] = []

        def send() -> str:
            raise ConnectionError("reset")

        def register(reference: str, deduplicated: bool) -> AttachmentRecord:
            registered.append(reference)
            raise AssertionError("not reached")

        with pytest.raises(ConnectionError):
            transfer.deliver(1, HASH, send, register)
        assert registered == []
        assert db.get_dedup_entry(HASH, index.scope_for(1)) is None

    def test_second_delivery_is_deduplicated(self, db: Database, adapter) -> None:
        """The second delivery of a hash skips send()."""
        index = DeduplicationIndex(db)
        transfer = ContentTransfer(adapter, index, KeyedLock())
        metadata = ObjectMetadata("a.txt", 3, None, HASH)

        def register(reference: str, deduplicated: bool) -> AttachmentRecord:
            return db.create_attachment(
                1, "a.txt", AttachmentSource.TOOL, remote_reference=reference
            )

        first = transfer.deliver(1, HASH, lambda: transfer.send_single(b"abc", metadata), register)
        second = transfer.deliver(1, HASH, lambda: pytest.fail("sent twice"), register)

        assert not first.deduplicated
        assert second.deduplicated
        assert second.reference == first.reference
        assert adapter.calls["upload_object"] == 1
