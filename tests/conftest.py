"""Shared fixtures: isolated store, blob store and an in-memory tracker."""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from collections.abc import Generator
from pathlib import Path

import pytest

from attachsync.core.config import SyncConfig
from attachsync.core.errors import NotFoundError
from attachsync.core.ranges import ByteRange
from attachsync.remote.adapter import (
    ChunkedUpload,
    ObjectMetadata,
    RemoteObject,
    RemoteSyncAdapter,
)
from attachsync.store.blobs import LocalFSBlobStore
from attachsync.store.database import Database
from attachsync.sync.orchestrator import SyncOrchestrator


class FakeRemoteAdapter(RemoteSyncAdapter):
    """In-memory tracker recording every call.

    Failures are injected per method with fail(method, error, times).
    """

    def __init__(self, transfer_delay: float = 0.0) -> None:
        self.objects: dict[str, bytes] = {}
        self.names: dict[str, str] = {}
        self.links: dict[int, list[RemoteObject]] = defaultdict(list)
        self.known_work_items: set[int] | None = None
        self.calls: dict[str, int] = defaultdict(int)
        self.transfer_delay = transfer_delay
        self.closed = False
        self._failures: dict[str, list[Exception]] = defaultdict(list)
        self._chunked: dict[str, tuple[ObjectMetadata, bytearray]] = {}
        self._counter = 0
        self._lock = threading.Lock()

    # === Test helpers ===

    def fail(self, method: str, error: Exception, times: int = 1) -> None:
        self._failures[method].extend([error] * times)

    @property
    def transfer_count(self) -> int:
        return self.calls["upload_object"] + self.calls["begin_chunked_upload"]

    def add_remote(self, work_item_id: int, file_name: str, data: bytes) -> str:
        reference = self._new_reference()
        self.objects[reference] = data
        self.names[reference] = file_name
        self.links[work_item_id].append(RemoteObject(reference, file_name, len(data)))
        return reference

    def _new_reference(self) -> str:
        with self._lock:
            self._counter += 1
            return f"https://tracker.test/_apis/wit/attachments/ref-{self._counter}"

    def _record(self, method: str) -> None:
        with self._lock:
            self.calls[method] += 1
            pending = self._failures.get(method)
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error

    # === RemoteSyncAdapter ===

    def upload_object(self, data: bytes, metadata: ObjectMetadata) -> str:
        self._record("upload_object")
        if self.transfer_delay:
            time.sleep(self.transfer_delay)
        reference = self._new_reference()
        self.objects[reference] = bytes(data)
        self.names[reference] = metadata.file_name
        return reference

    def begin_chunked_upload(self, metadata: ObjectMetadata) -> ChunkedUpload:
        self._record("begin_chunked_upload")
        reference = self._new_reference()
        token = reference.rsplit("/", 1)[-1]
        self._chunked[token] = (metadata, bytearray(metadata.size))
        self.names[reference] = metadata.file_name
        return ChunkedUpload(token=token, reference=reference)

    def upload_chunk(self, token: str, byte_range: ByteRange, data: bytes) -> None:
        self._record("upload_chunk")
        _, buffer = self._chunked[token]
        buffer[byte_range.start : byte_range.end + 1] = data
        reference = f"https://tracker.test/_apis/wit/attachments/{token}"
        self.objects[reference] = bytes(buffer)

    def link_object(self, work_item_id: int, reference: str, comment: str | None = None) -> None:
        self._record("link_object")
        self._check_work_item(work_item_id)
        self.links[work_item_id].append(
            RemoteObject(
                reference,
                self.names.get(reference, "file"),
                len(self.objects.get(reference, b"")),
                comment,
            )
        )

    def list_objects(self, work_item_id: int) -> list[RemoteObject]:
        self._record("list_objects")
        self._check_work_item(work_item_id)
        return list(self.links[work_item_id])

    def fetch_object(self, reference: str) -> bytes:
        self._record("fetch_object")
        if reference not in self.objects:
            raise NotFoundError(f"No object {reference}", 404)
        return self.objects[reference]

    def delete_link(self, work_item_id: int, reference: str) -> bool:
        self._record("delete_link")
        before = len(self.links[work_item_id])
        self.links[work_item_id] = [o for o in self.links[work_item_id] if o.reference != reference]
        return len(self.links[work_item_id]) < before

    def close(self) -> None:
        self.closed = True

    def _check_work_item(self, work_item_id: int) -> None:
        if self.known_work_items is not None and work_item_id not in self.known_work_items:
            raise NotFoundError(f"Work item {work_item_id} does not exist", 404)


@pytest.fixture
def db(tmp_path: Path) -> Generator[Database, None, None]:
    """Create a test database."""
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def blobs(tmp_path: Path) -> LocalFSBlobStore:
    """Create a test blob store."""
    return LocalFSBlobStore(tmp_path / "blobs")


@pytest.fixture
def adapter() -> FakeRemoteAdapter:
    """Create an in-memory tracker."""
    return FakeRemoteAdapter()


@pytest.fixture
def config(tmp_path: Path) -> SyncConfig:
    """Create a configuration with small sizes and no real delays."""
    return SyncConfig(
        db_path=tmp_path / "test.db",
        storage_path=tmp_path / "blobs",
        log_path=tmp_path / "server.log",
        org_url="https://tracker.test",
        project="demo",
        chunk_size=40000,
        single_upload_threshold=40000,
        max_file_size=10 * 1024 * 1024,
        max_retries=3,
        backoff_base=0.0,
        backoff_max=0.0,
        rate_limit_max=0.0,
        worker_count=2,
        poll_interval=0.01,
        run_workers=False,
    )


@pytest.fixture
def engine(
    config: SyncConfig,
    adapter: FakeRemoteAdapter,
    db: Database,
    blobs: LocalFSBlobStore,
) -> Generator[SyncOrchestrator, None, None]:
    """Create a sync engine on the fake tracker."""
    orchestrator = SyncOrchestrator(config, adapter, db=db, blobs=blobs)
    yield orchestrator
    orchestrator.stop()
