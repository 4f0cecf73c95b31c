"""Tests for FastAPI server endpoints."""

from __future__ import annotations

import json
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from attachsync.core.config import SyncConfig
from attachsync.core.errors import AuthError, TransientNetworkError
from attachsync.core.hashing import fingerprint
from attachsync.remote.adapter import RemoteSyncAdapter
from attachsync.server.app import create_app
from attachsync.store.blobs import LocalFSBlobStore
from attachsync.store.database import Database
from attachsync.sync.orchestrator import SyncOrchestrator
from attachsync.sync.webhooks import SIGNATURE_HEADER, sign


@pytest.fixture
def client(engine: SyncOrchestrator) -> TestClient:
    """Create a test client around the test engine (no lifespan)."""
    return TestClient(create_app(engine))


def _upload(client: TestClient, work_item_id: int = 42, data: bytes = b"hello") -> dict:
    response = client.post(
        f"/api/work-items/{work_item_id}/attachments",
        params={"file_name": "notes.txt", "comment": "from test"},
        content=data,
        headers={"Content-Type": "text/plain"},
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    def test_health_check(self, client: TestClient) -> None:
        """Health endpoint should return OK with worker state."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["remote_configured"] is True
        assert data["workers"] == "stopped"


class TestApiKey:
    """Tests for the optional API key."""

    @pytest.fixture
    def secured(
        self,
        config: SyncConfig,
        adapter: RemoteSyncAdapter,
        db: Database,
        blobs: LocalFSBlobStore,
    ) -> TestClient:
        """Client for an engine that requires an API key."""
        engine = SyncOrchestrator(replace(config, api_key="k3y"), adapter, db=db, blobs=blobs)
        return TestClient(create_app(engine))

    def test_missing_key(self, secured: TestClient) -> None:
        """Requests without the key are refused."""
        assert secured.get("/api/work-items/1/attachments").status_code == 401

    def test_wrong_key(self, secured: TestClient) -> None:
        """Requests with a wrong key are refused."""
        response = secured.get("/api/work-items/1/attachments", headers={"X-API-Key": "nope"})
        assert response.status_code == 401

    def test_valid_key(self, secured: TestClient) -> None:
        """Requests with the key pass."""
        response = secured.get("/api/work-items/1/attachments", headers={"X-API-Key": "k3y"})
        assert response.status_code == 200

    def test_health_is_open(self, secured: TestClient) -> None:
        """Health does not need the key."""
        assert secured.get("/health").status_code == 200


class TestAttachmentEndpoints:
    """Tests for work item and attachment routes."""

    def test_upload(self, client: TestClient, engine: SyncOrchestrator) -> None:
        """Should upload the raw body and queue its link."""
        data = _upload(client)

        assert data["sync_status"] == "SYNCING"
        assert data["file_name"] == "notes.txt"
        assert data["mime_type"] == "text/plain"
        assert data["content_hash"] == fingerprint(b"hello")
        assert data["remote_reference"].startswith("https://tracker.test/")

        engine.pool.drain()
        response = client.get(f"/api/attachments/{data['attachment_id']}")
        assert response.json()["sync_status"] == "SYNCED"
        assert engine.adapter.links[42][0].comment == "from test"

    def test_upload_empty_body(self, client: TestClient) -> None:
        """Should reject an empty body."""
        response = client.post("/api/work-items/1/attachments", params={"file_name": "a"})
        assert response.status_code == 400

    def test_upload_missing_file_name(self, client: TestClient) -> None:
        """Should require file_name."""
        response = client.post("/api/work-items/1/attachments", content=b"x")
        assert response.status_code == 422

    def test_upload_oversized(self, client: TestClient, engine: SyncOrchestrator) -> None:
        """Validation errors map to 400 with their category."""
        response = client.post(
            "/api/work-items/1/attachments",
            params={"file_name": "big"},
            content=b"x" * (engine.config.max_file_size + 1),
        )
        assert response.status_code == 400
        assert response.json()["category"] == "VALIDATION"

    def test_upload_remote_auth_failure(self, client: TestClient, engine: SyncOrchestrator) -> None:
        """A rejected tracker credential maps to 502."""
        engine.adapter.fail("upload_object", AuthError("token expired", 401))
        response = client.post(
            "/api/work-items/1/attachments", params={"file_name": "a"}, content=b"x"
        )
        assert response.status_code == 502
        assert response.json()["category"] == "AUTH"

    def test_upload_deferred(self, client: TestClient, engine: SyncOrchestrator) -> None:
        """A retryable failure still returns 201 with a PENDING record."""
        engine.adapter.fail("upload_object", TransientNetworkError("reset"))
        data = _upload(client)
        assert data["sync_status"] == "PENDING"

    def test_list_and_status(self, client: TestClient, engine: SyncOrchestrator) -> None:
        """Should list attachments and report status."""
        _upload(client)
        engine.pool.drain()

        listed = client.get("/api/work-items/42/attachments").json()
        assert len(listed) == 1

        status = client.get("/api/work-items/42/status").json()
        assert status["total_attachments"] == 1
        assert status["counts"]["SYNCED"] == 1
        assert status["total_size_bytes"] == 5
        assert status["last_modified"] is not None
        assert status["recent_jobs"][0]["job_type"] == "LINK"
        assert any(e["event_type"] == "ATTACHMENT_UPLOADED" for e in status["recent_events"])

    def test_unknown_attachment(self, client: TestClient) -> None:
        """Missing attachments map to 404."""
        response = client.get("/api/attachments/missing")
        assert response.status_code == 404
        assert response.json()["category"] == "NOT_FOUND"

    def test_content(self, client: TestClient, engine: SyncOrchestrator) -> None:
        """Should download reconciled content."""
        engine.adapter.add_remote(7, "remote.txt", b"remote bytes")
        reconcile = client.post("/api/work-items/7/reconcile").json()
        assert reconcile["remote_count"] == 1
        engine.pool.drain()

        response = client.get(f"/api/attachments/{reconcile['created'][0]}/content")
        assert response.status_code == 200
        assert response.content == b"remote bytes"
        assert 'filename="remote.txt"' in response.headers["content-disposition"]

    def test_link_unlink_delete(self, client: TestClient, engine: SyncOrchestrator) -> None:
        """Should queue link, unlink and delete jobs."""
        attachment_id = _upload(client)["attachment_id"]
        engine.pool.drain()

        unlink = client.post(f"/api/attachments/{attachment_id}/unlink")
        assert unlink.status_code == 202
        assert unlink.json()["job_type"] == "UNLINK"
        engine.pool.drain()

        link = client.post(f"/api/attachments/{attachment_id}/link", json={"comment": "again"})
        assert link.status_code == 202
        assert link.json()["job_type"] == "LINK"
        engine.pool.drain()
        assert engine.adapter.links[42][-1].comment == "again"

        delete = client.delete(f"/api/attachments/{attachment_id}")
        assert delete.status_code == 202
        engine.pool.drain()
        assert client.get("/api/work-items/42/attachments").json() == []
        deleted = client.get("/api/work-items/42/attachments", params={"include_deleted": True})
        assert deleted.json()[0]["sync_status"] == "DELETED"

    def test_link_without_body(self, client: TestClient, engine: SyncOrchestrator) -> None:
        """The link body is optional."""
        attachment_id = _upload(client)["attachment_id"]
        assert client.post(f"/api/attachments/{attachment_id}/link").status_code == 202

    def test_unlinked_listing(self, client: TestClient, engine: SyncOrchestrator) -> None:
        """Records whose link failed are listed for recovery."""
        engine.adapter.known_work_items = set()
        attachment_id = _upload(client, work_item_id=9)["attachment_id"]
        engine.pool.drain()

        unlinked = client.get("/api/attachments/unlinked", params={"work_item_id": 9}).json()
        assert [r["attachment_id"] for r in unlinked] == [attachment_id]

    def test_force_sync(self, client: TestClient) -> None:
        """Force sync queues a discovery job."""
        response = client.post("/api/work-items/3/sync")
        assert response.status_code == 202
        assert [j["job_type"] for j in response.json()] == ["DOWNLOAD"]

    def test_dedup_lookup(self, client: TestClient) -> None:
        """Should report the dedup entry of uploaded content."""
        data = _upload(client)
        response = client.get(
            f"/api/dedup/{fingerprint(b'hello')}", params={"work_item_id": 42}
        )
        assert response.status_code == 200
        assert response.json()["first_attachment_id"] == data["attachment_id"]

        miss = client.get(f"/api/dedup/{fingerprint(b'hello')}", params={"work_item_id": 43})
        assert miss.status_code == 404

    def test_job(self, client: TestClient) -> None:
        """Should get jobs by id."""
        job_id = client.post("/api/work-items/3/sync").json()[0]["id"]
        response = client.get(f"/api/jobs/{job_id}")
        assert response.status_code == 200
        assert response.json()["status"] == "QUEUED"
        assert client.get("/api/jobs/9999").status_code == 404


class TestUploadSessionEndpoints:
    """Tests for chunked upload sessions over HTTP."""

    def test_chunked_upload(self, client: TestClient, engine: SyncOrchestrator) -> None:
        """Two PUTs complete a 50000 byte session."""
        payload = bytes(range(250)) * 200
        response = client.post(
            "/api/uploads",
            json={"work_item_id": 5, "file_name": "big.bin", "total_size": 50000},
        )
        assert response.status_code == 201
        session = response.json()
        assert session["total_chunks"] == 2
        sid = session["session_id"]

        first = client.put(
            f"/api/uploads/{sid}",
            content=payload[:40000],
            headers={"Content-Range": "bytes 0-39999/50000"},
        )
        assert first.status_code == 200
        assert first.json()["missing_chunks"] == [1]

        second = client.put(
            f"/api/uploads/{sid}",
            content=payload[40000:],
            headers={"Content-Range": "bytes 40000-49999/50000"},
        )
        assert second.json()["status"] == "COMPLETED"

        record = engine.get_attachment(second.json()["attachment_id"])
        assert record.sync_status == "SYNCED"
        assert record.content_hash == fingerprint(payload)

    def test_out_of_range(self, client: TestClient) -> None:
        """A range past the end is a 400."""
        sid = client.post(
            "/api/uploads", json={"work_item_id": 5, "file_name": "f", "total_size": 50000}
        ).json()["session_id"]
        response = client.put(
            f"/api/uploads/{sid}",
            content=b"x" * 40001,
            headers={"Content-Range": "bytes 40000-80000/50000"},
        )
        assert response.status_code == 400
        assert client.get(f"/api/uploads/{sid}").json()["chunks_received"] == 0

    def test_missing_content_range(self, client: TestClient) -> None:
        """The Content-Range header is required."""
        sid = client.post(
            "/api/uploads", json={"work_item_id": 5, "file_name": "f", "total_size": 10}
        ).json()["session_id"]
        assert client.put(f"/api/uploads/{sid}", content=b"x").status_code == 422

    def test_finalize_incomplete(self, client: TestClient) -> None:
        """Finalizing with missing chunks is a 400."""
        sid = client.post(
            "/api/uploads", json={"work_item_id": 5, "file_name": "f", "total_size": 10}
        ).json()["session_id"]
        assert client.post(f"/api/uploads/{sid}/finalize").status_code == 400

    def test_cancel(self, client: TestClient) -> None:
        """Cancelling removes the session."""
        sid = client.post(
            "/api/uploads", json={"work_item_id": 5, "file_name": "f", "total_size": 10}
        ).json()["session_id"]
        assert client.delete(f"/api/uploads/{sid}").status_code == 204
        assert client.delete(f"/api/uploads/{sid}").status_code == 404
        assert client.get(f"/api/uploads/{sid}").status_code == 404

    def test_invalid_start(self, client: TestClient) -> None:
        """Bad session parameters are rejected."""
        response = client.post(
            "/api/uploads", json={"work_item_id": 5, "file_name": "f", "total_size": 0}
        )
        assert response.status_code == 400


class TestWebhookEndpoints:
    """Tests for the webhook receiver and subscriptions."""

    @pytest.fixture
    def subscription(self, client: TestClient) -> dict:
        """Register a subscription over HTTP."""
        response = client.post(
            "/api/subscriptions",
            json={"callback_url": "https://hooks.test/r", "secret": "s3cret"},
        )
        assert response.status_code == 201
        return response.json()

    def _deliver(self, client: TestClient, sub_id: str, body: bytes, signature: str) -> dict:
        response = client.post(
            f"/api/webhooks/{sub_id}",
            content=body,
            headers={SIGNATURE_HEADER: signature, "Content-Type": "application/json"},
        )
        return {"status": response.status_code, **response.json()}

    def test_subscription_secret_shown_once(self, client: TestClient, subscription: dict) -> None:
        """The secret is returned on creation only."""
        assert subscription["secret"] == "s3cret"
        listed = client.get("/api/subscriptions").json()
        assert listed[0]["secret"] is None

    def test_accepted_then_duplicate(self, client: TestClient, subscription: dict) -> None:
        """A valid delivery is 202, its redelivery 200."""
        body = json.dumps(
            {"eventType": "workitem.updated", "resource": {"workItemId": 8, "revision": {"rev": 2}}}
        ).encode()
        first = self._deliver(client, subscription["subscription_id"], body, sign(body, "s3cret"))
        second = self._deliver(client, subscription["subscription_id"], body, sign(body, "s3cret"))

        assert first["status"] == 202
        assert first["outcome"] == "ACCEPTED"
        assert first["job_id"] is not None
        assert second["status"] == 200
        assert second["duplicate"] is True

    def test_rejected(self, client: TestClient, engine: SyncOrchestrator, subscription: dict) -> None:
        """A bad signature is 401 and creates no job."""
        body = b'{"eventType": "workitem.updated"}'
        result = self._deliver(client, subscription["subscription_id"], body, "sha256=00")
        assert result["status"] == 401
        assert result["outcome"] == "REJECTED"
        assert engine.db.list_jobs() == []

    def test_malformed(self, client: TestClient, subscription: dict) -> None:
        """A signed unusable body is 400."""
        body = b"not json"
        result = self._deliver(client, subscription["subscription_id"], body, sign(body, "s3cret"))
        assert result["status"] == 400
        assert result["outcome"] == "MALFORMED"

    def test_ignored(self, client: TestClient, subscription: dict) -> None:
        """Unhandled event types are acknowledged with 200."""
        body = json.dumps(
            {"eventType": "workitem.commented", "resource": {"id": 8, "rev": 2}}
        ).encode()
        result = self._deliver(client, subscription["subscription_id"], body, sign(body, "s3cret"))
        assert result["status"] == 200
        assert result["outcome"] == "IGNORED"

    def test_deactivate(self, client: TestClient, subscription: dict) -> None:
        """Deactivated subscriptions are listed as inactive."""
        sub_id = subscription["subscription_id"]
        assert client.delete(f"/api/subscriptions/{sub_id}").status_code == 204
        assert client.get("/api/subscriptions", params={"active_only": True}).json() == []
        assert client.delete("/api/subscriptions/nope").status_code == 404
