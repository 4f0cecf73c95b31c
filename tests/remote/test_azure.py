"""Tests for the Azure DevOps adapter."""

from __future__ import annotations

import base64
import json
from collections.abc import Generator

import httpx
import pytest

from attachsync.core.errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    RateLimitError,
    SyncError,
    TransientNetworkError,
    ValidationError,
)
from attachsync.core.ranges import ByteRange
from attachsync.remote.adapter import ObjectMetadata
from attachsync.remote.azure import AzureDevOpsAdapter, extract_attachment_id

ORG = "https://dev.azure.com/acme"
BASE = f"{ORG}/demo/_apis/wit"
GUID = "6b2c1f7e-0d55-4c4e-9b7a-2f3d9e5a1c00"
ATTACHMENT_URL = f"{BASE}/attachments/{GUID}"


@pytest.fixture
def tokens() -> list[str]:
    """Token handed out by the credential provider."""
    return ["pat-1"]


@pytest.fixture
def remote(tokens: list[str]) -> Generator[AzureDevOpsAdapter, None, None]:
    """Adapter pointed at a fake organization."""
    with AzureDevOpsAdapter(ORG, "demo", lambda: tokens[0], timeout=5.0) as adapter:
        yield adapter


def _work_item(rev: int = 3) -> dict:
    return {
        "id": 42,
        "rev": rev,
        "relations": [
            {"rel": "System.LinkTypes.Related", "url": f"{BASE}/workItems/7"},
            {
                "rel": "AttachedFile",
                "url": ATTACHMENT_URL,
                "attributes": {"name": "spec.pdf", "resourceSize": 1024, "comment": "v1"},
            },
        ],
    }


class TestUpload:
    """Tests for single and chunked uploads."""

    def test_upload_object(self, httpx_mock, remote: AzureDevOpsAdapter) -> None:  # type: ignore[no-untyped-def]
        """Should POST the bytes and return the attachment URL."""
        httpx_mock.add_response(method="POST", json={"id": GUID, "url": ATTACHMENT_URL})

        reference = remote.upload_object(b"hello", ObjectMetadata("notes.txt", 5))

        assert reference == ATTACHMENT_URL
        request = httpx_mock.get_request()
        assert request.url.path == "/acme/demo/_apis/wit/attachments"
        assert request.url.params["fileName"] == "notes.txt"
        assert request.url.params["api-version"] == "5.1"
        assert request.content == b"hello"
        expected = base64.b64encode(b":pat-1").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"

    def test_upload_without_url_builds_reference(self, httpx_mock, remote: AzureDevOpsAdapter) -> None:  # type: ignore[no-untyped-def]
        """Should derive the reference from the id when no URL is returned."""
        httpx_mock.add_response(method="POST", json={"id": GUID})
        assert remote.upload_object(b"x", ObjectMetadata("x", 1)) == ATTACHMENT_URL

    def test_chunked_upload(self, httpx_mock, remote: AzureDevOpsAdapter) -> None:  # type: ignore[no-untyped-def]
        """Should open a chunked upload and PUT ranged chunks."""
        httpx_mock.add_response(method="POST", json={"id": GUID, "url": ATTACHMENT_URL})
        httpx_mock.add_response(method="PUT", json={"id": GUID})

        upload = remote.begin_chunked_upload(ObjectMetadata("big.bin", 8))
        remote.upload_chunk(upload.token, ByteRange(0, 3, 8), b"abcd")

        assert upload.token == GUID
        assert upload.reference == ATTACHMENT_URL
        begin, chunk = httpx_mock.get_requests()
        assert begin.url.params["uploadType"] == "Chunked"
        assert chunk.method == "PUT"
        assert chunk.url.path.endswith(f"/attachments/{GUID}")
        assert chunk.headers["Content-Range"] == "bytes 0-3/8"
        assert chunk.content == b"abcd"

    def test_chunk_length_mismatch(self, remote: AzureDevOpsAdapter) -> None:
        """Should refuse a chunk whose length differs from its range."""
        with pytest.raises(ValidationError):
            remote.upload_chunk(GUID, ByteRange(0, 3, 8), b"abc")

    def test_rotated_token(self, httpx_mock, remote: AzureDevOpsAdapter, tokens: list[str]) -> None:  # type: ignore[no-untyped-def]
        """Should ask the credential provider on every request."""
        httpx_mock.add_response(method="POST", json={"id": GUID})
        httpx_mock.add_response(method="POST", json={"id": GUID})

        remote.upload_object(b"x", ObjectMetadata("x", 1))
        tokens[0] = "pat-2"
        remote.upload_object(b"x", ObjectMetadata("x", 1))

        first, second = httpx_mock.get_requests()
        assert first.headers["Authorization"] != second.headers["Authorization"]
        assert second.headers["Authorization"] == "Basic " + base64.b64encode(b":pat-2").decode()


class TestLinks:
    """Tests for work item relations."""

    def test_link_object(self, httpx_mock, remote: AzureDevOpsAdapter) -> None:  # type: ignore[no-untyped-def]
        """Should add an AttachedFile relation with a JSON patch."""
        httpx_mock.add_response(method="PATCH", json={"id": 42})

        remote.link_object(42, ATTACHMENT_URL, comment="first draft")

        request = httpx_mock.get_request()
        assert request.url.path.endswith("/workitems/42")
        assert request.headers["Content-Type"] == "application/json-patch+json"
        assert json.loads(request.content) == [
            {
                "op": "add",
                "path": "/relations/-",
                "value": {
                    "rel": "AttachedFile",
                    "url": ATTACHMENT_URL,
                    "attributes": {"comment": "first draft"},
                },
            }
        ]

    def test_list_objects(self, httpx_mock, remote: AzureDevOpsAdapter) -> None:  # type: ignore[no-untyped-def]
        """Should return only AttachedFile relations."""
        httpx_mock.add_response(method="GET", json=_work_item(rev=5))

        objects = remote.list_objects(42)

        assert len(objects) == 1
        assert objects[0].reference == ATTACHMENT_URL
        assert objects[0].file_name == "spec.pdf"
        assert objects[0].size == 1024
        assert objects[0].comment == "v1"
        assert objects[0].revision == 5
        assert httpx_mock.get_request().url.params["$expand"] == "relations"

    def test_list_objects_without_relations(self, httpx_mock, remote: AzureDevOpsAdapter) -> None:  # type: ignore[no-untyped-def]
        """A work item without relations has no attachments."""
        httpx_mock.add_response(method="GET", json={"id": 42, "rev": 1})
        assert remote.list_objects(42) == []

    def test_delete_link(self, httpx_mock, remote: AzureDevOpsAdapter) -> None:  # type: ignore[no-untyped-def]
        """Should remove the matching relation guarded by a revision test."""
        httpx_mock.add_response(method="GET", json=_work_item(rev=3))
        httpx_mock.add_response(method="PATCH", json={"id": 42})

        assert remote.delete_link(42, ATTACHMENT_URL)

        patch = httpx_mock.get_requests()[1]
        assert json.loads(patch.content) == [
            {"op": "test", "path": "/rev", "value": 3},
            {"op": "remove", "path": "/relations/1"},
        ]

    def test_delete_missing_link(self, httpx_mock, remote: AzureDevOpsAdapter) -> None:  # type: ignore[no-untyped-def]
        """Should report False without patching when nothing matches."""
        httpx_mock.add_response(method="GET", json=_work_item())

        assert not remote.delete_link(42, f"{BASE}/attachments/00000000-0000-0000-0000-000000000000")
        assert len(httpx_mock.get_requests()) == 1


class TestDownload:
    """Tests for fetch_object."""

    def test_fetch_object(self, httpx_mock, remote: AzureDevOpsAdapter) -> None:  # type: ignore[no-untyped-def]
        """Should GET the attachment URL with download=true."""
        httpx_mock.add_response(method="GET", content=b"\x00\x01binary")

        assert remote.fetch_object(ATTACHMENT_URL) == b"\x00\x01binary"
        request = httpx_mock.get_request()
        assert request.url.params["download"] == "true"
        assert str(request.url).startswith(ATTACHMENT_URL)

    def test_fetch_by_id(self, httpx_mock, remote: AzureDevOpsAdapter) -> None:  # type: ignore[no-untyped-def]
        """A bare id resolves against the attachments collection."""
        httpx_mock.add_response(method="GET", content=b"data")
        remote.fetch_object(GUID)
        assert httpx_mock.get_request().url.path.endswith(f"/attachments/{GUID}")


class TestErrors:
    """Tests for status and transport error mapping."""

    @pytest.mark.parametrize(
        ("status", "error"),
        [
            (400, ValidationError),
            (401, AuthError),
            (403, AuthError),
            (404, NotFoundError),
            (409, ConflictError),
            (412, ConflictError),
            (429, RateLimitError),
            (408, TransientNetworkError),
            (503, TransientNetworkError),
            (418, SyncError),
        ],
    )
    def test_status_mapping(self, httpx_mock, remote: AzureDevOpsAdapter, status: int, error: type[SyncError]) -> None:  # type: ignore[no-untyped-def]
        """Each error status maps to a typed sync error."""
        httpx_mock.add_response(status_code=status, json={"message": "nope"})

        with pytest.raises(error) as exc_info:
            remote.fetch_object(ATTACHMENT_URL)

        assert exc_info.value.status_code == status

    def test_retry_after(self, httpx_mock, remote: AzureDevOpsAdapter) -> None:  # type: ignore[no-untyped-def]
        """Rate-limit errors carry the Retry-After delay."""
        httpx_mock.add_response(status_code=429, headers={"Retry-After": "30"}, text="throttled")

        with pytest.raises(RateLimitError) as exc_info:
            remote.list_objects(42)

        assert exc_info.value.retry_after == 30.0
        assert exc_info.value.retryable

    def test_timeout(self, httpx_mock, remote: AzureDevOpsAdapter) -> None:  # type: ignore[no-untyped-def]
        """Timeouts become transient network errors."""
        httpx_mock.add_exception(httpx.ReadTimeout("slow"))
        with pytest.raises(TransientNetworkError):
            remote.list_objects(42)

    def test_connection_error(self, httpx_mock, remote: AzureDevOpsAdapter) -> None:  # type: ignore[no-untyped-def]
        """Transport failures become transient network errors."""
        httpx_mock.add_exception(httpx.ConnectError("refused"))
        with pytest.raises(TransientNetworkError):
            remote.fetch_object(ATTACHMENT_URL)


class TestExtractAttachmentId:
    """Tests for extract_attachment_id."""

    def test_from_url(self) -> None:
        """Should pull the GUID out of an attachment URL."""
        assert extract_attachment_id(f"{ATTACHMENT_URL}?fileName=a.txt") == GUID

    def test_fallback(self) -> None:
        """Should fall back to the last path segment."""
        assert extract_attachment_id("https://host/files/abc/") == "abc"
