"""Azure DevOps / TFS implementation of the remote sync adapter.

Uses the work item tracking REST API:
- POST   _apis/wit/attachments?fileName=...               single upload
- POST   _apis/wit/attachments?uploadType=Chunked         open chunked upload
- PUT    _apis/wit/attachments/{id}  (Content-Range)      send one chunk
- GET    _apis/wit/workitems/{id}?$expand=relations       list links
- PATCH  _apis/wit/workitems/{id}  (JSON patch)           add/remove links
- GET    <attachment url>?download=true                   fetch content
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Any

import httpx

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
from attachsync.remote.adapter import (
    ChunkedUpload,
    ObjectMetadata,
    RemoteObject,
    RemoteSyncAdapter,
)

logger = logging.getLogger(__name__)

ATTACHED_FILE_REL = "AttachedFile"
JSON_PATCH = "application/json-patch+json"
OCTET_STREAM = "application/octet-stream"

_GUID_RE = re.compile(r"attachments/([0-9a-f-]+)", re.IGNORECASE)


def extract_attachment_id(reference: str) -> str:
    """Return the attachment GUID embedded in an attachment URL."""
    match = _GUID_RE.search(reference)
    if match:
        return match.group(1)
    return reference.rstrip("/").rsplit("/", 1)[-1]


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("message") or body.get("detail") or body)
    return str(body)


def raise_for_status(response: httpx.Response) -> httpx.Response:
    """Translate an error response into a typed sync error.

    Raises:
        ValidationError: 400, 422.
        AuthError: 401, 403.
        NotFoundError: 404.
        ConflictError: 409, 412.
        RateLimitError: 429 (carries Retry-After).
        TransientNetworkError: 408 and 5xx.
        SyncError: Any other error status.
    """
    status = response.status_code
    if status < 400:
        return response

    detail = _detail(response)
    if status in (400, 422):
        raise ValidationError(detail, status)
    if status in (401, 403):
        raise AuthError(f"Remote rejected credentials: {detail}", status)
    if status == 404:
        raise NotFoundError(detail, status)
    if status in (409, 412):
        raise ConflictError(detail, status)
    if status == 429:
        raise RateLimitError(detail, status, retry_after=_retry_after(response))
    if status == 408 or status >= 500:
        raise TransientNetworkError(f"Remote error {status}: {detail}", status)
    raise SyncError(f"Unexpected remote status {status}: {detail}", status)


class AzureDevOpsAdapter(RemoteSyncAdapter):
    """Remote sync adapter for Azure DevOps Services and TFS collections."""

    def __init__(
        self,
        org_url: str,
        project: str,
        credential_provider: Callable[[], str],
        api_version: str = "5.1",
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            org_url: Organization or collection URL.
            project: Project name.
            credential_provider: Returns the personal access token; called
                for every request so rotated tokens take effect immediately.
            api_version: REST API version.
            timeout: Timeout in seconds for every request.
            transport: Optional httpx transport (tests).
        """
        self._org_url = org_url.rstrip("/")
        self._project = project
        self._credential_provider = credential_provider
        self._api_version = api_version
        self._client = httpx.Client(
            base_url=f"{self._org_url}/{project}/_apis/wit/",
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> AzureDevOpsAdapter:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send an authenticated request and classify failures."""
        query = {"api-version": self._api_version}
        if params:
            query.update(params)
        auth = httpx.BasicAuth("", self._credential_provider())
        try:
            response = self._client.request(method, url, params=query, auth=auth, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Timeout calling remote: {method} {url}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Transport error calling remote: {e}") from e
        return raise_for_status(response)

    def _attachment_url(self, attachment_id: str) -> str:
        return f"{self._org_url}/{self._project}/_apis/wit/attachments/{attachment_id}"

    # === Upload ===

    def upload_object(self, data: bytes, metadata: ObjectMetadata) -> str:
        """Upload content in one request."""
        response = self._request(
            "POST",
            "attachments",
            params={"fileName": metadata.file_name},
            content=data,
            headers={"Content-Type": OCTET_STREAM},
        )
        body = response.json()
        logger.info("Uploaded %s (%d bytes) as %s", metadata.file_name, len(data), body.get("id"))
        return body.get("url") or self._attachment_url(body["id"])

    def begin_chunked_upload(self, metadata: ObjectMetadata) -> ChunkedUpload:
        """Open a chunked upload."""
        response = self._request(
            "POST",
            "attachments",
            params={"fileName": metadata.file_name, "uploadType": "Chunked"},
            content=b"",
            headers={"Content-Type": OCTET_STREAM},
        )
        body = response.json()
        attachment_id = body["id"]
        logger.info(
            "Opened chunked upload %s for %s (%d bytes)",
            attachment_id,
            metadata.file_name,
            metadata.size,
        )
        return ChunkedUpload(
            token=attachment_id,
            reference=body.get("url") or self._attachment_url(attachment_id),
        )

    def upload_chunk(self, token: str, byte_range: ByteRange, data: bytes) -> None:
        """Send one chunk with its Content-Range header."""
        if len(data) != byte_range.length:
            raise ValidationError(
                f"Chunk length {len(data)} does not match range {byte_range.to_header()}"
            )
        self._request(
            "PUT",
            f"attachments/{token}",
            content=data,
            headers={"Content-Type": OCTET_STREAM, "Content-Range": byte_range.to_header()},
        )
        logger.debug("Uploaded chunk %s of %s", byte_range.to_header(), token)

    # === Links ===

    def _get_work_item(self, work_item_id: int) -> dict[str, Any]:
        response = self._request(
            "GET", f"workitems/{work_item_id}", params={"$expand": "relations"}
        )
        return response.json()

    def link_object(self, work_item_id: int, reference: str, comment: str | None = None) -> None:
        """Add an AttachedFile relation to the work item."""
        value: dict[str, Any] = {"rel": ATTACHED_FILE_REL, "url": reference}
        if comment:
            value["attributes"] = {"comment": comment}
        self._request(
            "PATCH",
            f"workitems/{work_item_id}",
            json=[{"op": "add", "path": "/relations/-", "value": value}],
            headers={"Content-Type": JSON_PATCH},
        )
        logger.info("Linked %s to work item %d", extract_attachment_id(reference), work_item_id)

    def list_objects(self, work_item_id: int) -> list[RemoteObject]:
        """List AttachedFile relations of the work item."""
        work_item = self._get_work_item(work_item_id)
        revision = work_item.get("rev")
        objects = []
        for relation in work_item.get("relations") or []:
            if relation.get("rel") != ATTACHED_FILE_REL:
                continue
            attributes = relation.get("attributes") or {}
            size = attributes.get("resourceSize")
            objects.append(
                RemoteObject(
                    reference=relation["url"],
                    file_name=attributes.get("name") or "attachment",
                    size=int(size) if size is not None else None,
                    comment=attributes.get("comment") or None,
                    revision=revision,
                )
            )
        logger.debug("Work item %d has %d attachments", work_item_id, len(objects))
        return objects

    def delete_link(self, work_item_id: int, reference: str) -> bool:
        """Remove the AttachedFile relation pointing at reference.

        The patch is guarded by a revision test so a concurrent edit surfaces
        as a conflict instead of removing the wrong relation.
        """
        work_item = self._get_work_item(work_item_id)
        target = extract_attachment_id(reference)
        for index, relation in enumerate(work_item.get("relations") or []):
            if relation.get("rel") != ATTACHED_FILE_REL:
                continue
            if extract_attachment_id(relation.get("url", "")) != target:
                continue
            self._request(
                "PATCH",
                f"workitems/{work_item_id}",
                json=[
                    {"op": "test", "path": "/rev", "value": work_item.get("rev")},
                    {"op": "remove", "path": f"/relations/{index}"},
                ],
                headers={"Content-Type": JSON_PATCH},
            )
            logger.info("Unlinked %s from work item %d", target, work_item_id)
            return True
        return False

    # === Download ===

    def fetch_object(self, reference: str) -> bytes:
        """Download attachment content."""
        url = reference if reference.startswith(("http://", "https://")) else (
            f"attachments/{reference}"
        )
        response = self._request("GET", url, params={"download": "true"})
        return response.content
