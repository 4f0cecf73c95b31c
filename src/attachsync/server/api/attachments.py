"""Attachment, work item and job API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from starlette.concurrency import run_in_threadpool

from attachsync.server.api.deps import get_engine, require_api_key
from attachsync.server.schemas import (
    AttachmentResponse,
    DedupResponse,
    JobResponse,
    LinkRequest,
    ReconcileResponse,
    StatusResponse,
    attachment_to_response,
    dedup_to_response,
    event_to_response,
    job_to_response,
)
from attachsync.sync.orchestrator import SyncOrchestrator

router = APIRouter(prefix="/api", tags=["attachments"], dependencies=[Depends(require_api_key)])


# === Work items ===


@router.post(
    "/work-items/{work_item_id}/attachments",
    response_model=AttachmentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_attachment(
    work_item_id: int,
    request: Request,
    file_name: str = Query(..., min_length=1),
    comment: str | None = None,
    engine: SyncOrchestrator = Depends(get_engine),
) -> AttachmentResponse:
    """Upload a file (raw request body) and link it to a work item."""
    data = await request.body()
    if not data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Empty attachment content",
        )
    mime_type = request.headers.get("content-type")
    record = await run_in_threadpool(
        engine.upload_and_link, work_item_id, file_name, data, mime_type, comment
    )
    return attachment_to_response(record)


@router.get("/work-items/{work_item_id}/attachments", response_model=list[AttachmentResponse])
def list_attachments(
    work_item_id: int,
    include_deleted: bool = False,
    engine: SyncOrchestrator = Depends(get_engine),
) -> list[AttachmentResponse]:
    """List attachment records of a work item."""
    records = engine.list_attachments(work_item_id, include_deleted=include_deleted)
    return [attachment_to_response(r) for r in records]


@router.get("/work-items/{work_item_id}/status", response_model=StatusResponse)
def work_item_status(
    work_item_id: int,
    engine: SyncOrchestrator = Depends(get_engine),
) -> StatusResponse:
    """Get the sync state of a work item."""
    summary = engine.status(work_item_id)
    last_modified = summary["last_modified"]
    return StatusResponse(
        work_item_id=work_item_id,
        total_attachments=summary["total_attachments"],
        counts=summary["counts"],
        total_size_bytes=summary["total_size_bytes"],
        last_modified=last_modified.isoformat() if last_modified else None,
        recent_jobs=[job_to_response(j) for j in summary["recent_jobs"]],
        recent_events=[event_to_response(e) for e in summary["recent_events"]],
        unlinked=[attachment_to_response(r) for r in summary["unlinked"]],
    )


@router.post(
    "/work-items/{work_item_id}/sync",
    response_model=list[JobResponse],
    status_code=status.HTTP_202_ACCEPTED,
)
def force_sync(
    work_item_id: int,
    engine: SyncOrchestrator = Depends(get_engine),
) -> list[JobResponse]:
    """Queue every job needed to bring a work item back in sync."""
    return [job_to_response(j) for j in engine.force_sync(work_item_id)]


@router.post("/work-items/{work_item_id}/reconcile", response_model=ReconcileResponse)
def reconcile(
    work_item_id: int,
    engine: SyncOrchestrator = Depends(get_engine),
) -> ReconcileResponse:
    """Diff remote attachments of a work item against local records."""
    result = engine.reconcile_from_remote(work_item_id)
    return ReconcileResponse(
        work_item_id=result.work_item_id,
        remote_count=result.remote_count,
        created=result.created,
        deletions=result.deletions,
    )


# === Attachments ===


@router.get("/attachments/unlinked", response_model=list[AttachmentResponse])
def list_unlinked(
    work_item_id: int | None = None,
    engine: SyncOrchestrator = Depends(get_engine),
) -> list[AttachmentResponse]:
    """List uploaded attachments whose link failed."""
    return [attachment_to_response(r) for r in engine.list_unlinked(work_item_id)]


@router.get("/attachments/{attachment_id}", response_model=AttachmentResponse)
def get_attachment(
    attachment_id: str,
    engine: SyncOrchestrator = Depends(get_engine),
) -> AttachmentResponse:
    """Get an attachment record."""
    return attachment_to_response(engine.get_attachment(attachment_id))


@router.get("/attachments/{attachment_id}/content")
def download_content(
    attachment_id: str,
    engine: SyncOrchestrator = Depends(get_engine),
) -> Response:
    """Download the locally stored content of an attachment."""
    record = engine.get_attachment(attachment_id)
    data = engine.read_content(attachment_id)
    return Response(
        content=data,
        media_type=record.mime_type or "application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{record.file_name}"'},
    )


@router.post(
    "/attachments/{attachment_id}/link",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def link_attachment(
    attachment_id: str,
    body: LinkRequest | None = None,
    engine: SyncOrchestrator = Depends(get_engine),
) -> JobResponse:
    """Queue a link of an uploaded attachment to its work item."""
    comment = body.comment if body else None
    return job_to_response(engine.link(attachment_id, comment=comment))


@router.post(
    "/attachments/{attachment_id}/unlink",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def unlink_attachment(
    attachment_id: str,
    engine: SyncOrchestrator = Depends(get_engine),
) -> JobResponse:
    """Queue removal of an attachment's link."""
    return job_to_response(engine.unlink(attachment_id))


@router.delete(
    "/attachments/{attachment_id}",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def delete_attachment(
    attachment_id: str,
    engine: SyncOrchestrator = Depends(get_engine),
) -> JobResponse:
    """Queue deletion of an attachment."""
    return job_to_response(engine.delete(attachment_id))


# === Dedup and jobs ===


@router.get("/dedup/{content_hash}", response_model=DedupResponse)
def check_dedup(
    content_hash: str,
    work_item_id: int,
    engine: SyncOrchestrator = Depends(get_engine),
) -> DedupResponse:
    """Look up the dedup entry a new upload to a work item would reuse."""
    entry = engine.check_dedup(content_hash, work_item_id)
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No dedup entry for {content_hash}",
        )
    return dedup_to_response(entry)


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(
    job_id: int,
    engine: SyncOrchestrator = Depends(get_engine),
) -> JobResponse:
    """Get a sync job."""
    job = engine.queue.get(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job not found: {job_id}",
        )
    return job_to_response(job)
