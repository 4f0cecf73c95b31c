"""Chunked upload session API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from starlette.concurrency import run_in_threadpool

from attachsync.server.api.deps import get_engine, require_api_key
from attachsync.server.schemas import (
    AttachmentResponse,
    SessionResponse,
    SessionStartRequest,
    attachment_to_response,
)
from attachsync.sync.orchestrator import SyncOrchestrator

router = APIRouter(prefix="/api/uploads", tags=["uploads"], dependencies=[Depends(require_api_key)])


def _progress(engine: SyncOrchestrator, session_id: str) -> SessionResponse:
    progress = engine.sessions.session_status(session_id)
    data = progress.to_dict()
    data["expires_at"] = progress.expires_at.isoformat()
    return SessionResponse(**data)


@router.post("", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
def start_session(
    request: SessionStartRequest,
    engine: SyncOrchestrator = Depends(get_engine),
) -> SessionResponse:
    """Open a chunked upload session."""
    upload = engine.sessions.start_session(
        request.work_item_id,
        request.file_name,
        request.total_size,
        chunk_size=request.chunk_size,
        mime_type=request.mime_type,
        link=request.link,
        comment=request.comment,
    )
    return _progress(engine, upload.session_id)


@router.put("/{session_id}", response_model=SessionResponse)
async def put_chunk(
    session_id: str,
    request: Request,
    content_range: str = Header(..., alias="Content-Range"),
    engine: SyncOrchestrator = Depends(get_engine),
) -> SessionResponse:
    """Upload one chunk; the session finalizes when the last chunk arrives."""
    data = await request.body()
    if not data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Empty chunk data",
        )
    await run_in_threadpool(engine.sessions.put_chunk, session_id, content_range, data)
    return _progress(engine, session_id)


@router.post("/{session_id}/finalize", response_model=AttachmentResponse)
async def finalize_session(
    session_id: str,
    engine: SyncOrchestrator = Depends(get_engine),
) -> AttachmentResponse:
    """Finalize a complete session (retry after a failed transfer)."""
    record = await run_in_threadpool(engine.sessions.finalize, session_id)
    return attachment_to_response(record)


@router.get("/{session_id}", response_model=SessionResponse)
def get_session(
    session_id: str,
    engine: SyncOrchestrator = Depends(get_engine),
) -> SessionResponse:
    """Get progress of an upload session."""
    return _progress(engine, session_id)


@router.delete("/{session_id}")
def cancel_session(
    session_id: str,
    engine: SyncOrchestrator = Depends(get_engine),
) -> Response:
    """Cancel an upload session and drop its staged chunks."""
    if engine.sessions.cancel(session_id):
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Upload session not found: {session_id}",
    )
