from __future__ import annotations

import logging
from urllib.parse import unquote

from fastapi import APIRouter, Header, HTTPException, Query, Request, Response, status

from upload_server.api import deps
from upload_server.core.config import settings
from upload_server.schemas.file import StoredFileResponse
from upload_server.schemas.upload import (
    ChunkReceivedResponse,
    MergeStatusResponse,
    NextChunkResponse,
    PartialUploadListResponse,
    PartialUploadResponse,
    SessionStatusResponse,
)
from upload_server.worker import merge_upload_task

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/upload", tags=["upload"])


@router.put("/sessions/{session_id}/chunks/{chunk_index}", response_model=ChunkReceivedResponse)
async def upload_chunk(
    session_id: str,
    chunk_index: int,
    request: Request,
    db: deps.DatabaseSessionDep,
    service: deps.UploadServiceDep,
    x_total_chunks: int = Header(),
    x_file_name: str = Header(),
    x_file_size: int | None = Header(default=None),
) -> ChunkReceivedResponse:
    declared_length = request.headers.get("content-length")
    if declared_length is not None and declared_length.isdigit() and int(declared_length) > settings.max_chunk_size:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Chunk too large")

    raw_data = await request.body()
    if len(raw_data) > settings.max_chunk_size:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Chunk too large")

    merge_inline = not settings.merge_in_background
    receipt = await service.receive_chunk(
        db,
        session_id=session_id,
        chunk_index=chunk_index,
        total_chunks=x_total_chunks,
        filename=unquote(x_file_name),
        payload=raw_data,
        declared_total_size=x_file_size,
        merge=merge_inline,
    )

    response = ChunkReceivedResponse(session_id=session_id, chunk_index=chunk_index, size=receipt.size)
    if receipt.merge_result is not None:
        response.merged = True
        response.file = StoredFileResponse.model_validate(await service.files.stat(receipt.merge_result.filename))
    elif receipt.merge_claimed:
        try:
            merge_upload_task.delay(session_id)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Could not queue merge for session %s", session_id)
            await service.mark_failed(db, session_id, f"Could not queue merge: {exc}")
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Merge queue unavailable") from exc
        response.merge_queued = True
    return response


@router.get("/sessions/{session_id}", response_model=SessionStatusResponse)
async def get_session_status(
    session_id: str,
    db: deps.DatabaseSessionDep,
    service: deps.UploadServiceDep,
) -> SessionStatusResponse:
    state = await service.describe_session(db, session_id)
    return SessionStatusResponse(
        session_id=state.session_id,
        filename=state.filename,
        total_chunks=state.total_chunks,
        status=state.status,
        last_error=state.last_error,
        received=state.received,
        next_chunk=state.next_chunk,
        uploaded_size=state.progress.uploaded_bytes,
        percent=state.progress.percent,
        chunk_count=state.progress.chunk_count,
    )


@router.get("/sessions/{session_id}/next-chunk", response_model=NextChunkResponse)
async def get_next_chunk(session_id: str, service: deps.UploadServiceDep) -> NextChunkResponse:
    return NextChunkResponse(session_id=session_id, next_chunk=await service.next_chunk(session_id))


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def purge_session(
    session_id: str,
    db: deps.DatabaseSessionDep,
    service: deps.UploadServiceDep,
) -> Response:
    await service.purge_upload(db, session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/merge-status", response_model=MergeStatusResponse)
async def get_merge_status(
    service: deps.UploadServiceDep,
    filename: str = Query(min_length=1),
) -> MergeStatusResponse:
    return MergeStatusResponse(filename=filename, merged=await service.merge_status(filename))


@router.get("/partial", response_model=PartialUploadListResponse)
async def list_partial_uploads(
    db: deps.DatabaseSessionDep,
    service: deps.UploadServiceDep,
) -> PartialUploadListResponse:
    uploads = await service.list_partial_uploads(db)
    return PartialUploadListResponse(uploads=[PartialUploadResponse.model_validate(upload, from_attributes=True) for upload in uploads])
