from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import BaseModel

from upload_server.models.upload import UploadStatus
from upload_server.schemas.file import StoredFileResponse


class ChunkReceivedResponse(BaseModel):
    session_id: str
    chunk_index: int
    size: int
    merged: bool = False
    merge_queued: bool = False
    file: StoredFileResponse | None = None


class NextChunkResponse(BaseModel):
    session_id: str
    next_chunk: int


class MergeStatusResponse(BaseModel):
    filename: str
    merged: bool


class PartialUploadResponse(BaseModel):
    session_id: str
    name: str
    total_size: int | None
    uploaded_size: int
    percent: int
    chunk_count: int
    total_chunks: int | None = None
    status: UploadStatus | None = None
    last_modified: datetime


class PartialUploadListResponse(BaseModel):
    uploads: List[PartialUploadResponse]


class SessionStatusResponse(BaseModel):
    session_id: str
    filename: str | None
    total_chunks: int | None
    status: UploadStatus | None
    last_error: str | None = None
    received: List[int]
    next_chunk: int
    uploaded_size: int
    percent: int
    chunk_count: int
