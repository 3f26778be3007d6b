from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request, status

from upload_server.api import deps
from upload_server.schemas.file import FileListResponse, StoredFileResponse

router = APIRouter(prefix="/files", tags=["files"])


@router.get("/", response_model=FileListResponse)
async def list_files(service: deps.UploadServiceDep) -> FileListResponse:
    files = await service.list_completed_files()
    return FileListResponse(files=[StoredFileResponse.model_validate(item) for item in files])


@router.get("/{filename}", response_model=StoredFileResponse)
async def get_file_metadata(filename: str, service: deps.UploadServiceDep) -> StoredFileResponse:
    if not await service.merge_status(filename):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    return StoredFileResponse.model_validate(await service.files.stat(filename))


@router.put("/{filename}", response_model=StoredFileResponse, status_code=status.HTTP_201_CREATED)
async def upload_whole_file(filename: str, request: Request, service: deps.UploadServiceDep) -> StoredFileResponse:
    """Single-request upload for files small enough not to need chunking."""
    raw_data = await request.body()
    stored = await service.store_file(filename, raw_data)
    return StoredFileResponse.model_validate(stored)
