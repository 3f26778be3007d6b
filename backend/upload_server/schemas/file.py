from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class StoredFileResponse(BaseModel):
    name: str
    size: int
    modified_time: datetime

    class Config:
        from_attributes = True


class FileListResponse(BaseModel):
    files: list[StoredFileResponse]
