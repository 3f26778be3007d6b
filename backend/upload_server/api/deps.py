from __future__ import annotations

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from upload_server.db.session import get_db_session
from upload_server.services.uploads import UploadService, upload_service


def get_upload_service() -> UploadService:
    return upload_service


DatabaseSessionDep = Annotated[AsyncSession, Depends(get_db_session)]
UploadServiceDep = Annotated[UploadService, Depends(get_upload_service)]
