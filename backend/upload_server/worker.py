from __future__ import annotations

import asyncio
import logging

from celery import Celery

from upload_server.core.config import settings
from upload_server.db.session import async_session_factory
from upload_server.services.errors import UploadError
from upload_server.services.uploads import upload_service

logger = logging.getLogger(__name__)

celery_app = Celery(
    "upload_server",
    broker=settings.celery_broker,
    backend=settings.celery_backend,
)
celery_app.conf.update(task_serializer="json", result_serializer="json", accept_content=["json"])


async def _merge_upload(session_id: str) -> dict[str, object]:
    async with async_session_factory() as db:
        try:
            result = await upload_service.run_merge(db, session_id)
        except UploadError as exc:
            logger.error("Background merge of session %s failed: %s", session_id, exc.message)
            return {"session_id": session_id, "merged": False, **exc.to_dict()}
        return {
            "session_id": session_id,
            "merged": True,
            "filename": result.filename,
            "size": result.size,
        }


@celery_app.task(name="merge_upload")
def merge_upload_task(session_id: str) -> dict[str, object]:
    return asyncio.run(_merge_upload(session_id))
