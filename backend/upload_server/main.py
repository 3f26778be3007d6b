from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from upload_server.api.router import api_router
from upload_server.core.config import settings
from upload_server.core.logging import configure_logging
from upload_server.db.base import Base
from upload_server.db.session import async_session_factory, engine
from upload_server.services.errors import UploadError
from upload_server.services.storage import ensure_base_dirs
from upload_server.services.uploads import upload_service

logger = logging.getLogger(__name__)


async def handle_upload_error(request: Request, exc: UploadError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_application() -> FastAPI:
    configure_logging(settings.log_level)
    app = FastAPI(title=settings.project_name)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(UploadError, handle_upload_error)

    @app.on_event("startup")
    async def startup_event() -> None:  # noqa: D401
        ensure_base_dirs()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with async_session_factory() as session:
            await upload_service.recover_interrupted_merges(session)
        logger.info("Storage directories ensured under %s", settings.storage_root)

    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_application()
