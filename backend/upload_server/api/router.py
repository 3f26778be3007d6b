from __future__ import annotations

from fastapi import APIRouter

from upload_server.api.routes import files, uploads

api_router = APIRouter()
api_router.include_router(uploads.router)
api_router.include_router(files.router)
