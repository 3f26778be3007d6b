"""Shared fixtures: isolated storage roots, a throwaway SQLite database and an API client."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from upload_server.api.deps import get_upload_service
from upload_server.db.base import Base
from upload_server.db.session import get_db_session
from upload_server.main import create_application
from upload_server.services.merge import MergeEngine
from upload_server.services.storage import ChunkStore, FinalStore
from upload_server.services.tracker import SessionTracker
from upload_server.services.uploads import UploadService


class SqliteDatabase:
    """File-backed SQLite; NullPool keeps connections from outliving the loop that opened them."""

    def __init__(self, path: Path) -> None:
        self.engine = create_async_engine(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)
        self.factory = async_sessionmaker(self.engine, expire_on_commit=False, class_=AsyncSession)

    async def create_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        await self.create_tables()
        async with self.factory() as session:
            yield session


@pytest.fixture
def storage_root(tmp_path: Path) -> Path:
    root = tmp_path / "Storage"
    root.mkdir()
    return root


@pytest.fixture
def chunk_store(storage_root: Path) -> ChunkStore:
    store = ChunkStore(storage_root / "temp")
    store.ensure_dirs()
    return store


@pytest.fixture
def final_store(storage_root: Path) -> FinalStore:
    store = FinalStore(storage_root / "files", storage_root / "staging")
    store.ensure_dirs()
    return store


@pytest.fixture
def tracker(chunk_store: ChunkStore) -> SessionTracker:
    return SessionTracker(chunk_store)


@pytest.fixture
def merge_engine(chunk_store: ChunkStore, final_store: FinalStore) -> MergeEngine:
    # tiny blocks so every chunk is streamed in several pieces
    return MergeEngine(chunk_store, final_store, block_size=2)


@pytest.fixture
def upload_service(
    chunk_store: ChunkStore,
    tracker: SessionTracker,
    merge_engine: MergeEngine,
    final_store: FinalStore,
) -> UploadService:
    return UploadService(chunk_store, tracker, merge_engine, final_store)


@pytest.fixture
def database(storage_root: Path) -> SqliteDatabase:
    return SqliteDatabase(storage_root / "test.db")


@pytest.fixture
def client(upload_service: UploadService, database: SqliteDatabase) -> Iterator[TestClient]:
    app = create_application()

    async def override_get_db() -> AsyncIterator[AsyncSession]:
        async with database.session() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_upload_service] = lambda: upload_service

    # Not entered as a context manager: startup hooks would touch the configured storage root.
    yield TestClient(app)

    app.dependency_overrides.clear()
