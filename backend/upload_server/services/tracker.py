from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime

from upload_server.services.storage import ChunkStore, chunk_store


@dataclass(frozen=True)
class UploadProgress:
    uploaded_bytes: int
    percent: int
    chunk_count: int


@dataclass(frozen=True)
class ChunkSessionSummary:
    session_id: str
    chunk_count: int
    uploaded_bytes: int
    last_modified: datetime


def progress_percent(uploaded_bytes: int, declared_total_size: int | None) -> int:
    """Rounded half-up and clamped to 0..100. A missing or empty declared size reads as 0."""
    if not declared_total_size or declared_total_size <= 0:
        return 0
    percent = math.floor(uploaded_bytes * 100 / declared_total_size + 0.5)
    return max(0, min(100, percent))


class SessionTracker:
    def __init__(self, store: ChunkStore) -> None:
        self._store = store

    async def next_expected(self, session_id: str) -> int:
        """Lowest index not yet stored, so a resuming client restarts at the first hole."""
        expected = 0
        for index in await self._store.list(session_id):
            if index != expected:
                break
            expected += 1
        return expected

    async def progress(self, session_id: str, declared_total_size: int | None) -> UploadProgress:
        sizes = await self._store.chunk_sizes(session_id)
        uploaded = sum(sizes.values())
        return UploadProgress(
            uploaded_bytes=uploaded,
            percent=progress_percent(uploaded, declared_total_size),
            chunk_count=len(sizes),
        )

    async def list_all_partial(self) -> list[ChunkSessionSummary]:
        summaries: list[ChunkSessionSummary] = []
        for session_id in await self._store.list_sessions():
            chunks = await self._store.describe(session_id)
            if not chunks:
                continue
            summaries.append(
                ChunkSessionSummary(
                    session_id=session_id,
                    chunk_count=len(chunks),
                    uploaded_bytes=sum(chunk.size for chunk in chunks),
                    last_modified=max(chunk.modified_time for chunk in chunks),
                )
            )
        return summaries


session_tracker = SessionTracker(chunk_store)
