from __future__ import annotations

import asyncio
import logging
import os
from contextlib import aclosing
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from upload_server.core.config import settings
from upload_server.services.errors import InvalidRequestError, MergeInProgressError, MissingChunkError, StorageIOError
from upload_server.services.storage import ChunkStore, FinalStore, chunk_store, final_store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeResult:
    session_id: str
    filename: str
    path: Path
    size: int
    chunk_count: int


def _close_durably(handle: BinaryIO) -> None:
    try:
        handle.flush()
        os.fsync(handle.fileno())
    finally:
        handle.close()


class MergeEngine:
    """Concatenates a session's chunks, in index order, into one committed file.

    Every index is checked for presence before anything is consumed, so a
    missing chunk aborts with all stored chunks intact and the client resumes
    by sending the hole and then the final chunk again. Once the walk starts,
    each chunk is deleted as soon as its bytes are in the output; an I/O
    failure part way through keeps only the chunks not yet reached. Output is
    staged outside the completed area and renamed into place, so a
    half-written file is never visible under its target name.
    """

    def __init__(self, chunks: ChunkStore, files: FinalStore, block_size: int | None = None) -> None:
        self._chunks = chunks
        self._files = files
        self._block_size = block_size or settings.copy_block_size
        self._active: set[str] = set()

    def is_merging(self, session_id: str) -> bool:
        return session_id in self._active

    async def merge(self, session_id: str, target_filename: str, total_chunks: int) -> MergeResult:
        if isinstance(total_chunks, bool) or not isinstance(total_chunks, int) or total_chunks <= 0:
            raise InvalidRequestError(f"total_chunks must be a positive integer, got {total_chunks!r}")
        self._chunks.session_dir(session_id)
        self._files.path_for(target_filename)

        # check-and-add happens without a suspension point in between
        if session_id in self._active:
            raise MergeInProgressError(session_id)
        self._active.add(session_id)
        try:
            return await self._merge(session_id, target_filename, total_chunks)
        finally:
            self._active.discard(session_id)

    async def _merge(self, session_id: str, target_filename: str, total_chunks: int) -> MergeResult:
        logger.info(
            "Merging %d chunks of session %s into %s", total_chunks, session_id, target_filename
        )
        present = set(await self._chunks.list(session_id))
        for index in range(total_chunks):
            if index not in present:
                logger.error("Cannot merge session %s: chunk %d is missing", session_id, index)
                raise MissingChunkError(index)

        try:
            staged = self._files.new_staging_path()
            handle = await asyncio.to_thread(open, staged, "wb")
        except OSError as exc:
            logger.error("Cannot open merge output for session %s: %s", session_id, exc)
            raise StorageIOError(f"Could not open merge output for {target_filename}") from exc

        byte_count = 0
        try:
            for index in range(total_chunks):
                if not await self._chunks.exists(session_id, index):
                    raise MissingChunkError(index)
                byte_count += await self._append(session_id, index, handle)
                await self._chunks.remove(session_id, index)
            await asyncio.to_thread(_close_durably, handle)
            path = await self._files.commit(staged, target_filename)
        except MissingChunkError as exc:
            logger.error("Aborting merge of session %s: chunk %d is missing", session_id, exc.index)
            await self._abort(handle, staged)
            raise
        except OSError as exc:
            logger.error("Aborting merge of session %s: %s", session_id, exc)
            await self._abort(handle, staged)
            raise StorageIOError(f"I/O failure while merging {target_filename}: {exc}") from exc
        except BaseException:
            await self._abort(handle, staged)
            raise

        await self._chunks.purge_session(session_id)
        logger.info("Merged session %s into %s (%d bytes)", session_id, path, byte_count)
        return MergeResult(
            session_id=session_id,
            filename=target_filename,
            path=path,
            size=byte_count,
            chunk_count=total_chunks,
        )

    async def _append(self, session_id: str, index: int, handle: BinaryIO) -> int:
        written = 0
        async with aclosing(self._chunks.stream(session_id, index, self._block_size)) as blocks:
            async for block in blocks:
                await asyncio.to_thread(handle.write, block)
                written += len(block)
        logger.debug("Appended chunk %d of session %s (%d bytes)", index, session_id, written)
        return written

    async def _abort(self, handle: BinaryIO, staged: Path) -> None:
        if not handle.closed:
            try:
                await asyncio.to_thread(handle.close)
            except OSError as exc:
                logger.warning("Failed to close merge output %s: %s", staged, exc)
        await self._files.discard(staged)


merge_engine = MergeEngine(chunk_store, final_store)
