from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator

from upload_server.core.config import settings
from upload_server.services.errors import InvalidRequestError, MissingChunkError, StorageIOError

logger = logging.getLogger(__name__)

CHUNK_NAME = re.compile(r"chunk_(\d+)\.part")
MAX_NAME_LENGTH = 255


def validate_path_component(value: str, what: str) -> str:
    """Reject anything that could escape its storage area or is not a single name."""
    if not isinstance(value, str) or not value:
        raise InvalidRequestError(f"{what} must be a non-empty string")
    if len(value) > MAX_NAME_LENGTH:
        raise InvalidRequestError(f"{what} is longer than {MAX_NAME_LENGTH} characters")
    if value in {".", ".."} or any(sep in value for sep in ("/", "\\", "\x00")):
        raise InvalidRequestError(f"Invalid {what}: {value!r}")
    return value


def validate_chunk_index(index: int) -> int:
    if isinstance(index, bool) or not isinstance(index, int) or index < 0:
        raise InvalidRequestError(f"Invalid chunk index: {index!r}")
    return index


def _write_durably(path: Path, data: bytes) -> None:
    # Unique sibling name so concurrent retries of one index never share a temp file.
    tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        with open(tmp_path, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _mtime(stat: os.stat_result) -> datetime:
    return datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)


@dataclass(frozen=True)
class ChunkInfo:
    index: int
    size: int
    modified_time: datetime


@dataclass(frozen=True)
class StoredFileInfo:
    name: str
    size: int
    modified_time: datetime


class ChunkStore:
    """Chunk blobs, one directory per upload session under the temporary area."""

    def __init__(self, tmp_dir: Path | None = None) -> None:
        self._tmp_dir = Path(tmp_dir) if tmp_dir is not None else settings.tmp_dir

    @property
    def tmp_dir(self) -> Path:
        return self._tmp_dir

    def ensure_dirs(self) -> None:
        self._tmp_dir.mkdir(parents=True, exist_ok=True)

    def session_dir(self, session_id: str) -> Path:
        return self._tmp_dir / validate_path_component(session_id, "session id")

    def chunk_path(self, session_id: str, index: int) -> Path:
        return self.session_dir(session_id) / f"chunk_{validate_chunk_index(index):08d}.part"

    async def put(self, session_id: str, index: int, data: bytes) -> int:
        path = self.chunk_path(session_id, index)

        def _put() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            _write_durably(path, data)

        try:
            await asyncio.to_thread(_put)
        except OSError as exc:
            logger.error("Failed to store chunk %s of session %s: %s", index, session_id, exc)
            raise StorageIOError(f"Could not store chunk {index} of session {session_id}") from exc
        logger.debug("Stored chunk %s of session %s (%d bytes)", index, session_id, len(data))
        return len(data)

    async def adopt(self, session_id: str, index: int, source: Path) -> int:
        """Take ownership of chunk bytes already persisted on the same filesystem.

        Core-only entry point for in-process producers that spool chunks to disk
        themselves; the HTTP routes always go through :meth:`put`.
        """
        path = self.chunk_path(session_id, index)
        source = Path(source)

        def _adopt() -> int:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(source, "rb+") as handle:
                os.fsync(handle.fileno())
            size = source.stat().st_size
            os.replace(source, path)
            return size

        try:
            return await asyncio.to_thread(_adopt)
        except OSError as exc:
            logger.error("Failed to adopt %s as chunk %s of session %s: %s", source, index, session_id, exc)
            raise StorageIOError(f"Could not store chunk {index} of session {session_id}") from exc

    async def describe(self, session_id: str) -> list[ChunkInfo]:
        directory = self.session_dir(session_id)

        def _describe() -> list[ChunkInfo]:
            if not directory.is_dir():
                return []
            chunks: list[ChunkInfo] = []
            for entry in directory.iterdir():
                match = CHUNK_NAME.fullmatch(entry.name)
                if match is None:
                    continue
                try:
                    stat = entry.stat()
                except FileNotFoundError:
                    # consumed by a merge while we were listing
                    continue
                chunks.append(ChunkInfo(index=int(match.group(1)), size=stat.st_size, modified_time=_mtime(stat)))
            chunks.sort(key=lambda chunk: chunk.index)
            return chunks

        return await asyncio.to_thread(_describe)

    async def list(self, session_id: str) -> list[int]:
        return [chunk.index for chunk in await self.describe(session_id)]

    async def chunk_sizes(self, session_id: str) -> dict[int, int]:
        return {chunk.index: chunk.size for chunk in await self.describe(session_id)}

    async def exists(self, session_id: str, index: int) -> bool:
        path = self.chunk_path(session_id, index)
        return await asyncio.to_thread(path.is_file)

    async def stream(self, session_id: str, index: int, block_size: int | None = None) -> AsyncIterator[bytes]:
        path = self.chunk_path(session_id, index)
        block_size = block_size or settings.copy_block_size
        try:
            handle = await asyncio.to_thread(open, path, "rb")
        except FileNotFoundError as exc:
            raise MissingChunkError(index) from exc
        try:
            while True:
                block = await asyncio.to_thread(handle.read, block_size)
                if not block:
                    break
                yield block
        finally:
            handle.close()

    async def remove(self, session_id: str, index: int) -> bool:
        path = self.chunk_path(session_id, index)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to delete chunk %s: %s", path, exc)
            return False
        return True

    async def purge_session(self, session_id: str) -> None:
        directory = self.session_dir(session_id)

        def _purge() -> None:
            if directory.exists():
                shutil.rmtree(directory)

        try:
            await asyncio.to_thread(_purge)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to purge temporary area of session %s: %s", session_id, exc)
        else:
            logger.debug("Purged temporary area of session %s", session_id)

    async def list_sessions(self) -> list[str]:
        def _sessions() -> list[str]:
            if not self._tmp_dir.is_dir():
                return []
            return sorted(entry.name for entry in self._tmp_dir.iterdir() if entry.is_dir())

        return await asyncio.to_thread(_sessions)


class FinalStore:
    """Completed files by name, plus a staging area for output that is not finished yet."""

    def __init__(self, files_dir: Path | None = None, staging_dir: Path | None = None) -> None:
        self._files_dir = Path(files_dir) if files_dir is not None else settings.files_dir
        self._staging_dir = Path(staging_dir) if staging_dir is not None else settings.staging_dir

    @property
    def files_dir(self) -> Path:
        return self._files_dir

    def ensure_dirs(self) -> None:
        for directory in (self._files_dir, self._staging_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, filename: str) -> Path:
        return self._files_dir / validate_path_component(filename, "filename")

    def new_staging_path(self) -> Path:
        self._staging_dir.mkdir(parents=True, exist_ok=True)
        return self._staging_dir / f"{uuid.uuid4().hex}.partial"

    async def exists(self, filename: str) -> bool:
        path = self.path_for(filename)
        return await asyncio.to_thread(path.is_file)

    async def commit(self, staged: Path, filename: str) -> Path:
        """Rename staged output into place. The target name never shows a partial file."""
        target = self.path_for(filename)

        def _commit() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(staged, target)

        await asyncio.to_thread(_commit)
        logger.info("Committed %s", target)
        return target

    async def discard(self, staged: Path) -> None:
        try:
            await asyncio.to_thread(Path(staged).unlink, missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to delete staged output %s: %s", staged, exc)

    async def write(self, filename: str, data: bytes) -> Path:
        self.path_for(filename)
        staged = self.new_staging_path()
        try:
            await asyncio.to_thread(_write_durably, staged, data)
            return await self.commit(staged, filename)
        except OSError as exc:
            await self.discard(staged)
            logger.error("Failed to store %s: %s", filename, exc)
            raise StorageIOError(f"Could not store {filename}") from exc

    async def stat(self, filename: str) -> StoredFileInfo:
        path = self.path_for(filename)
        stat = await asyncio.to_thread(path.stat)
        return StoredFileInfo(name=path.name, size=stat.st_size, modified_time=_mtime(stat))

    async def list(self) -> list[StoredFileInfo]:
        def _list() -> list[StoredFileInfo]:
            if not self._files_dir.is_dir():
                return []
            files: list[StoredFileInfo] = []
            for entry in self._files_dir.iterdir():
                try:
                    if not entry.is_file():
                        continue
                    stat = entry.stat()
                except FileNotFoundError:
                    continue
                files.append(StoredFileInfo(name=entry.name, size=stat.st_size, modified_time=_mtime(stat)))
            files.sort(key=lambda item: item.name)
            return files

        return await asyncio.to_thread(_list)


chunk_store = ChunkStore()
final_store = FinalStore()


def ensure_base_dirs() -> None:
    settings.storage_root.mkdir(parents=True, exist_ok=True)
    chunk_store.ensure_dirs()
    final_store.ensure_dirs()
