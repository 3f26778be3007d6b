from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from upload_server.models.upload import UploadSession, UploadStatus
from upload_server.services.errors import (
    InvalidRequestError,
    MergeInProgressError,
    SessionNotFoundError,
    UploadError,
)
from upload_server.services.merge import MergeEngine, MergeResult, merge_engine
from upload_server.services.storage import (
    ChunkStore,
    FinalStore,
    StoredFileInfo,
    chunk_store,
    final_store,
    validate_chunk_index,
    validate_path_component,
)
from upload_server.services.tracker import SessionTracker, UploadProgress, progress_percent, session_tracker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChunkReceipt:
    session_id: str
    chunk_index: int
    size: int
    merge_claimed: bool = False
    merge_result: MergeResult | None = None


@dataclass(frozen=True)
class PartialUpload:
    session_id: str
    name: str
    total_size: int | None
    uploaded_size: int
    percent: int
    chunk_count: int
    total_chunks: int | None
    status: UploadStatus | None
    last_modified: datetime


@dataclass(frozen=True)
class SessionState:
    session_id: str
    filename: str | None
    total_chunks: int | None
    status: UploadStatus | None
    last_error: str | None
    received: list[int]
    next_chunk: int
    progress: UploadProgress


def _validate_total_chunks(total_chunks: int) -> int:
    if isinstance(total_chunks, bool) or not isinstance(total_chunks, int) or total_chunks <= 0:
        raise InvalidRequestError(f"total_chunks must be a positive integer, got {total_chunks!r}")
    return total_chunks


class UploadService:
    def __init__(
        self,
        chunks: ChunkStore,
        tracker: SessionTracker,
        engine: MergeEngine,
        files: FinalStore,
    ) -> None:
        self.chunks = chunks
        self.tracker = tracker
        self.engine = engine
        self.files = files

    async def get_session(self, db: AsyncSession, session_id: str) -> UploadSession | None:
        validate_path_component(session_id, "session id")
        return await db.get(UploadSession, session_id, populate_existing=True)

    async def _register(
        self,
        db: AsyncSession,
        session_id: str,
        filename: str,
        total_chunks: int,
        declared_total_size: int | None,
    ) -> UploadSession:
        record = await self.get_session(db, session_id)
        if record is None:
            record = UploadSession(
                session_id=session_id,
                filename=filename,
                total_chunks=total_chunks,
                declared_total_size=declared_total_size,
                status=UploadStatus.UPLOADING,
            )
            db.add(record)
            try:
                await db.commit()
                return record
            except IntegrityError:  # another request registered the session first
                await db.rollback()
                record = await self.get_session(db, session_id)
                if record is None:
                    raise

        if record.total_chunks != total_chunks:
            raise InvalidRequestError(
                f"Session {session_id} was declared with {record.total_chunks} chunks, got {total_chunks}"
            )
        if record.status == UploadStatus.MERGING or self.engine.is_merging(session_id):
            raise MergeInProgressError(session_id)

        record.filename = filename
        if declared_total_size is not None:
            record.declared_total_size = declared_total_size
        if record.status != UploadStatus.UPLOADING:
            record.status = UploadStatus.UPLOADING
        await db.commit()
        return record

    async def receive_chunk(
        self,
        db: AsyncSession,
        *,
        session_id: str,
        chunk_index: int,
        total_chunks: int,
        filename: str,
        payload: bytes,
        declared_total_size: int | None = None,
        merge: bool = True,
    ) -> ChunkReceipt:
        """Store one chunk; the chunk carrying the declared final index claims the merge.

        With ``merge=False`` the claim is made but the caller is responsible for
        running :meth:`run_merge` (the HTTP layer hands it to the worker).
        """
        validate_path_component(session_id, "session id")
        validate_path_component(filename, "filename")
        _validate_total_chunks(total_chunks)
        validate_chunk_index(chunk_index)
        if chunk_index >= total_chunks:
            raise InvalidRequestError(f"Chunk index {chunk_index} is outside 0..{total_chunks - 1}")
        if declared_total_size is not None and declared_total_size < 0:
            raise InvalidRequestError("Declared file size cannot be negative")

        if chunk_index == total_chunks - 1:
            replay = await self._replayed_final_chunk(db, session_id, filename, total_chunks)
            if replay is not None:
                return ChunkReceipt(
                    session_id=session_id,
                    chunk_index=chunk_index,
                    size=len(payload),
                    merge_claimed=True,
                    merge_result=replay,
                )

        await self._register(db, session_id, filename, total_chunks, declared_total_size)
        size = await self.chunks.put(session_id, chunk_index, payload)

        if chunk_index != total_chunks - 1:
            return ChunkReceipt(session_id=session_id, chunk_index=chunk_index, size=size)

        logger.info("Final chunk %d received for session %s", chunk_index, session_id)
        await self.claim_merge(db, session_id)
        if not merge:
            return ChunkReceipt(session_id=session_id, chunk_index=chunk_index, size=size, merge_claimed=True)
        result = await self.run_merge(db, session_id)
        return ChunkReceipt(
            session_id=session_id,
            chunk_index=chunk_index,
            size=size,
            merge_claimed=True,
            merge_result=result,
        )

    async def _replayed_final_chunk(
        self, db: AsyncSession, session_id: str, filename: str, total_chunks: int
    ) -> MergeResult | None:
        """A final chunk re-sent after its merge already committed is answered from the stored file."""
        record = await self.get_session(db, session_id)
        if (
            record is None
            or record.status != UploadStatus.COMPLETED
            or record.filename != filename
            or record.total_chunks != total_chunks
        ):
            return None
        # chunks present means the id is being reused for a fresh upload
        if await self.chunks.list(session_id) or not await self.files.exists(filename):
            return None
        info = await self.files.stat(filename)
        logger.info("Final chunk of completed session %s re-sent; merge not repeated", session_id)
        return MergeResult(
            session_id=session_id,
            filename=filename,
            path=self.files.path_for(filename),
            size=info.size,
            chunk_count=total_chunks,
        )

    async def claim_merge(self, db: AsyncSession, session_id: str) -> None:
        stmt = (
            update(UploadSession)
            .where(UploadSession.session_id == session_id, UploadSession.status != UploadStatus.MERGING)
            .values(status=UploadStatus.MERGING, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        await db.commit()
        if result.rowcount == 0:
            if await self.get_session(db, session_id) is None:
                raise SessionNotFoundError(session_id)
            raise MergeInProgressError(session_id)

    async def run_merge(self, db: AsyncSession, session_id: str) -> MergeResult:
        record = await self.get_session(db, session_id)
        if record is None:
            raise SessionNotFoundError(session_id)

        try:
            result = await self.engine.merge(session_id, record.filename, record.total_chunks)
        except MergeInProgressError:
            raise
        except UploadError as exc:
            record.status = UploadStatus.FAILED
            record.last_error = exc.message
            await db.commit()
            raise
        except BaseException as exc:
            logger.exception("Merge of session %s aborted unexpectedly", session_id)
            record.status = UploadStatus.FAILED
            record.last_error = f"Merge aborted: {exc!r}"
            await db.commit()
            raise

        record.status = UploadStatus.COMPLETED
        record.last_error = None
        record.finalized_at = datetime.now(timezone.utc)
        await db.commit()
        return result

    async def mark_failed(self, db: AsyncSession, session_id: str, message: str) -> None:
        record = await self.get_session(db, session_id)
        if record is None:
            return
        record.status = UploadStatus.FAILED
        record.last_error = message
        await db.commit()

    async def next_chunk(self, session_id: str) -> int:
        validate_path_component(session_id, "session id")
        return await self.tracker.next_expected(session_id)

    async def merge_status(self, filename: str) -> bool:
        return await self.files.exists(filename)

    async def describe_session(self, db: AsyncSession, session_id: str) -> SessionState:
        record = await self.get_session(db, session_id)
        received = await self.chunks.list(session_id)
        if record is None and not received:
            raise SessionNotFoundError(session_id)
        declared_size = record.declared_total_size if record is not None else None
        return SessionState(
            session_id=session_id,
            filename=record.filename if record is not None else None,
            total_chunks=record.total_chunks if record is not None else None,
            status=record.status if record is not None else None,
            last_error=record.last_error if record is not None else None,
            received=received,
            next_chunk=await self.tracker.next_expected(session_id),
            progress=await self.tracker.progress(session_id, declared_size),
        )

    async def list_partial_uploads(self, db: AsyncSession) -> list[PartialUpload]:
        summaries = await self.tracker.list_all_partial()
        if not summaries:
            return []
        ids = [summary.session_id for summary in summaries]
        result = await db.execute(select(UploadSession).where(UploadSession.session_id.in_(ids)))
        records = {record.session_id: record for record in result.scalars()}

        uploads: list[PartialUpload] = []
        for summary in summaries:
            record = records.get(summary.session_id)
            total_size = record.declared_total_size if record is not None else None
            uploads.append(
                PartialUpload(
                    session_id=summary.session_id,
                    name=record.filename if record is not None else summary.session_id,
                    total_size=total_size,
                    uploaded_size=summary.uploaded_bytes,
                    percent=progress_percent(summary.uploaded_bytes, total_size),
                    chunk_count=summary.chunk_count,
                    total_chunks=record.total_chunks if record is not None else None,
                    status=record.status if record is not None else None,
                    last_modified=summary.last_modified,
                )
            )
        return uploads

    async def list_completed_files(self) -> list[StoredFileInfo]:
        return await self.files.list()

    async def store_file(self, filename: str, data: bytes) -> StoredFileInfo:
        await self.files.write(filename, data)
        return await self.files.stat(filename)

    async def purge_upload(self, db: AsyncSession, session_id: str) -> None:
        record = await self.get_session(db, session_id)
        if record is None and not await self.chunks.list(session_id):
            raise SessionNotFoundError(session_id)
        if self.engine.is_merging(session_id) or (record is not None and record.status == UploadStatus.MERGING):
            raise MergeInProgressError(session_id)

        await self.chunks.purge_session(session_id)
        if record is not None:
            await db.delete(record)
            await db.commit()
        logger.info("Purged upload session %s", session_id)

    async def recover_interrupted_merges(self, db: AsyncSession) -> int:
        """Sessions left in ``merging`` by a crash become ``failed`` so the final chunk can be re-sent."""
        stmt = (
            update(UploadSession)
            .where(UploadSession.status == UploadStatus.MERGING)
            .values(
                status=UploadStatus.FAILED,
                last_error="Merge interrupted before completion",
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        await db.commit()
        if result.rowcount:
            logger.warning("Marked %d interrupted merges as failed", result.rowcount)
        return result.rowcount


upload_service = UploadService(chunk_store, session_tracker, merge_engine, final_store)
