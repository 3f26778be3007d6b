from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Enum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from upload_server.db.base import Base


class UploadStatus(str, enum.Enum):
    UPLOADING = "uploading"
    MERGING = "merging"
    COMPLETED = "completed"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadSession(Base):
    """Declared metadata of one chunked upload.

    Chunk presence is never read from here; the chunk store on disk is
    authoritative for that and the final file's existence signals completion.
    """

    __tablename__ = "upload_sessions"
    __table_args__ = (
        CheckConstraint("total_chunks > 0", name="ck_session_total_chunks_positive"),
    )

    session_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)
    declared_total_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    status: Mapped[UploadStatus] = mapped_column(Enum(UploadStatus), default=UploadStatus.UPLOADING, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
