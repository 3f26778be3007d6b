from __future__ import annotations

from typing import Any


class UploadError(Exception):
    """Base class for failures the upload core reports to its callers."""

    status_code: int = 500
    kind: str = "upload_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "error": self.kind}


class InvalidRequestError(UploadError):
    """Malformed identifiers or a total-chunk declaration that contradicts the session."""

    status_code = 400
    kind = "invalid_request"


class SessionNotFoundError(UploadError):
    status_code = 404
    kind = "session_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Upload session {session_id} not found")
        self.session_id = session_id


class MissingChunkError(UploadError):
    """A chunk required by the merge walk is absent. The client must re-send it."""

    status_code = 409
    kind = "missing_chunk"

    def __init__(self, index: int) -> None:
        super().__init__(f"Chunk {index} is missing")
        self.index = index

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["chunk_index"] = self.index
        return payload


class MergeInProgressError(UploadError):
    status_code = 409
    kind = "merge_in_progress"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"A merge is already running for session {session_id}")
        self.session_id = session_id


class StorageIOError(UploadError):
    """Disk read, write or rename failure. Nothing partial is left visible."""

    status_code = 500
    kind = "storage_io_error"
