"""
Upload Item domain model.
Represents one file's transfer lifecycle and its status machine.
"""
import copy
from enum import Enum
from typing import Dict, FrozenSet, Optional
from src.models.file_source import FileSource


class UploadItemStatus(str, Enum):
    """Closed set of upload item states."""
    QUEUED = "queued"
    INITIALIZING = "initializing"
    UPLOADING = "uploading"
    ASSEMBLING = "assembling"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"


S = UploadItemStatus

ALLOWED_TRANSITIONS: Dict[UploadItemStatus, FrozenSet[UploadItemStatus]] = {
    S.QUEUED: frozenset({S.INITIALIZING, S.CANCELLED}),
    S.INITIALIZING: frozenset({S.UPLOADING, S.PAUSED, S.CANCELLED, S.FAILED}),
    S.UPLOADING: frozenset({S.ASSEMBLING, S.PAUSED, S.CANCELLED, S.FAILED}),
    S.ASSEMBLING: frozenset({S.PROCESSING, S.CANCELLED, S.FAILED}),
    S.PROCESSING: frozenset({S.COMPLETED, S.CANCELLED, S.FAILED}),
    S.PAUSED: frozenset({S.QUEUED, S.CANCELLED}),
    S.FAILED: frozenset({S.QUEUED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
}

ACTIVE_STATUSES = frozenset({S.INITIALIZING, S.UPLOADING, S.ASSEMBLING, S.PROCESSING})
PAUSABLE_STATUSES = frozenset({S.INITIALIZING, S.UPLOADING})
REMOVABLE_STATUSES = frozenset({S.QUEUED, S.COMPLETED, S.FAILED, S.CANCELLED})
FINISHED_STATUSES = frozenset({S.COMPLETED, S.FAILED, S.CANCELLED})
CANCELLABLE_STATUSES = frozenset({S.QUEUED, S.PAUSED}) | ACTIVE_STATUSES


def can_transition(current: UploadItemStatus, target: UploadItemStatus) -> bool:
    """Return True when the status machine allows current -> target."""
    return target in ALLOWED_TRANSITIONS[current]


class UploadItem:
    """Domain model for one file in the upload queue."""

    def __init__(
        self,
        id: str,
        file: FileSource,
        mime_type: str,
        relative_path: str = "",
        doc_type: str = "other",
        file_name: Optional[str] = None
    ):
        self.id = id
        self.file = file
        self.file_name = file_name or file.name
        self.file_size = file.size
        self.mime_type = mime_type
        self.relative_path = relative_path
        self.doc_type = doc_type
        self.status = UploadItemStatus.QUEUED
        self.server_session_id: Optional[str] = None
        self.chunk_size: Optional[int] = None
        self.result_document_id: Optional[str] = None
        self.storage_type: Optional[str] = None
        self.progress = 0.0
        self.uploaded_bytes = 0
        self.error: Optional[str] = None
        self.retries = 0

    def set_uploaded_bytes(self, uploaded_bytes: int) -> None:
        """Update byte accounting, keeping progress consistent with it."""
        self.uploaded_bytes = max(0, min(uploaded_bytes, self.file_size))
        if self.file_size > 0:
            self.progress = self.uploaded_bytes / self.file_size
        else:
            self.progress = 1.0 if self.status == UploadItemStatus.COMPLETED else 0.0

    def reset_progress(self) -> None:
        self.retries = 0
        self.error = None
        self.set_uploaded_bytes(0)

    def forget_session(self) -> None:
        self.server_session_id = None
        self.chunk_size = None

    def snapshot(self) -> "UploadItem":
        """Return a shallow copy safe to hand to observers."""
        return copy.copy(self)

    def __repr__(self):
        return f"UploadItem(id={self.id}, file_name={self.file_name}, status={self.status.value})"
