"""
Data Transfer Objects for the upload client.
Defines the transfer backend wire schemas and the control API schemas.
"""
from typing import List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from src.models.upload_item import UploadItem, UploadItemStatus
from src.models.upload_event import UploadEvent, UploadEventType


class CamelModel(BaseModel):
    """Base schema accepting both camelCase (wire) and snake_case names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Transfer backend wire schemas ---

class InitUploadRequest(CamelModel):
    """Request body for creating one upload session."""
    file_name: str
    file_size: int = Field(..., ge=0)
    mime_type: str
    doc_type: Optional[str] = None
    relative_path: Optional[str] = None


class UploadSession(CamelModel):
    """Session metadata returned by session init."""
    session_id: str = Field(..., alias="uploadId")
    chunk_size: int = Field(..., gt=0)
    total_chunks: int = Field(..., ge=0)
    uploaded_chunks: List[int] = Field(default_factory=list)
    expires_at: Optional[str] = None


class BatchInitError(CamelModel):
    """Per-file failure entry inside a batch init response."""
    error: str
    file_name: Optional[str] = None


BatchInitResult = Union[UploadSession, BatchInitError]


class ChunkUploadResponse(CamelModel):
    """Chunk confirmation plus backpressure signals read from headers."""
    chunk_index: int
    uploaded_chunks: List[int] = Field(default_factory=list)
    total_chunks: int = 0
    progress: float = 0.0
    queue_depth: Optional[int] = None
    throttle: bool = False


class SessionStatus(CamelModel):
    """Server-side view of an upload session."""
    session_id: Optional[str] = Field(default=None, alias="uploadId")
    status: str
    progress: float = 0.0
    total_chunks: int = 0
    uploaded_chunks: List[int] = Field(default_factory=list)
    chunk_size: Optional[int] = None
    document_id: Optional[str] = None
    storage_type: Optional[str] = None
    error_message: Optional[str] = None


class ClearStaleResponse(CamelModel):
    cancelled: int = 0


class ActiveSession(CamelModel):
    """Unfinished session listed by the backend."""
    session_id: str = Field(..., alias="uploadId")
    file_name: str
    file_size: int
    mime_type: str
    status: str
    progress: float = 0.0
    uploaded_chunks: List[int] = Field(default_factory=list)
    total_chunks: int = 0
    created_at: Optional[str] = None
    expires_at: Optional[str] = None


class RetrySessionResponse(CamelModel):
    session_id: str = Field(..., alias="uploadId")
    status: str


# --- Control API schemas ---

class FileToUpload(CamelModel):
    """Local file to enqueue."""
    path: str = Field(..., min_length=1, description="Path of the local file")
    doc_type: str = Field(default="other", description="Classification tag")
    relative_path: Optional[str] = Field(default=None, description="Folder path shown to the backend")
    mime_type: Optional[str] = Field(default=None, description="Overrides MIME type detection")


class AddFilesRequest(CamelModel):
    files: List[FileToUpload] = Field(..., min_length=1)


class DocTypeRequest(CamelModel):
    doc_type: str = Field(..., min_length=1, max_length=100)

    @field_validator('doc_type')
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v or v.strip() == "":
            raise ValueError("doc_type cannot be empty")
        return v.strip()


class ConcurrencyRequest(CamelModel):
    concurrency: int = Field(..., description="Requested parallel files, clamped to [1, 100]")


class UploadItemResponse(CamelModel):
    """Response schema for one upload item."""
    id: str
    file_name: str
    file_size: int
    mime_type: str
    relative_path: str
    doc_type: str
    status: UploadItemStatus
    server_session_id: Optional[str] = None
    result_document_id: Optional[str] = None
    storage_type: Optional[str] = None
    progress: float
    uploaded_bytes: int
    error: Optional[str] = None
    retries: int = 0

    @classmethod
    def from_item(cls, item: UploadItem) -> "UploadItemResponse":
        return cls(
            id=item.id,
            file_name=item.file_name,
            file_size=item.file_size,
            mime_type=item.mime_type,
            relative_path=item.relative_path,
            doc_type=item.doc_type,
            status=item.status,
            server_session_id=item.server_session_id,
            result_document_id=item.result_document_id,
            storage_type=item.storage_type,
            progress=item.progress,
            uploaded_bytes=item.uploaded_bytes,
            error=item.error,
            retries=item.retries
        )


class UploadItemListResponse(CamelModel):
    items: List[UploadItemResponse]
    count: int


class UploadStats(CamelModel):
    """Aggregate counters over the upload queue."""
    total: int = 0
    queued: int = 0
    uploading: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    paused: int = 0
    total_bytes: int = 0
    uploaded_bytes: int = 0


class UploadStatsResponse(UploadStats):
    concurrency: int
    is_throttled: bool
    server_queue_depth: int


class UploadEventResponse(CamelModel):
    """Serialized form of an upload event for the event stream."""
    type: UploadEventType
    item: Optional[UploadItemResponse] = None
    global_progress: Optional[float] = None
    error: Optional[str] = None
    is_throttled: Optional[bool] = None
    server_queue_depth: Optional[int] = None

    @classmethod
    def from_event(cls, event: UploadEvent) -> "UploadEventResponse":
        return cls(
            type=event.type,
            item=UploadItemResponse.from_item(event.item) if event.item else None,
            global_progress=event.global_progress,
            error=event.error,
            is_throttled=event.is_throttled,
            server_queue_depth=event.server_queue_depth
        )
