"""
Abstract base class for transfer backends.
Defines the contract of a chunked-upload session backend.
"""
from abc import ABC, abstractmethod
from typing import Callable, List, Optional
from src.models.dto.upload_dto import (
    ActiveSession,
    BatchInitResult,
    ChunkUploadResponse,
    ClearStaleResponse,
    InitUploadRequest,
    RetrySessionResponse,
    SessionStatus,
    UploadSession
)

ProgressCallback = Callable[[int, int], None]


class UploadBackend(ABC):
    """Abstract interface for chunked-upload session operations."""

    @abstractmethod
    async def init_session(self, request: InitUploadRequest) -> UploadSession:
        """Create an upload session for one file."""
        pass

    @abstractmethod
    async def init_batch(self, requests: List[InitUploadRequest]) -> List[BatchInitResult]:
        """Create sessions for many files; results are aligned by index."""
        pass

    @abstractmethod
    async def upload_chunk(
        self,
        session_id: str,
        chunk_index: int,
        data: bytes,
        on_progress: Optional[ProgressCallback] = None
    ) -> ChunkUploadResponse:
        """Send one chunk, reporting (sent, total) bytes while in flight."""
        pass

    @abstractmethod
    async def get_status(self, session_id: str) -> SessionStatus:
        """Fetch the server-side status of a session."""
        pass

    @abstractmethod
    async def complete_session(self, session_id: str) -> None:
        """Signal that every chunk is uploaded and assembly can start."""
        pass

    @abstractmethod
    async def cancel_session(self, session_id: str) -> None:
        """Cancel a session and release its reservation."""
        pass

    @abstractmethod
    async def clear_stale_sessions(self) -> ClearStaleResponse:
        """Cancel the caller's abandoned sessions."""
        pass

    @abstractmethod
    async def get_active_sessions(self) -> List[ActiveSession]:
        """List the caller's unfinished sessions."""
        pass

    @abstractmethod
    async def retry_session(self, session_id: str) -> RetrySessionResponse:
        """Ask the backend to re-run processing of a stuck session."""
        pass

    async def aclose(self) -> None:
        """Release network resources."""
        pass
