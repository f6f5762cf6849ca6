"""
Shared test fixtures and utilities.
"""
import asyncio
from collections import defaultdict
from typing import Dict, List, Optional, Set
import pytest
from src.core.exceptions import SessionNotFoundException
from src.models.dto.upload_dto import (
    ActiveSession,
    BatchInitError,
    ClearStaleResponse,
    ChunkUploadResponse,
    RetrySessionResponse,
    SessionStatus,
    UploadSession
)
from src.models.file_source import BytesFileSource
from src.repositories.upload_backend import UploadBackend
from src.services.item_registry import NewUpload


class FakeSession:
    def __init__(self, session_id: str, file_name: str, file_size: int, chunk_size: int):
        self.session_id = session_id
        self.file_name = file_name
        self.file_size = file_size
        self.chunk_size = chunk_size
        self.total_chunks = -(-file_size // chunk_size)
        self.uploaded: Set[int] = set()
        self.status = "uploading"
        self.processing_polls = 0


class FakeUploadBackend(UploadBackend):
    """In-memory backend with scripted failures and call recording."""

    def __init__(self, chunk_size: int = 4):
        self.chunk_size = chunk_size
        self.sessions: Dict[str, FakeSession] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[Exception]] = defaultdict(list)
        self.chunk_failures: Dict[int, List[Exception]] = defaultdict(list)
        self.chunk_signals: List[tuple] = []
        self.batch_rejects: Set[str] = set()
        self.processing_polls = 0
        self.final_status = "completed"
        self.report_chunk_size = True
        self.report_total_chunks = True
        self.stale_sessions = 0
        self.chunk_gate: Optional[asyncio.Event] = None
        self.batch_gate: Optional[asyncio.Event] = None
        self.in_flight = 0
        self.max_in_flight = 0
        self._counter = 0

    def fail(self, operation: str, *errors: Exception) -> None:
        """Queue errors raised by the next calls of an operation."""
        self.failures[operation].extend(errors)

    def fail_chunk(self, chunk_index: int, *errors: Exception) -> None:
        """Queue errors raised by the next uploads of one chunk index."""
        self.chunk_failures[chunk_index].extend(errors)

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    def chunk_indexes(self, session_id: str) -> List[int]:
        return [call[2] for call in self.calls if call[0] == "upload_chunk" and call[1] == session_id]

    def add_session(self, file_name: str, file_size: int, chunk_size: Optional[int] = None) -> FakeSession:
        self._counter += 1
        session = FakeSession(f"session-{self._counter}", file_name, file_size, chunk_size or self.chunk_size)
        self.sessions[session.session_id] = session
        return session

    def _raise_scripted(self, operation: str) -> None:
        if self.failures[operation]:
            raise self.failures[operation].pop(0)

    def _session(self, session_id: str) -> FakeSession:
        if session_id not in self.sessions:
            raise SessionNotFoundException(f"Session {session_id} not found", status_code=404)
        return self.sessions[session_id]

    def _to_upload_session(self, session: FakeSession) -> UploadSession:
        return UploadSession(
            session_id=session.session_id,
            chunk_size=session.chunk_size,
            total_chunks=session.total_chunks,
            uploaded_chunks=sorted(session.uploaded)
        )

    async def init_session(self, request):
        self.calls.append(("init_session", request.file_name))
        await asyncio.sleep(0)
        self._raise_scripted("init_session")
        return self._to_upload_session(self.add_session(request.file_name, request.file_size))

    async def init_batch(self, requests):
        self.calls.append(("init_batch", len(requests)))
        if self.batch_gate is not None:
            await self.batch_gate.wait()
        else:
            await asyncio.sleep(0)
        self._raise_scripted("init_batch")
        results = []
        for request in requests:
            if request.file_name in self.batch_rejects:
                results.append(BatchInitError(error="Rejected", file_name=request.file_name))
            else:
                results.append(self._to_upload_session(self.add_session(request.file_name, request.file_size)))
        return results

    async def upload_chunk(self, session_id, chunk_index, data, on_progress=None):
        self.calls.append(("upload_chunk", session_id, chunk_index))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.chunk_gate is not None:
                await self.chunk_gate.wait()
            else:
                await asyncio.sleep(0)
            self._raise_scripted("upload_chunk")
            if self.chunk_failures[chunk_index]:
                raise self.chunk_failures[chunk_index].pop(0)
            session = self._session(session_id)
            if on_progress:
                on_progress(len(data) // 2, len(data))
                on_progress(len(data), len(data))
            session.uploaded.add(chunk_index)
            queue_depth, throttle = self.chunk_signals.pop(0) if self.chunk_signals else (None, False)
            return ChunkUploadResponse(
                chunk_index=chunk_index,
                uploaded_chunks=sorted(session.uploaded),
                total_chunks=session.total_chunks,
                progress=len(session.uploaded) / session.total_chunks,
                queue_depth=queue_depth,
                throttle=throttle
            )
        finally:
            self.in_flight -= 1

    async def get_status(self, session_id):
        self.calls.append(("get_status", session_id))
        await asyncio.sleep(0)
        self._raise_scripted("get_status")
        session = self._session(session_id)
        if session.status == "processing":
            if session.processing_polls > 0:
                session.processing_polls -= 1
            else:
                session.status = self.final_status
        return SessionStatus(
            session_id=session.session_id,
            status=session.status,
            total_chunks=session.total_chunks if self.report_total_chunks else 0,
            uploaded_chunks=sorted(session.uploaded),
            chunk_size=session.chunk_size if self.report_chunk_size else None,
            document_id=f"doc-{session.session_id}" if session.status == "completed" else None,
            storage_type="document" if session.status == "completed" else None,
            error_message="Virus detected" if session.status == "failed" else None
        )

    async def complete_session(self, session_id):
        self.calls.append(("complete_session", session_id))
        await asyncio.sleep(0)
        self._raise_scripted("complete_session")
        session = self._session(session_id)
        session.status = "processing"
        session.processing_polls = self.processing_polls

    async def cancel_session(self, session_id):
        self.calls.append(("cancel_session", session_id))
        await asyncio.sleep(0)
        self._raise_scripted("cancel_session")
        self._session(session_id).status = "cancelled"

    async def clear_stale_sessions(self):
        self.calls.append(("clear_stale_sessions",))
        await asyncio.sleep(0)
        self._raise_scripted("clear_stale_sessions")
        cancelled, self.stale_sessions = self.stale_sessions, 0
        return ClearStaleResponse(cancelled=cancelled)

    async def get_active_sessions(self):
        self.calls.append(("get_active_sessions",))
        return [
            ActiveSession(
                session_id=s.session_id,
                file_name=s.file_name,
                file_size=s.file_size,
                mime_type="application/octet-stream",
                status=s.status,
                uploaded_chunks=sorted(s.uploaded),
                total_chunks=s.total_chunks
            )
            for s in self.sessions.values()
            if s.status not in ("completed", "cancelled")
        ]

    async def retry_session(self, session_id):
        self.calls.append(("retry_session", session_id))
        self._session(session_id).status = "processing"
        return RetrySessionResponse(session_id=session_id, status="processing")


class RecordingSleep:
    """Sleep replacement that records delays and only yields to the loop."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)

    @property
    def total(self) -> float:
        return sum(self.delays)


def build_upload(name: str = "file.bin", size: int = 10, doc_type: str = "other") -> NewUpload:
    """Build an in-memory upload of the given size."""
    return NewUpload(
        file=BytesFileSource(name, bytes(i % 256 for i in range(size))),
        mime_type="application/octet-stream",
        doc_type=doc_type
    )


@pytest.fixture
def fake_backend():
    """In-memory transfer backend using 4-byte chunks."""
    return FakeUploadBackend(chunk_size=4)


@pytest.fixture
def recording_sleep():
    """Sleep that records requested delays without waiting."""
    return RecordingSleep()


@pytest.fixture
def upload_factory():
    """Factory for in-memory uploads: upload_factory(name, size, doc_type)."""
    return build_upload
