"""
HTTP transfer backend.
Talks to the chunked-upload REST API with an httpx async client.
"""
import json
import logging
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional
import httpx
from src.core import config
from src.core.exceptions import (
    QuotaExceededError,
    RateLimitError,
    SessionNotFoundException,
    TransientNetworkError,
    UploadBackendException
)
from src.models.dto.upload_dto import (
    ActiveSession,
    BatchInitError,
    BatchInitResult,
    ChunkUploadResponse,
    ClearStaleResponse,
    InitUploadRequest,
    RetrySessionResponse,
    SessionStatus,
    UploadSession
)
from src.repositories.upload_backend import ProgressCallback, UploadBackend

logger = logging.getLogger(__name__)

QUOTA_EXCEEDED_CODE = "SESSION_QUOTA_EXCEEDED"
QUEUE_DEPTH_HEADER = "X-Upload-Queue-Depth"
THROTTLE_HEADER = "X-Upload-Throttle"


class HttpUploadBackend(UploadBackend):
    """Repository for the chunked-upload REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        auth_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        headers = {"Accept": "application/json"}
        token = auth_token if auth_token is not None else config.settings.backend_auth_token
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self.client = httpx.AsyncClient(
            base_url=base_url or config.settings.backend_base_url,
            headers=headers,
            timeout=httpx.Timeout(config.settings.request_timeout_seconds),
            transport=transport
        )
        self.slice_bytes = max(1, config.settings.progress_slice_bytes)

    async def init_session(self, request: InitUploadRequest) -> UploadSession:
        response = await self._request(
            "POST", "/upload/init", json=request.model_dump(by_alias=True, exclude_none=True)
        )
        return UploadSession.model_validate(self._json(response))

    async def init_batch(self, requests: List[InitUploadRequest]) -> List[BatchInitResult]:
        """
        Create sessions for many files in one round trip.

        Args:
            requests: Per-file init payloads

        Returns:
            One UploadSession or BatchInitError per request, same order

        Raises:
            UploadBackendException: If the batch request itself fails
        """
        payload = {"files": [r.model_dump(by_alias=True, exclude_none=True) for r in requests]}
        response = await self._request("POST", "/upload/init-batch", json=payload)
        sessions = self._json(response).get("sessions") or []

        results: List[BatchInitResult] = []
        for entry in sessions:
            if isinstance(entry, dict) and "error" in entry:
                results.append(BatchInitError.model_validate(entry))
            else:
                results.append(UploadSession.model_validate(entry))
        return results

    async def upload_chunk(
        self,
        session_id: str,
        chunk_index: int,
        data: bytes,
        on_progress: Optional[ProgressCallback] = None
    ) -> ChunkUploadResponse:
        """
        Send one chunk as multipart form data.

        The body is streamed in slices so that on_progress sees the bytes
        handed to the transport while the request is in flight.

        Args:
            session_id: Server session identifier
            chunk_index: Zero-based chunk index
            data: Chunk bytes
            on_progress: Called with (sent, total) chunk bytes

        Returns:
            ChunkUploadResponse including backpressure header values

        Raises:
            RateLimitError: If the backend rate-limits the chunk
            UploadBackendException: If the chunk is rejected
        """
        boundary = uuid.uuid4().hex
        head = (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="chunkIndex"\r\n\r\n'
            f"{chunk_index}\r\n"
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="chunk"; filename="chunk-{chunk_index}"\r\n'
            f"Content-Type: application/octet-stream\r\n\r\n"
        ).encode("utf-8")
        tail = f"\r\n--{boundary}--\r\n".encode("utf-8")

        response = await self._request(
            "POST",
            f"/upload/{session_id}/chunk",
            content=self._stream_body(head, data, tail, on_progress),
            headers={
                "Content-Type": f"multipart/form-data; boundary={boundary}",
                "Content-Length": str(len(head) + len(data) + len(tail)),
            },
            timeout=config.settings.chunk_timeout_seconds
        )

        body = self._json(response)
        body.setdefault("chunkIndex", chunk_index)
        result = ChunkUploadResponse.model_validate(body)
        result.queue_depth = _parse_int(response.headers.get(QUEUE_DEPTH_HEADER))
        result.throttle = response.headers.get(THROTTLE_HEADER, "0").strip() == "1"
        return result

    async def get_status(self, session_id: str) -> SessionStatus:
        response = await self._request("GET", f"/upload/{session_id}/status")
        return SessionStatus.model_validate(self._json(response))

    async def complete_session(self, session_id: str) -> None:
        await self._request("POST", f"/upload/{session_id}/complete")

    async def cancel_session(self, session_id: str) -> None:
        await self._request("DELETE", f"/upload/{session_id}")

    async def clear_stale_sessions(self) -> ClearStaleResponse:
        response = await self._request("POST", "/upload/clear-stale")
        return ClearStaleResponse.model_validate(self._json(response))

    async def get_active_sessions(self) -> List[ActiveSession]:
        response = await self._request("GET", "/upload/active")
        sessions = self._json(response).get("sessions") or []
        return [ActiveSession.model_validate(s) for s in sessions]

    async def retry_session(self, session_id: str) -> RetrySessionResponse:
        response = await self._request("POST", f"/upload/{session_id}/retry")
        return RetrySessionResponse.model_validate(self._json(response))

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _stream_body(
        self,
        head: bytes,
        data: bytes,
        tail: bytes,
        on_progress: Optional[ProgressCallback]
    ) -> AsyncIterator[bytes]:
        yield head
        total = len(data)
        for offset in range(0, total, self.slice_bytes):
            piece = data[offset:offset + self.slice_bytes]
            yield piece
            if on_progress:
                on_progress(offset + len(piece), total)
        yield tail

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Request to {path} timed out") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Network error calling {path}: {str(e)}") from e

        if response.status_code >= 400:
            self._raise_for_status(response, path)
        return response

    def _raise_for_status(self, response: httpx.Response, path: str) -> None:
        body = self._safe_json(response)
        message = body.get("error") or f"HTTP {response.status_code}"
        status_code = response.status_code

        if status_code == 429:
            retry_after = _parse_float(response.headers.get("Retry-After"))
            if retry_after is None:
                retry_after = _parse_float(body.get("retryAfter"))
            code = body.get("code")
            logger.warning("Rate limited on %s (code=%s, retry_after=%s)", path, code, retry_after)
            if code == QUOTA_EXCEEDED_CODE:
                raise QuotaExceededError(message, retry_after=retry_after, code=code)
            raise RateLimitError(message, retry_after=retry_after, code=code)

        if status_code == 404:
            raise SessionNotFoundException(message, status_code=status_code)

        if status_code >= 500:
            raise TransientNetworkError(message, status_code=status_code)

        raise UploadBackendException(message, status_code=status_code)

    def _json(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise UploadBackendException(
                f"Invalid JSON from upload backend: {response.text[:200]}",
                status_code=response.status_code
            ) from e
        if not isinstance(data, dict):
            raise UploadBackendException("Unexpected response shape from upload backend")
        return data

    def _safe_json(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return {}
        return data if isinstance(data, dict) else {}


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None or str(value).strip() == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_float(value: Any) -> Optional[float]:
    if value is None or str(value).strip() == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
