"""
Unit tests for HttpUploadBackend.
Uses httpx.MockTransport in place of the REST backend.
"""
import json
import httpx
import pytest
from src.core.exceptions import (
    QuotaExceededError,
    RateLimitError,
    SessionNotFoundException,
    TransientNetworkError,
    UploadBackendException
)
from src.models.dto.upload_dto import BatchInitError, InitUploadRequest, UploadSession
from src.repositories.http_upload_backend import HttpUploadBackend


def make_backend(handler, auth_token="secret"):
    return HttpUploadBackend(
        base_url="http://backend.test/api",
        auth_token=auth_token,
        transport=httpx.MockTransport(handler)
    )


class TestHttpUploadBackend:
    """Test suite for HttpUploadBackend."""

    @pytest.fixture
    def init_request(self):
        return InitUploadRequest(
            file_name="scan.pdf", file_size=10, mime_type="application/pdf", doc_type="invoice",
            relative_path="inbox/scan.pdf"
        )

    @pytest.mark.asyncio
    async def test_init_session_sends_camel_case(self, init_request):
        """Test init posts a camelCase body with bearer auth and parses the session."""
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "uploadId": "u1", "chunkSize": 4, "totalChunks": 3, "uploadedChunks": [], "expiresAt": "soon"
            })

        backend = make_backend(handler)
        session = await backend.init_session(init_request)
        await backend.aclose()

        assert seen["url"] == "http://backend.test/api/upload/init"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"] == {
            "fileName": "scan.pdf", "fileSize": 10, "mimeType": "application/pdf",
            "docType": "invoice", "relativePath": "inbox/scan.pdf"
        }
        assert session.session_id == "u1"
        assert session.chunk_size == 4
        assert session.total_chunks == 3

    @pytest.mark.asyncio
    async def test_no_auth_header_without_token(self, init_request):
        """Test an empty token sends no Authorization header."""
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"uploadId": "u1", "chunkSize": 4, "totalChunks": 3})

        backend = make_backend(handler, auth_token="")
        await backend.init_session(init_request)

        assert seen["auth"] is None

    @pytest.mark.asyncio
    async def test_init_batch_mixes_sessions_and_errors(self, init_request):
        """Test batch results keep request order and per-file errors."""
        def handler(request):
            assert request.url.path == "/api/upload/init-batch"
            assert len(json.loads(request.content)["files"]) == 2
            return httpx.Response(200, json={"sessions": [
                {"uploadId": "u1", "chunkSize": 4, "totalChunks": 3},
                {"error": "Too large", "fileName": "big.bin"}
            ]})

        backend = make_backend(handler)
        results = await backend.init_batch([init_request, init_request])

        assert isinstance(results[0], UploadSession)
        assert isinstance(results[1], BatchInitError)
        assert results[1].file_name == "big.bin"

    @pytest.mark.asyncio
    async def test_upload_chunk_multipart_progress_and_headers(self):
        """Test chunk upload sends multipart data, reports progress and reads backpressure headers."""
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["content_type"] = request.headers["Content-Type"]
            seen["body"] = request.content
            return httpx.Response(
                200,
                json={"chunkIndex": 1, "uploadedChunks": [0, 1], "totalChunks": 3, "progress": 0.66},
                headers={"X-Upload-Queue-Depth": "240", "X-Upload-Throttle": "1"}
            )

        backend = make_backend(handler)
        backend.slice_bytes = 3
        progress = []
        data = b"abcdefgh"

        result = await backend.upload_chunk("u1", 1, data, lambda sent, total: progress.append((sent, total)))

        assert seen["path"] == "/api/upload/u1/chunk"
        assert seen["content_type"].startswith("multipart/form-data; boundary=")
        assert b'name="chunkIndex"\r\n\r\n1\r\n' in seen["body"]
        assert b'name="chunk"; filename="chunk-1"' in seen["body"]
        assert data in seen["body"]
        assert progress == [(3, 8), (6, 8), (8, 8)]
        assert result.uploaded_chunks == [0, 1]
        assert result.queue_depth == 240
        assert result.throttle is True

    @pytest.mark.asyncio
    async def test_upload_chunk_without_backpressure_headers(self):
        """Test absent headers mean unknown depth and no throttle."""
        backend = make_backend(lambda request: httpx.Response(200, json={"uploadedChunks": [0]}))

        result = await backend.upload_chunk("u1", 0, b"abc")

        assert result.chunk_index == 0
        assert result.queue_depth is None
        assert result.throttle is False

    @pytest.mark.asyncio
    async def test_rate_limit_uses_retry_after_header(self):
        """Test 429 maps to RateLimitError with the Retry-After header."""
        backend = make_backend(lambda request: httpx.Response(
            429, json={"error": "Slow down"}, headers={"Retry-After": "7"}
        ))

        with pytest.raises(RateLimitError) as exc_info:
            await backend.upload_chunk("u1", 0, b"abc")

        assert not isinstance(exc_info.value, QuotaExceededError)
        assert exc_info.value.retry_after == 7.0
        assert exc_info.value.message == "Slow down"

    @pytest.mark.asyncio
    async def test_rate_limit_falls_back_to_body_retry_after(self):
        """Test the body retryAfter is used when the header is missing."""
        backend = make_backend(lambda request: httpx.Response(429, json={"retryAfter": 12}))

        with pytest.raises(RateLimitError) as exc_info:
            await backend.get_status("u1")
        assert exc_info.value.retry_after == 12.0
        assert exc_info.value.message == "HTTP 429"

    @pytest.mark.asyncio
    async def test_quota_exceeded_code(self, init_request):
        """Test the session quota code maps to QuotaExceededError."""
        backend = make_backend(lambda request: httpx.Response(
            429, json={"error": "Too many sessions", "code": "SESSION_QUOTA_EXCEEDED"}
        ))

        with pytest.raises(QuotaExceededError) as exc_info:
            await backend.init_session(init_request)
        assert exc_info.value.code == "SESSION_QUOTA_EXCEEDED"
        assert exc_info.value.retry_after is None

    @pytest.mark.asyncio
    async def test_not_found_maps_to_session_not_found(self):
        """Test 404 maps to SessionNotFoundException."""
        backend = make_backend(lambda request: httpx.Response(404, json={"error": "Unknown upload"}))

        with pytest.raises(SessionNotFoundException):
            await backend.get_status("gone")

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        """Test 5xx responses are retryable transient errors."""
        backend = make_backend(lambda request: httpx.Response(503, text="unavailable"))

        with pytest.raises(TransientNetworkError) as exc_info:
            await backend.complete_session("u1")
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_client_error_is_backend_exception(self):
        """Test other 4xx responses raise UploadBackendException."""
        backend = make_backend(lambda request: httpx.Response(400, json={"error": "Chunk out of range"}))

        with pytest.raises(UploadBackendException) as exc_info:
            await backend.upload_chunk("u1", 99, b"x")
        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "Chunk out of range"

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self):
        """Test connection failures surface as TransientNetworkError."""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        backend = make_backend(handler)

        with pytest.raises(TransientNetworkError):
            await backend.get_status("u1")

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self):
        """Test a non-JSON success body is rejected."""
        backend = make_backend(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(UploadBackendException) as exc_info:
            await backend.get_status("u1")
        assert "Invalid JSON" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_status_and_housekeeping_endpoints(self):
        """Test status, cancel, clear-stale, active and retry routes."""
        calls = []

        def handler(request):
            calls.append((request.method, request.url.path))
            path = request.url.path
            if path.endswith("/status"):
                return httpx.Response(200, json={
                    "uploadId": "u1", "status": "completed", "totalChunks": 2, "uploadedChunks": [0, 1],
                    "chunkSize": 4, "documentId": "doc-9", "storageType": "document"
                })
            if path.endswith("/clear-stale"):
                return httpx.Response(200, json={"cancelled": 3})
            if path.endswith("/active"):
                return httpx.Response(200, json={"sessions": [{
                    "uploadId": "u2", "fileName": "a.pdf", "fileSize": 8, "mimeType": "application/pdf",
                    "status": "uploading", "uploadedChunks": [0], "totalChunks": 2
                }]})
            if path.endswith("/retry"):
                return httpx.Response(200, json={"uploadId": "u1", "status": "processing"})
            return httpx.Response(200, json={})

        backend = make_backend(handler)
        status = await backend.get_status("u1")
        await backend.cancel_session("u1")
        cleared = await backend.clear_stale_sessions()
        active = await backend.get_active_sessions()
        retried = await backend.retry_session("u1")

        assert status.document_id == "doc-9"
        assert status.chunk_size == 4
        assert cleared.cancelled == 3
        assert active[0].session_id == "u2"
        assert retried.status == "processing"
        assert ("DELETE", "/api/upload/u1") in calls
        assert ("POST", "/api/upload/clear-stale") in calls
