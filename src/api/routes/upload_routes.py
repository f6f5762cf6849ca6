"""
Upload control API routes.
Lets a UI enqueue local files, drive the upload manager and follow its events.
"""
import asyncio
import logging
from typing import AsyncIterator, List
from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import StreamingResponse
from src.core.dependencies import get_file_service, get_upload_manager
from src.core.exceptions import InvalidTransitionException, ItemNotFoundException
from src.models.dto.upload_dto import (
    ActiveSession,
    AddFilesRequest,
    ClearStaleResponse,
    ConcurrencyRequest,
    DocTypeRequest,
    RetrySessionResponse,
    UploadEventResponse,
    UploadItemListResponse,
    UploadItemResponse,
    UploadStatsResponse
)
from src.models.upload_event import UploadEvent
from src.models.upload_item import UploadItem
from src.services.file_service import FileService
from src.services.upload_manager import UploadManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/api", tags=["Uploads"])

KEEPALIVE_SECONDS = 15.0


def _item_list(items: List[UploadItem]) -> UploadItemListResponse:
    return UploadItemListResponse(
        items=[UploadItemResponse.from_item(item) for item in items],
        count=len(items)
    )


def _stats(manager: UploadManager) -> UploadStatsResponse:
    return UploadStatsResponse(
        **manager.get_stats().model_dump(),
        concurrency=manager.get_concurrency(),
        is_throttled=manager.is_throttled,
        server_queue_depth=manager.server_queue_depth
    )


def _require_item(manager: UploadManager, item_id: str) -> UploadItem:
    item = manager.get_item(item_id)
    if item is None:
        raise ItemNotFoundException(f"Upload {item_id} not found")
    return item


def format_sse(event: UploadEvent) -> str:
    """Render one upload event as a server-sent event frame."""
    payload = UploadEventResponse.from_event(event).model_dump_json(by_alias=True, exclude_none=True)
    return f"event: {event.type.value}\ndata: {payload}\n\n"


async def event_stream(manager: UploadManager, request: Request) -> AsyncIterator[str]:
    """
    Forward manager events to one client until it disconnects.

    Args:
        manager: Upload manager to subscribe to
        request: Client request, polled for disconnection

    Yields:
        Server-sent event frames, with comment frames as keepalives
    """
    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = manager.subscribe(queue.put_nowait)
    try:
        while not await request.is_disconnected():
            try:
                event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield format_sse(event)
    finally:
        unsubscribe()
        logger.debug("Event stream closed")


# --- Queue ---

@router.post("/uploads", response_model=UploadItemListResponse, status_code=status.HTTP_201_CREATED)
async def add_files(
    request: AddFilesRequest,
    auto_start: bool = Query(default=False, description="Start uploading right away"),
    manager: UploadManager = Depends(get_upload_manager),
    file_service: FileService = Depends(get_file_service)
):
    """
    Enqueue local files for upload.

    Every path is validated before any file is enqueued.
    """
    uploads = file_service.prepare_uploads(request.files)
    items = manager.add_files(uploads)
    if auto_start:
        manager.start_nowait()
    return _item_list(items)


@router.get("/uploads", response_model=UploadItemListResponse)
async def get_items(manager: UploadManager = Depends(get_upload_manager)):
    return _item_list(manager.get_items())


@router.get("/uploads/stats", response_model=UploadStatsResponse)
async def get_stats(manager: UploadManager = Depends(get_upload_manager)):
    """Aggregate counters plus the current concurrency and throttle state."""
    return _stats(manager)


@router.get("/uploads/events")
async def stream_events(request: Request, manager: UploadManager = Depends(get_upload_manager)):
    """Server-sent event stream of upload events."""
    return StreamingResponse(event_stream(manager, request), media_type="text/event-stream")


# --- Global operations ---

@router.post("/uploads/start", response_model=UploadStatsResponse)
async def start_uploads(manager: UploadManager = Depends(get_upload_manager)):
    manager.start_nowait()
    return _stats(manager)


@router.post("/uploads/pause", response_model=UploadStatsResponse)
async def pause_uploads(manager: UploadManager = Depends(get_upload_manager)):
    manager.pause()
    return _stats(manager)


@router.post("/uploads/resume", response_model=UploadStatsResponse)
async def resume_uploads(manager: UploadManager = Depends(get_upload_manager)):
    manager.resume()
    return _stats(manager)


@router.post("/uploads/cancel", response_model=UploadStatsResponse)
async def cancel_all_uploads(manager: UploadManager = Depends(get_upload_manager)):
    manager.cancel_all()
    return _stats(manager)


@router.post("/uploads/retry-failed", response_model=UploadStatsResponse)
async def retry_failed_uploads(manager: UploadManager = Depends(get_upload_manager)):
    manager.retry_all_failed()
    return _stats(manager)


@router.post("/uploads/clear-finished", response_model=UploadStatsResponse)
async def clear_finished_uploads(manager: UploadManager = Depends(get_upload_manager)):
    manager.clear_finished()
    return _stats(manager)


@router.put("/uploads/concurrency", response_model=UploadStatsResponse)
async def set_concurrency(
    request: ConcurrencyRequest,
    manager: UploadManager = Depends(get_upload_manager)
):
    """Set the requested parallel file count, clamped to the configured range."""
    manager.set_concurrency(request.concurrency)
    return _stats(manager)


@router.patch("/uploads/doc-type", response_model=UploadItemListResponse)
async def update_all_doc_types(
    request: DocTypeRequest,
    manager: UploadManager = Depends(get_upload_manager)
):
    """Set the doc type of every queued file."""
    manager.update_all_doc_types(request.doc_type)
    return _item_list(manager.get_items())


# --- Backend sessions ---

@router.get("/uploads/sessions", response_model=List[ActiveSession], tags=["Sessions"])
async def list_server_sessions(manager: UploadManager = Depends(get_upload_manager)):
    """Unfinished upload sessions known to the backend."""
    return await manager.list_server_sessions()


@router.post("/uploads/sessions/clear-stale", response_model=ClearStaleResponse, tags=["Sessions"])
async def clear_stale_sessions(manager: UploadManager = Depends(get_upload_manager)):
    cancelled = await manager.clear_stale_sessions()
    return ClearStaleResponse(cancelled=cancelled)


@router.post("/uploads/sessions/{session_id}/retry", response_model=RetrySessionResponse, tags=["Sessions"])
async def retry_server_session(session_id: str, manager: UploadManager = Depends(get_upload_manager)):
    """Ask the backend to re-run processing of a failed session."""
    return await manager.retry_server_session(session_id)


# --- Per-item operations ---

@router.get("/uploads/{item_id}", response_model=UploadItemResponse)
async def get_item(item_id: str, manager: UploadManager = Depends(get_upload_manager)):
    return UploadItemResponse.from_item(_require_item(manager, item_id))


@router.post("/uploads/{item_id}/cancel", response_model=UploadItemResponse)
async def cancel_upload(item_id: str, manager: UploadManager = Depends(get_upload_manager)):
    item = _require_item(manager, item_id)
    if not manager.cancel_file(item_id):
        raise InvalidTransitionException(f"Upload {item_id} is already {item.status.value}")
    return UploadItemResponse.from_item(manager.get_item(item_id))


@router.post("/uploads/{item_id}/retry", response_model=UploadItemResponse)
async def retry_upload(item_id: str, manager: UploadManager = Depends(get_upload_manager)):
    """Re-queue a failed upload."""
    item = _require_item(manager, item_id)
    if not manager.retry_file(item_id):
        raise InvalidTransitionException(f"Upload {item_id} is {item.status.value}, only failed uploads can be retried")
    return UploadItemResponse.from_item(manager.get_item(item_id))


@router.delete("/uploads/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_upload(item_id: str, manager: UploadManager = Depends(get_upload_manager)):
    """Remove a queued or finished upload from the list."""
    item = _require_item(manager, item_id)
    if not manager.remove_file(item_id):
        raise InvalidTransitionException(f"Upload {item_id} is {item.status.value} and cannot be removed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch("/uploads/{item_id}/doc-type", response_model=UploadItemResponse)
async def update_doc_type(
    item_id: str,
    request: DocTypeRequest,
    manager: UploadManager = Depends(get_upload_manager)
):
    item = _require_item(manager, item_id)
    if not manager.update_doc_type(item_id, request.doc_type):
        raise InvalidTransitionException(f"Upload {item_id} is {item.status.value}, only queued uploads can change doc type")
    return UploadItemResponse.from_item(manager.get_item(item_id))
