"""
Upload Manager.
Orchestrates chunked uploads: admission under an adaptive concurrency
limit, session init (batched for large sets), resumption, pause/resume,
cancellation and event publication.
"""
import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional, Set
from src.core import config
from src.core.exceptions import (
    OperationAborted,
    RetryExhaustedError,
    SessionNotFoundException,
    UploadBackendException,
    UploadClientException
)
from src.models.dto.upload_dto import (
    ActiveSession,
    BatchInitError,
    InitUploadRequest,
    RetrySessionResponse,
    UploadSession,
    UploadStats
)
from src.models.upload_event import UploadEvent, UploadEventType
from src.models.upload_item import (
    CANCELLABLE_STATUSES,
    PAUSABLE_STATUSES,
    UploadItem,
    UploadItemStatus
)
from src.repositories.upload_backend import UploadBackend
from src.services.backpressure import BackpressureController
from src.services.cancellation import CANCELLED, PAUSED, CancellationToken
from src.services.chunk_transfer import (
    SERVER_DEAD_STATUSES,
    SERVER_DONE_STATUSES,
    ChunkTransfer,
    TransferPlan
)
from src.services.event_emitter import EventEmitter, UploadListener
from src.services.item_registry import ItemRegistry, NewUpload
from src.services.retry_policy import RetryHook, RetryNotice, RetryPolicy, RetryTrack, Sleep

logger = logging.getLogger(__name__)


class UploadManager:
    """Single owner of the upload queue and every mutation of its items."""

    def __init__(
        self,
        backend: UploadBackend,
        registry: Optional[ItemRegistry] = None,
        emitter: Optional[EventEmitter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        backpressure: Optional[BackpressureController] = None,
        sleep: Optional[Sleep] = None
    ):
        self.backend = backend
        self.registry = registry if registry is not None else ItemRegistry()
        self.emitter = emitter or EventEmitter()
        self._sleep = sleep or asyncio.sleep
        self.retry_policy = retry_policy or RetryPolicy(sleep=self._sleep)
        self.backpressure = backpressure or BackpressureController()
        self.transfer = ChunkTransfer(
            backend=backend,
            registry=self.registry,
            retry_policy=self.retry_policy,
            backpressure=self.backpressure,
            publish=self._emit_item_update,
            on_throttle_changed=self._on_throttle_changed,
            sleep=self._sleep
        )

        self._started = False
        self._paused = False
        self._closing = False
        self._batch_task: Optional[asyncio.Task] = None
        self._batch_token: Optional[CancellationToken] = None
        self._active_count = 0
        self._tasks: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._fresh_plans: Dict[str, TransferPlan] = {}
        self._background: Set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    # --- Observers ---

    def subscribe(self, listener: UploadListener) -> Callable[[], None]:
        return self.emitter.subscribe(listener)

    # --- Queue contents ---

    def add_files(self, files: Iterable[NewUpload]) -> List[UploadItem]:
        """
        Enqueue files without starting any transfer.

        Args:
            files: Files to enqueue

        Returns:
            Snapshots of the new queued items
        """
        items = self.registry.add(files)
        for item in items:
            self._emit_item_update(item)
        logger.info("Queued %d file(s)", len(items))
        return [item.snapshot() for item in items]

    def remove_file(self, item_id: str) -> bool:
        """Remove a queued or finished item; in-flight items are kept."""
        removed = self.registry.remove(item_id)
        if removed:
            self._fresh_plans.pop(item_id, None)
            self._emit_global_progress()
        return removed

    def clear_finished(self) -> int:
        cleared = self.registry.clear_finished()
        self._emit_global_progress()
        return cleared

    def get_items(self) -> List[UploadItem]:
        return [item.snapshot() for item in self.registry.all()]

    def get_item(self, item_id: str) -> Optional[UploadItem]:
        item = self.registry.get(item_id)
        return item.snapshot() if item else None

    def get_stats(self) -> UploadStats:
        return self.registry.stats()

    def update_doc_type(self, item_id: str, doc_type: str) -> bool:
        item = self.registry.get(item_id)
        if item is None or item.status != UploadItemStatus.QUEUED:
            return False
        item.doc_type = doc_type
        self._emit_item_update(item)
        return True

    def update_all_doc_types(self, doc_type: str) -> int:
        queued = self.registry.queued()
        for item in queued:
            item.doc_type = doc_type
            self._emit_item_update(item)
        return len(queued)

    # --- Concurrency and backpressure ---

    def set_concurrency(self, n: int) -> int:
        """
        Set the requested number of parallel files.

        Returns:
            The effective limit after clamping and throttling
        """
        limit = self.backpressure.set_requested(n)
        logger.info("Concurrency set to %d (effective %d)", self.backpressure.requested_concurrency, limit)
        self._pump()
        return limit

    def get_concurrency(self) -> int:
        return self.backpressure.effective_limit

    @property
    def is_throttled(self) -> bool:
        return self.backpressure.is_throttled

    @property
    def server_queue_depth(self) -> int:
        return self.backpressure.server_queue_depth

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def active_count(self) -> int:
        return self._active_count

    # --- Run control ---

    def start_nowait(self) -> None:
        """
        Start uploading every queued file without waiting for a batch init.

        Large queued sets first get their sessions from one batch init
        request, run as a background task; admission waits for it. Files
        the batch could not initialize fall back to individual init when
        they are admitted. Calling this while a batch init is running
        does not send another one.
        """
        self._paused = False
        self._started = True
        if self._batch_task is None and not self._closing:
            need_init = [item for item in self.registry.queued() if not item.server_session_id]
            if len(need_init) >= config.settings.batch_init_threshold:
                self._batch_token = CancellationToken()
                self._batch_task = asyncio.get_running_loop().create_task(
                    self._batch_init_sessions(need_init, self._batch_token)
                )
                self._batch_task.add_done_callback(self._on_batch_done)
        self._pump()

    async def start(self) -> None:
        """Start uploading and wait until any batch init has finished."""
        self.start_nowait()
        if self._batch_task is not None:
            await asyncio.wait({self._batch_task})

    def pause(self) -> None:
        """Pause in-flight uploads and stop admitting queued ones."""
        if self._paused:
            return
        self._paused = True
        if self._batch_token is not None:
            self._batch_token.cancel(PAUSED)
        for item in self.registry.with_status(*PAUSABLE_STATUSES):
            self.registry.transition(item, UploadItemStatus.PAUSED)
            token = self._tokens.get(item.id)
            if token:
                token.cancel(PAUSED)
            self._emit_item_update(item)
        logger.info("Uploads paused")
        self._update_idle()

    def resume(self) -> None:
        self._started = True
        self._paused = False
        for item in self.registry.with_status(UploadItemStatus.PAUSED):
            self.registry.transition(item, UploadItemStatus.QUEUED)
            self._emit_item_update(item)
        logger.info("Uploads resumed")
        self._pump()

    def cancel_file(self, item_id: str) -> bool:
        """
        Cancel one item and notify the backend without waiting for it.

        Returns:
            True if the item was cancelled, False for unknown or finished items
        """
        item = self.registry.get(item_id)
        if item is None or item.status not in CANCELLABLE_STATUSES:
            return False

        token = self._tokens.get(item_id)
        if token:
            token.cancel(CANCELLED)
        self.registry.transition(item, UploadItemStatus.CANCELLED)
        self._fresh_plans.pop(item_id, None)
        self._emit_item_update(item)

        if item.server_session_id:
            self._spawn(self._cancel_remote(item.server_session_id))
        self._check_all_completed()
        return True

    def cancel_all(self) -> int:
        self._paused = True
        if self._batch_token is not None:
            self._batch_token.cancel(CANCELLED)
        cancelled = 0
        for item in self.registry.with_status(*CANCELLABLE_STATUSES):
            if self.cancel_file(item.id):
                cancelled += 1
        logger.info("Cancelled %d upload(s)", cancelled)
        self._update_idle()
        return cancelled

    def retry_file(self, item_id: str) -> bool:
        """Re-queue a failed item with its counters reset."""
        item = self.registry.get(item_id)
        if item is None or item.status != UploadItemStatus.FAILED:
            return False
        self._requeue_failed(item)
        self._pump()
        return True

    def retry_all_failed(self) -> int:
        failed = self.registry.with_status(UploadItemStatus.FAILED)
        for item in failed:
            self._requeue_failed(item)
        self._pump()
        return len(failed)

    async def wait_until_idle(self) -> None:
        """Wait until no transfer is in flight and nothing can be admitted."""
        await self._idle.wait()

    async def aclose(self) -> None:
        """
        Stop every in-flight transfer and background notification.

        Nothing is admitted afterwards. Items that were initializing or
        uploading are left paused so their sessions can be resumed.
        """
        self._closing = True
        self._started = False
        if self._batch_token is not None:
            self._batch_token.cancel(CANCELLED)
        for item in self.registry.with_status(*PAUSABLE_STATUSES):
            self.registry.transition(item, UploadItemStatus.PAUSED)
            token = self._tokens.get(item.id)
            if token:
                token.cancel(PAUSED)
            self._emit_item_update(item)

        while self._tasks or self._background or self._batch_task is not None:
            tasks = list(self._tasks.values()) + list(self._background)
            if self._batch_task is not None:
                tasks.append(self._batch_task)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Upload manager closed")

    # --- Backend session housekeeping ---

    async def list_server_sessions(self) -> List[ActiveSession]:
        return await self.backend.get_active_sessions()

    async def retry_server_session(self, session_id: str) -> RetrySessionResponse:
        return await self.backend.retry_session(session_id)

    async def clear_stale_sessions(self) -> int:
        result = await self.backend.clear_stale_sessions()
        logger.info("Cleared %d stale session(s)", result.cancelled)
        return result.cancelled

    # --- Scheduling ---

    def _pump(self) -> None:
        if self._started and not self._paused and not self._closing and self._batch_task is None:
            for item in self.registry.queued():
                if self._active_count >= self.backpressure.effective_limit:
                    break
                if item.id in self._tasks:
                    continue
                self._admit(item)
        self._update_idle()

    def _admit(self, item: UploadItem) -> None:
        token = CancellationToken()
        self._tokens[item.id] = token
        self._active_count += 1
        self.registry.transition(item, UploadItemStatus.INITIALIZING)
        self._emit_item_update(item)

        task = asyncio.get_running_loop().create_task(self._run_item(item, token))
        self._tasks[item.id] = task
        task.add_done_callback(lambda t, item_id=item.id: self._on_task_done(item_id, t))
        logger.info("Admitted %s (%d active)", item.file_name, self._active_count)

    def _on_task_done(self, item_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(item_id) is task:
            del self._tasks[item_id]
            self._tokens.pop(item_id, None)
        self._active_count -= 1
        self._pump()
        self._check_all_completed()

    def _on_batch_done(self, task: asyncio.Task) -> None:
        if self._batch_task is task:
            self._batch_task = None
            self._batch_token = None
        self._pump()
        self._check_all_completed()

    def _update_idle(self) -> None:
        if self._active_count == 0 and self._batch_task is None:
            self._idle.set()
        else:
            self._idle.clear()

    def _check_all_completed(self) -> None:
        if self._tasks or self._batch_task is not None or self._closing:
            return
        stats = self.registry.stats()
        if stats.total and stats.queued == 0 and stats.uploading == 0 and stats.paused == 0:
            logger.info("All uploads finished")
            self.emitter.emit(UploadEvent(UploadEventType.ALL_COMPLETED))

    # --- Per-item pipeline ---

    async def _run_item(self, item: UploadItem, token: CancellationToken) -> None:
        on_retry = self._retry_hook(item)
        try:
            plan = await self._prepare_session(item, token, on_retry)
            token.raise_if_cancelled()
            self.registry.transition(item, UploadItemStatus.UPLOADING)
            self._emit_item_update(item)
            await self.transfer.run(item, plan, token, on_retry)
        except OperationAborted as e:
            logger.info("Upload %s stopped (%s)", item.file_name, e.reason)
        except Exception as e:
            if token.is_cancelled:
                logger.info("Upload %s stopped (%s)", item.file_name, token.reason)
                return
            self._fail(item, e)

    async def _prepare_session(
        self,
        item: UploadItem,
        token: CancellationToken,
        on_retry: RetryHook
    ) -> TransferPlan:
        fresh = self._fresh_plans.pop(item.id, None)
        if fresh is not None and fresh.session_id == item.server_session_id:
            return fresh

        if item.server_session_id:
            plan = await self._resume_plan(item, token, on_retry)
            if plan is not None:
                return plan
            item.forget_session()

        session = await self.retry_policy.run(
            lambda: self.backend.init_session(self._init_request(item)),
            name=f"init {item.file_name}",
            retry_after_default=config.settings.init_retry_after_seconds,
            token=token,
            reclaim=self.backend.clear_stale_sessions,
            on_retry=on_retry
        )
        item.server_session_id = session.session_id
        item.chunk_size = session.chunk_size
        return self._plan_from_session(session)

    async def _resume_plan(
        self,
        item: UploadItem,
        token: CancellationToken,
        on_retry: RetryHook
    ) -> Optional[TransferPlan]:
        session_id = item.server_session_id
        try:
            status = await self.retry_policy.run(
                lambda: self.backend.get_status(session_id),
                name=f"status of {item.file_name}",
                retry_after_default=config.settings.chunk_retry_after_seconds,
                token=token,
                on_retry=on_retry
            )
        except SessionNotFoundException:
            logger.warning("Session %s of %s is gone, starting a new session", session_id, item.file_name)
            return None

        if status.status in SERVER_DEAD_STATUSES:
            logger.warning(
                "Session %s of %s is %s, starting a new session", session_id, item.file_name, status.status
            )
            return None

        chunk_size = status.chunk_size or item.chunk_size
        if not chunk_size:
            chunk_size = max(1, -(-item.file_size // max(status.total_chunks, 1)))
            logger.warning(
                "Backend did not report the chunk size of session %s, estimating %d bytes",
                session_id, chunk_size
            )
        item.chunk_size = chunk_size
        total_chunks = status.total_chunks or -(-item.file_size // chunk_size)

        if status.status in SERVER_DONE_STATUSES:
            return TransferPlan(
                session_id, chunk_size, total_chunks, range(total_chunks), needs_complete=False
            )
        return TransferPlan(session_id, chunk_size, total_chunks, status.uploaded_chunks)

    async def _batch_init_sessions(self, need_init: List[UploadItem], token: CancellationToken) -> None:
        requests = [self._init_request(item) for item in need_init]
        try:
            results = await self.retry_policy.run(
                lambda: self.backend.init_batch(requests),
                name="batch init",
                retry_after_default=config.settings.init_retry_after_seconds,
                token=token,
                reclaim=self.backend.clear_stale_sessions,
                on_retry=self._retry_hook(None)
            )
        except OperationAborted as e:
            logger.info("Batch init stopped (%s)", e.reason)
            return
        except (RetryExhaustedError, UploadBackendException) as e:
            logger.warning("Batch init failed, falling back to individual init: %s", e)
            self._emit_error("Batch init failed, falling back to individual init")
            return

        initialized = 0
        for item, result in zip(need_init, results):
            if isinstance(result, BatchInitError):
                logger.warning("Batch init rejected %s: %s", item.file_name, result.error)
                continue
            if self.registry.get(item.id) is not item or item.status != UploadItemStatus.QUEUED \
                    or item.server_session_id:
                logger.info("Releasing unused batch session %s of %s", result.session_id, item.file_name)
                self._spawn(self._cancel_remote(result.session_id))
                continue
            item.server_session_id = result.session_id
            item.chunk_size = result.chunk_size
            self._fresh_plans[item.id] = self._plan_from_session(result)
            initialized += 1
        logger.info("Batch init created %d of %d session(s)", initialized, len(need_init))

    def _plan_from_session(self, session: UploadSession) -> TransferPlan:
        return TransferPlan(
            session.session_id, session.chunk_size, session.total_chunks, session.uploaded_chunks
        )

    def _init_request(self, item: UploadItem) -> InitUploadRequest:
        return InitUploadRequest(
            file_name=item.file_name,
            file_size=item.file_size,
            mime_type=item.mime_type,
            doc_type=item.doc_type,
            relative_path=item.relative_path
        )

    def _requeue_failed(self, item: UploadItem) -> None:
        self.registry.transition(item, UploadItemStatus.QUEUED)
        item.reset_progress()
        self._emit_item_update(item)

    def _fail(self, item: UploadItem, error: Exception) -> None:
        if isinstance(error, UploadClientException):
            message = error.message
            logger.warning("Upload %s failed: %s", item.file_name, message)
        else:
            message = str(error) or "Upload failed"
            logger.exception("Upload %s failed unexpectedly", item.file_name)

        self.registry.transition(item, UploadItemStatus.FAILED)
        item.error = message
        self._emit_item_update(item)
        self._emit_error(f"{item.file_name}: {message}")

    def _retry_hook(self, item: Optional[UploadItem]) -> RetryHook:
        def on_retry(notice: RetryNotice) -> None:
            if notice.track == RetryTrack.GENERIC:
                if item is not None:
                    item.retries += 1
                    self._emit_item_update(item)
            elif notice.track == RetryTrack.RATE_LIMIT:
                self._emit_error(
                    f"Server busy, {notice.operation} paused for {notice.delay:g}s "
                    f"({notice.attempt}/{notice.budget})"
                )
            else:
                self._emit_error(f"Cleared {notice.reclaimed} stale session(s), retrying...")

        return on_retry

    async def _cancel_remote(self, session_id: str) -> None:
        try:
            await self.backend.cancel_session(session_id)
        except UploadBackendException as e:
            logger.warning("Best-effort cancel of session %s failed: %s", session_id, e.message)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # --- Events ---

    def _on_throttle_changed(self) -> None:
        self.emitter.emit(UploadEvent(
            UploadEventType.THROTTLE_CHANGED,
            is_throttled=self.backpressure.is_throttled,
            server_queue_depth=self.backpressure.server_queue_depth
        ))
        self._pump()

    def _emit_item_update(self, item: UploadItem) -> None:
        self.emitter.emit(UploadEvent(UploadEventType.ITEM_UPDATED, item=item.snapshot()))
        self._emit_global_progress()

    def _emit_global_progress(self) -> None:
        if len(self.registry) == 0:
            return
        self.emitter.emit(UploadEvent(
            UploadEventType.GLOBAL_PROGRESS, global_progress=self.registry.global_progress()
        ))

    def _emit_error(self, message: str) -> None:
        self.emitter.emit(UploadEvent(UploadEventType.ERROR, error=message))
