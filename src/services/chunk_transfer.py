"""
Chunk transfer loop.
Sends one file's chunks in index order, skipping chunks the backend has
already confirmed, then drives assembly and waits for processing.
"""
import asyncio
import logging
from typing import Callable, Iterable, Optional
from src.core import config
from src.core.exceptions import ProcessingFailure, ProcessingTimeout
from src.models.dto.upload_dto import SessionStatus
from src.models.upload_item import UploadItem, UploadItemStatus
from src.repositories.upload_backend import UploadBackend
from src.services.backpressure import BackpressureController
from src.services.cancellation import CancellationToken
from src.services.item_registry import ItemRegistry
from src.services.retry_policy import RetryHook, RetryPolicy, Sleep

logger = logging.getLogger(__name__)

SERVER_DONE_STATUSES = frozenset({"assembling", "processing", "completed"})
SERVER_DEAD_STATUSES = frozenset({"failed", "cancelled", "expired"})


class TransferPlan:
    """What is left to send for one session."""

    def __init__(
        self,
        session_id: str,
        chunk_size: int,
        total_chunks: int,
        uploaded_chunks: Iterable[int] = (),
        needs_complete: bool = True
    ):
        self.session_id = session_id
        self.chunk_size = chunk_size
        self.total_chunks = total_chunks
        self.uploaded_chunks = {i for i in uploaded_chunks if 0 <= i < total_chunks}
        self.needs_complete = needs_complete

    def chunk_range(self, index: int, file_size: int) -> tuple:
        start = index * self.chunk_size
        return start, max(start, min(start + self.chunk_size, file_size))

    def confirmed_bytes(self, file_size: int) -> int:
        total = 0
        for index in self.uploaded_chunks:
            start, end = self.chunk_range(index, file_size)
            total += end - start
        return total

    def remaining(self) -> list:
        return [i for i in range(self.total_chunks) if i not in self.uploaded_chunks]

    def __repr__(self):
        return (
            f"TransferPlan(session_id={self.session_id}, chunk_size={self.chunk_size}, "
            f"total_chunks={self.total_chunks}, confirmed={len(self.uploaded_chunks)})"
        )


class ChunkTransfer:
    """Runs the chunk loop and the completion poll for one item at a time."""

    def __init__(
        self,
        backend: UploadBackend,
        registry: ItemRegistry,
        retry_policy: RetryPolicy,
        backpressure: BackpressureController,
        publish: Callable[[UploadItem], None],
        on_throttle_changed: Callable[[], None],
        sleep: Optional[Sleep] = None
    ):
        self.backend = backend
        self.registry = registry
        self.retry_policy = retry_policy
        self.backpressure = backpressure
        self.publish = publish
        self.on_throttle_changed = on_throttle_changed
        self._sleep = sleep or asyncio.sleep

    async def run(
        self,
        item: UploadItem,
        plan: TransferPlan,
        token: CancellationToken,
        on_retry: Optional[RetryHook] = None
    ) -> None:
        """
        Transfer the remaining chunks, assemble and wait for processing.

        Args:
            item: Item in the uploading status
            plan: Session metadata and already confirmed chunks
            token: Fired on pause or cancel
            on_retry: Retry hook forwarded to the retry engine

        Raises:
            RetryExhaustedError: If a chunk used up its retry budget
            ProcessingFailure: If the backend reports a failed session
            ProcessingTimeout: If processing does not finish in time
            OperationAborted: If the item was paused or cancelled
        """
        await self.upload_chunks(item, plan, token, on_retry)
        token.raise_if_cancelled()

        self.registry.transition(item, UploadItemStatus.ASSEMBLING)
        self.publish(item)
        if plan.needs_complete:
            await self.retry_policy.run(
                lambda: self.backend.complete_session(plan.session_id),
                name=f"complete {item.file_name}",
                retry_after_default=config.settings.chunk_retry_after_seconds,
                token=token,
                on_retry=on_retry
            )

        token.raise_if_cancelled()
        self.registry.transition(item, UploadItemStatus.PROCESSING)
        self.publish(item)
        result = await self.wait_for_processing(plan.session_id, token, on_retry)

        item.result_document_id = result.document_id
        item.storage_type = result.storage_type
        self.registry.transition(item, UploadItemStatus.COMPLETED)
        item.set_uploaded_bytes(item.file_size)
        self.publish(item)
        logger.info("Upload %s completed (document %s)", item.file_name, item.result_document_id)

    async def upload_chunks(
        self,
        item: UploadItem,
        plan: TransferPlan,
        token: CancellationToken,
        on_retry: Optional[RetryHook] = None
    ) -> None:
        confirmed = set(plan.uploaded_chunks)
        confirmed_bytes = plan.confirmed_bytes(item.file_size)
        item.set_uploaded_bytes(confirmed_bytes)
        self.publish(item)

        for index in range(plan.total_chunks):
            token.raise_if_cancelled()
            if index in confirmed:
                continue

            start, end = plan.chunk_range(index, item.file_size)

            # Re-read every chunk: throttling may start while this file is running
            delay = self.backpressure.inter_chunk_delay
            if delay > 0:
                await token.guard(self._sleep(delay))

            data = await token.guard(item.file.read(start, end))
            on_progress = self._progress_reporter(item, confirmed_bytes, end - start)

            response = await self.retry_policy.run(
                lambda index=index, data=data: self.backend.upload_chunk(
                    plan.session_id, index, data, on_progress
                ),
                name=f"chunk {index} of {item.file_name}",
                retry_after_default=config.settings.chunk_retry_after_seconds,
                token=token,
                on_retry=on_retry
            )

            if self.backpressure.observe(response.queue_depth, response.throttle):
                self.on_throttle_changed()

            confirmed.add(index)
            confirmed_bytes += end - start
            item.set_uploaded_bytes(confirmed_bytes)
            self.publish(item)
            logger.debug("Chunk %d/%d of %s confirmed", index + 1, plan.total_chunks, item.file_name)

    async def wait_for_processing(
        self,
        session_id: str,
        token: CancellationToken,
        on_retry: Optional[RetryHook] = None
    ) -> SessionStatus:
        """
        Poll the session until processing finishes.

        Raises:
            ProcessingFailure: If the backend marks the session failed
            ProcessingTimeout: After poll_max_attempts polls
        """
        settings = config.settings
        for _ in range(settings.poll_max_attempts):
            status = await self.retry_policy.run(
                lambda: self.backend.get_status(session_id),
                name=f"status of {session_id}",
                retry_after_default=settings.chunk_retry_after_seconds,
                token=token,
                on_retry=on_retry
            )
            if status.status == "completed":
                return status
            if status.status == "failed":
                raise ProcessingFailure(status.error_message or "Processing failed")
            if status.status in SERVER_DEAD_STATUSES:
                raise ProcessingFailure(f"Upload session {status.status}")

            await token.guard(self._sleep(settings.poll_interval_seconds))

        raise ProcessingTimeout("Processing timeout")

    def _progress_reporter(self, item: UploadItem, base: int, chunk_length: int):
        def on_progress(sent: int, total: int) -> None:
            live = base + min(max(sent, 0), chunk_length)
            if live > item.uploaded_bytes:
                item.set_uploaded_bytes(live)
                self.publish(item)

        return on_progress
