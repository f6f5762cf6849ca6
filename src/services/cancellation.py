"""
Cooperative cancellation for upload operations.
Each admitted item gets a token that its awaits are raced against.
"""
import asyncio
from typing import Awaitable, Optional, TypeVar
from src.core.exceptions import OperationAborted

T = TypeVar("T")

PAUSED = "paused"
CANCELLED = "cancelled"


class CancellationToken:
    """Abort signal shared by every await of one item's operation."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = CANCELLED) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationAborted(self.reason or CANCELLED)

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await a coroutine unless the token fires first.

        Args:
            awaitable: Coroutine or future to run

        Returns:
            The awaitable's result

        Raises:
            OperationAborted: If the token fired before the awaitable finished;
                the awaitable is cancelled in that case
        """
        task = asyncio.ensure_future(awaitable)
        if self._event.is_set():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            self.raise_if_cancelled()

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise OperationAborted(self.reason or CANCELLED)
