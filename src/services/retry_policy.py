"""
Retry/backoff engine for backend operations.

Two independent budgets apply to every network operation:

* generic failures retry up to ``max_retries`` times with fixed delays;
* rate-limit responses retry up to ``max_rate_limit_retries`` times, waiting
  for the server's retry-after hint (or a per-operation default).

A rate-limit caused by stale session reservations triggers one reclamation
call per operation before normal rate-limit handling resumes.
"""
import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional, TypeVar
from src.core import config
from src.core.exceptions import (
    QuotaExceededError,
    RateLimitError,
    RetryExhaustedError,
    SessionNotFoundException,
    UploadBackendException
)
from src.models.dto.upload_dto import ClearStaleResponse
from src.services.cancellation import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


class RetryTrack(str, Enum):
    GENERIC = "generic"
    RATE_LIMIT = "rate_limit"
    RECLAIM = "reclaim"


class RetryNotice:
    """Describes one retry decision, handed to the on_retry hook."""

    def __init__(
        self,
        operation: str,
        track: RetryTrack,
        attempt: int,
        budget: int,
        delay: float,
        error: Exception,
        reclaimed: int = 0
    ):
        self.operation = operation
        self.track = track
        self.attempt = attempt
        self.budget = budget
        self.delay = delay
        self.error = error
        self.reclaimed = reclaimed

    def __repr__(self):
        return (
            f"RetryNotice(operation={self.operation}, track={self.track.value}, "
            f"attempt={self.attempt}/{self.budget}, delay={self.delay})"
        )


RetryHook = Callable[[RetryNotice], None]


class RetryPolicy:
    """Runs an async operation under the generic and rate-limit budgets."""

    def __init__(
        self,
        max_retries: Optional[int] = None,
        delays: Optional[List[float]] = None,
        max_rate_limit_retries: Optional[int] = None,
        sleep: Optional[Sleep] = None
    ):
        settings = config.settings
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self.delays = list(settings.retry_delays_seconds if delays is None else delays) or [0.0]
        self.max_rate_limit_retries = (
            settings.max_rate_limit_retries if max_rate_limit_retries is None else max_rate_limit_retries
        )
        self._sleep = sleep or asyncio.sleep

    def generic_delay(self, retry_number: int) -> float:
        """Delay before the given 1-based generic retry."""
        return self.delays[min(retry_number, len(self.delays)) - 1]

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        name: str,
        retry_after_default: float,
        token: Optional[CancellationToken] = None,
        reclaim: Optional[Callable[[], Awaitable[ClearStaleResponse]]] = None,
        on_retry: Optional[RetryHook] = None
    ) -> T:
        """
        Run an operation until it succeeds or a budget runs out.

        Args:
            operation: Factory producing a fresh awaitable per attempt
            name: Operation label used in logs and error messages
            retry_after_default: Rate-limit wait when the server gives no hint
            token: Aborts the attempt or the backoff sleep when fired
            reclaim: Stale-session reclamation call for quota rate-limits
            on_retry: Notified before every retry

        Returns:
            The operation's result

        Raises:
            RetryExhaustedError: If either budget is exhausted
            OperationAborted: If the token fires
            SessionNotFoundException: Immediately, the session is gone
        """
        generic_retries = 0
        rate_limit_retries = 0
        reclaim_attempted = False

        while True:
            if token:
                token.raise_if_cancelled()
            try:
                if token:
                    return await token.guard(operation())
                return await operation()

            except RateLimitError as e:
                if isinstance(e, QuotaExceededError) and reclaim and not reclaim_attempted:
                    reclaim_attempted = True
                    reclaimed = await self._reclaim(reclaim, name, token)
                    if reclaimed > 0:
                        self._notify(on_retry, RetryNotice(
                            name, RetryTrack.RECLAIM, 0, 0, 0.0, e, reclaimed=reclaimed
                        ))
                        continue

                rate_limit_retries += 1
                if rate_limit_retries > self.max_rate_limit_retries:
                    raise RetryExhaustedError(
                        f"Server busy too long, {name} failed", name, e
                    ) from e
                delay = e.retry_after if e.retry_after is not None else retry_after_default
                logger.warning(
                    "%s rate limited, retrying in %ss (%d/%d)",
                    name, delay, rate_limit_retries, self.max_rate_limit_retries
                )
                self._notify(on_retry, RetryNotice(
                    name, RetryTrack.RATE_LIMIT, rate_limit_retries, self.max_rate_limit_retries, delay, e
                ))
                await self._wait(delay, token)

            except SessionNotFoundException:
                raise

            except UploadBackendException as e:
                generic_retries += 1
                if generic_retries > self.max_retries:
                    raise RetryExhaustedError(
                        f"{name} failed after {generic_retries} attempts: {e.message}", name, e
                    ) from e
                delay = self.generic_delay(generic_retries)
                logger.warning(
                    "%s failed (%s), retrying in %ss (%d/%d)",
                    name, e.message, delay, generic_retries, self.max_retries
                )
                self._notify(on_retry, RetryNotice(
                    name, RetryTrack.GENERIC, generic_retries, self.max_retries, delay, e
                ))
                await self._wait(delay, token)

    async def _reclaim(
        self,
        reclaim: Callable[[], Awaitable[ClearStaleResponse]],
        name: str,
        token: Optional[CancellationToken]
    ) -> int:
        try:
            result = await (token.guard(reclaim()) if token else reclaim())
        except UploadBackendException as e:
            logger.warning("Stale session reclamation during %s failed: %s", name, e.message)
            return 0
        logger.info("Reclaimed %d stale session(s) during %s", result.cancelled, name)
        return result.cancelled

    async def _wait(self, delay: float, token: Optional[CancellationToken]) -> None:
        if token:
            await token.guard(self._sleep(delay))
        else:
            await self._sleep(delay)

    def _notify(self, hook: Optional[RetryHook], notice: RetryNotice) -> None:
        if hook:
            hook(notice)
