"""
Adaptive backpressure for the upload scheduler.
Turns server queue-depth and throttle signals into a concurrency limit
and an inter-chunk delay, with hysteresis between the two states.
"""
import logging
from typing import Optional
from src.core import config

logger = logging.getLogger(__name__)


class BackpressureController:
    """Tracks the throttle state and the effective concurrency limit."""

    def __init__(
        self,
        requested_concurrency: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        chunk_delay: Optional[float] = None,
        recovery_queue_depth: Optional[int] = None
    ):
        settings = config.settings
        self.max_concurrency = max_concurrency or settings.max_concurrency
        self.throttle_chunk_delay = (
            settings.throttle_chunk_delay_seconds if chunk_delay is None else chunk_delay
        )
        self.recovery_queue_depth = (
            settings.throttle_recovery_queue_depth if recovery_queue_depth is None else recovery_queue_depth
        )
        self.is_throttled = False
        self.server_queue_depth = 0
        self.inter_chunk_delay = 0.0
        self.requested_concurrency = self._clamp(
            settings.default_concurrency if requested_concurrency is None else requested_concurrency
        )
        self.effective_limit = self.requested_concurrency

    def set_requested(self, n: int) -> int:
        """
        Change the user-requested concurrency.

        Returns:
            The new effective limit (halved while throttled)
        """
        self.requested_concurrency = self._clamp(n)
        self.effective_limit = self._limit_for_state()
        return self.effective_limit

    def observe(self, queue_depth: Optional[int], throttle: bool) -> bool:
        """
        Feed one response's backpressure signals.

        Args:
            queue_depth: Server queue depth, None when the header was absent
            throttle: Server throttle flag

        Returns:
            True when the throttle state flipped
        """
        if queue_depth is not None:
            self.server_queue_depth = queue_depth

        if throttle and not self.is_throttled:
            self.is_throttled = True
            self.inter_chunk_delay = self.throttle_chunk_delay
            self.effective_limit = self._limit_for_state()
            logger.info(
                "Server throttling (queue depth %d), concurrency %d -> %d",
                self.server_queue_depth, self.requested_concurrency, self.effective_limit
            )
            return True

        if not throttle and self.is_throttled and self.server_queue_depth < self.recovery_queue_depth:
            self.is_throttled = False
            self.inter_chunk_delay = 0.0
            self.effective_limit = self._limit_for_state()
            logger.info(
                "Server recovered (queue depth %d), concurrency restored to %d",
                self.server_queue_depth, self.effective_limit
            )
            return True

        return False

    def _limit_for_state(self) -> int:
        if self.is_throttled:
            return max(1, self.requested_concurrency // 2)
        return self.requested_concurrency

    def _clamp(self, n: int) -> int:
        return max(1, min(self.max_concurrency, int(n)))
