"""
Unit tests for BackpressureController.
"""
import pytest
from src.services.backpressure import BackpressureController


class TestBackpressureController:
    """Test suite for BackpressureController."""

    @pytest.fixture
    def controller(self):
        """Controller with a requested concurrency of 6."""
        return BackpressureController(
            requested_concurrency=6, max_concurrency=100, chunk_delay=0.5, recovery_queue_depth=100
        )

    def test_throttle_halves_limit_and_adds_delay(self, controller):
        """Test entering the throttled state."""
        flipped = controller.observe(queue_depth=250, throttle=True)

        assert flipped is True
        assert controller.is_throttled
        assert controller.effective_limit == 3
        assert controller.inter_chunk_delay == 0.5
        assert controller.server_queue_depth == 250

    def test_repeated_throttle_signal_does_not_flip(self, controller):
        """Test an already throttled controller ignores further throttle flags."""
        controller.observe(250, True)

        assert controller.observe(300, True) is False
        assert controller.effective_limit == 3

    def test_recovery_requires_low_depth(self, controller):
        """Test the throttle flag clearing alone does not restore concurrency."""
        controller.observe(250, True)

        assert controller.observe(150, False) is False
        assert controller.is_throttled
        assert controller.effective_limit == 3

    def test_recovery_requires_throttle_off(self, controller):
        """Test a low depth with the throttle flag still set keeps throttling."""
        controller.observe(250, True)

        assert controller.observe(10, True) is False
        assert controller.is_throttled

    def test_recovery_restores_requested_limit(self, controller):
        """Test recovery once depth is below the threshold and throttle is off."""
        controller.observe(250, True)

        assert controller.observe(99, False) is True
        assert not controller.is_throttled
        assert controller.effective_limit == 6
        assert controller.inter_chunk_delay == 0.0

    def test_missing_depth_keeps_last_value(self, controller):
        """Test an absent queue-depth header keeps the previous depth."""
        controller.observe(250, True)

        assert controller.observe(None, False) is False
        assert controller.server_queue_depth == 250

    def test_throttled_limit_never_below_one(self):
        """Test halving a concurrency of one still admits a file."""
        controller = BackpressureController(requested_concurrency=1)
        controller.observe(500, True)

        assert controller.effective_limit == 1

    def test_set_requested_clamps_and_respects_throttle(self, controller):
        """Test requested concurrency is clamped and halved while throttled."""
        assert controller.set_requested(0) == 1
        assert controller.set_requested(500) == 100

        controller.observe(250, True)
        assert controller.set_requested(10) == 5
        assert controller.requested_concurrency == 10
