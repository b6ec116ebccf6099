import time
import logging

logger = logging.getLogger(__name__)


class RequestSpacingLimiter:
    """Keeps a fixed minimum gap between BrickLink calls and counts them.

    One instance is shared by every endpoint for the whole run. The call
    counter is what crawl budgets are checked against.
    """

    def __init__(self, min_interval_ms: int = 500):
        self.min_interval = min_interval_ms / 1000.0
        self.call_count = 0
        self._last_call_at = None

    def calculate_wait_time(self) -> float:
        """Seconds left before the next call may be issued"""
        if self._last_call_at is None:
            return 0.0
        elapsed = time.monotonic() - self._last_call_at
        return max(0.0, self.min_interval - elapsed)

    def wait_for_slot(self):
        """Block until the spacing allows another call, then record it"""
        wait_time = self.calculate_wait_time()
        if wait_time > 0:
            logger.debug(f"Rate limiting: waiting {wait_time:.3f}s before next call")
            time.sleep(wait_time)

        self._last_call_at = time.monotonic()
        self.call_count += 1

    def budget_exhausted(self, budget: int) -> bool:
        """True once ``budget`` calls were issued; a budget of 0 never runs out"""
        return budget > 0 and self.call_count >= budget
