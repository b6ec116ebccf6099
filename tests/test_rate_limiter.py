import pytest
from unittest.mock import patch

from reconciler.utils.rate_limiter import RequestSpacingLimiter


class TestRequestSpacingLimiter:
    @pytest.fixture
    def limiter(self):
        return RequestSpacingLimiter(min_interval_ms=500)

    def test_first_call_does_not_wait(self, limiter):
        """Test the first call does not wait"""
        assert limiter.calculate_wait_time() == 0.0

        with patch('reconciler.utils.rate_limiter.time') as mock_time:
            mock_time.monotonic.return_value = 100.0
            limiter.wait_for_slot()

        mock_time.sleep.assert_not_called()
        assert limiter.call_count == 1

    def test_waits_for_remaining_interval(self, limiter):
        """Test waiting for the remaining interval"""
        with patch('reconciler.utils.rate_limiter.time') as mock_time:
            mock_time.monotonic.side_effect = [100.0, 100.2, 100.5]
            limiter.wait_for_slot()
            limiter.wait_for_slot()

        mock_time.sleep.assert_called_once()
        assert mock_time.sleep.call_args[0][0] == pytest.approx(0.3)
        assert limiter.call_count == 2

    def test_no_wait_when_calls_are_spaced(self, limiter):
        """Test no wait when calls are already spaced"""
        with patch('reconciler.utils.rate_limiter.time') as mock_time:
            mock_time.monotonic.side_effect = [100.0, 101.0, 101.0]
            limiter.wait_for_slot()
            limiter.wait_for_slot()

        mock_time.sleep.assert_not_called()

    def test_budget(self, limiter):
        """Test budget exhaustion"""
        assert not limiter.budget_exhausted(2)

        limiter.call_count = 2

        assert limiter.budget_exhausted(2)
        assert not limiter.budget_exhausted(3)

    def test_zero_budget_is_unlimited(self, limiter):
        """Test a zero budget is unlimited"""
        limiter.call_count = 10_000
        assert not limiter.budget_exhausted(0)
