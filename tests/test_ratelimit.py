"""Tests for the failed-attempt limiter.

The budget refills linearly, so with the defaults (10 attempts per hour) one
attempt comes back every six minutes.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from warden.service.ratelimit import RateLimiter


@pytest.fixture
def limiter(memory_store, settings, clock):
    return RateLimiter(memory_store, settings, clock=clock)


class TestRateLimiter:
    """Tests for RateLimiter."""

    def test_fresh_identifier_has_full_budget(self, limiter):
        """Test an unknown identifier is not limited."""
        assert limiter.attempts_left("acct") == 10
        assert limiter.is_limited("acct") is False
        assert limiter.retry_after("acct") is None

    def test_failures_spend_budget(self, limiter):
        """Test each failure spends one attempt."""
        assert limiter.record_failure("acct") == 9
        assert limiter.record_failure("acct") == 8

    def test_limited_after_max_failures(self, limiter):
        """Test the identifier is limited once the budget is spent."""
        for _ in range(10):
            limiter.record_failure("acct")

        assert limiter.is_limited("acct") is True
        assert limiter.retry_after("acct") == timedelta(minutes=6)

    def test_budget_never_negative(self, limiter):
        """Test further failures do not push the budget below zero."""
        for _ in range(15):
            remaining = limiter.record_failure("acct")
        assert remaining == 0

    def test_refill_over_time(self, limiter, clock):
        """Test one attempt comes back per window / max_attempts."""
        for _ in range(10):
            limiter.record_failure("acct")
        clock.advance(minutes=7)

        assert limiter.is_limited("acct") is False
        assert limiter.attempts_left("acct") == pytest.approx(7 / 6)

    def test_refill_capped_at_max(self, limiter, clock):
        """Test the budget never refills past max_attempts."""
        limiter.record_failure("acct")
        clock.advance(days=2)

        assert limiter.attempts_left("acct") == 10

    def test_wait_grows_with_consecutive_failures(self, limiter, clock):
        """Test failing again right after a refill keeps the caller limited."""
        for _ in range(10):
            limiter.record_failure("acct")
        clock.advance(minutes=7)
        limiter.record_failure("acct")

        assert limiter.is_limited("acct") is True
        assert limiter.retry_after("acct").total_seconds() == pytest.approx(300)

    def test_reset_clears_record(self, limiter):
        """Test a successful check resets the identifier."""
        for _ in range(10):
            limiter.record_failure("acct")
        limiter.reset("acct")

        assert limiter.attempts_left("acct") == 10

    def test_identifiers_are_independent(self, limiter):
        """Test failures for one identifier do not affect another."""
        for _ in range(10):
            limiter.record_failure("acct-a")

        assert limiter.is_limited("acct-b") is False

    def test_limit_logged(self, limiter):
        """Test exhausting the budget emits an info event."""
        with patch("warden.service.ratelimit.logger") as mock_logger:
            for _ in range(10):
                limiter.record_failure("acct")

        mock_logger.info.assert_called_once()
        assert mock_logger.info.call_args[0][0] == "sign_in_rate_limited"
