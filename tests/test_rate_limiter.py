"""Tests for the sliding-window rate limiter."""

import pytest

from thread_dispatch.config import RateLimitPolicy
from thread_dispatch.rate_limiter import (
    RateLimitEntry,
    RateLimitRegistry,
    check_rate_limit,
    record_request,
)


@pytest.fixture
def policy() -> RateLimitPolicy:
    return RateLimitPolicy(window_ms=60_000, max_requests=3)


class TestCheckRateLimit:
    """Test check_rate_limit."""

    def test_no_history_allows_full_quota(self, policy: RateLimitPolicy) -> None:
        """Test an absent history is allowed with full remaining quota."""
        result = check_rate_limit(None, policy, now=1_000_000)
        assert result.allowed is True
        assert result.remaining == 3
        assert result.retry_after_ms is None

    def test_empty_history_allows(self, policy: RateLimitPolicy) -> None:
        """Test an empty history is allowed."""
        result = check_rate_limit(RateLimitEntry(), policy, now=1_000_000)
        assert result.allowed is True
        assert result.remaining == 3

    def test_under_limit(self, policy: RateLimitPolicy) -> None:
        """Test remaining counts down with recent requests."""
        entry = RateLimitEntry(timestamps=[990_000, 995_000])
        result = check_rate_limit(entry, policy, now=1_000_000)
        assert result.allowed is True
        assert result.remaining == 1

    def test_at_limit_denied_with_retry_after(self, policy: RateLimitPolicy) -> None:
        """Test denial reports time until the oldest request expires."""
        entry = RateLimitEntry(timestamps=[950_000, 960_000, 970_000])
        result = check_rate_limit(entry, policy, now=1_000_000)
        assert result.allowed is False
        assert result.remaining == 0
        assert result.retry_after_ms == 10_000

    def test_timestamp_exactly_window_old_is_expired(self, policy: RateLimitPolicy) -> None:
        """Test the window is half-open."""
        entry = RateLimitEntry(timestamps=[940_000, 960_000, 970_000])
        result = check_rate_limit(entry, policy, now=1_000_000)
        assert result.allowed is True
        assert result.remaining == 1

    def test_expired_timestamps_ignored(self, policy: RateLimitPolicy) -> None:
        """Test requests outside the window do not count."""
        entry = RateLimitEntry(timestamps=[1, 2, 3])
        result = check_rate_limit(entry, policy, now=1_000_000)
        assert result.allowed is True
        assert result.remaining == 3

    def test_zero_allowance_always_denied(self) -> None:
        """Test a policy allowing no requests denies even with no history."""
        result = check_rate_limit(None, RateLimitPolicy(window_ms=1000, max_requests=0), now=5)
        assert result.allowed is False
        assert result.retry_after_ms == 1000

    def test_never_more_than_max_in_any_window(self, policy: RateLimitPolicy) -> None:
        """Test admitting greedily never exceeds the allowance in any window."""
        entry = None
        admitted = []
        for now in range(0, 300_000, 7_000):
            if check_rate_limit(entry, policy, now).allowed:
                entry = record_request(entry, now, policy.window_ms)
                admitted.append(now)

        for start in admitted:
            in_window = [t for t in admitted if start <= t < start + policy.window_ms]
            assert len(in_window) <= policy.max_requests


class TestRecordRequest:
    """Test record_request."""

    def test_appends_now(self) -> None:
        """Test the current timestamp is appended."""
        entry = record_request(None, 1000, 60_000)
        assert entry.timestamps == [1000]

    def test_prunes_expired(self) -> None:
        """Test expired timestamps are dropped when recording."""
        entry = record_request(RateLimitEntry(timestamps=[1, 50_000]), 70_000, 60_000)
        assert entry.timestamps == [50_000, 70_000]


class TestRateLimitRegistry:
    """Test RateLimitRegistry."""

    def test_tracks_users_independently(self, policy: RateLimitPolicy) -> None:
        """Test one user's requests do not limit another."""
        registry = RateLimitRegistry()
        for now in (1, 2, 3):
            registry.record("user-a", policy, now)

        assert registry.check("user-a", policy, 4).allowed is False
        assert registry.check("user-b", policy, 4).allowed is True

    def test_get_and_set_entry(self) -> None:
        """Test entries can be read and replaced."""
        registry = RateLimitRegistry()
        assert registry.get_entry("user-a") is None
        registry.set_entry("user-a", RateLimitEntry(timestamps=[5]))
        assert registry.get_entry("user-a").timestamps == [5]
