"""Tests for the retry policy."""
from __future__ import annotations

import pytest
from hypothesis import given, strategies as st

from readpick.ratecontrol import ExponentialBackoff, NoRetry


class FakeSleep:
    def __init__(self):
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class TestShouldRetry:
    @pytest.mark.parametrize("status,expected", [
        (None, True),
        (429, True),
        (500, True),
        (502, True),
        (503, True),
        (400, False),
        (401, False),
        (404, False),
        (409, False),
    ])
    def test_statuses(self, status, expected):
        assert ExponentialBackoff().should_retry(status) is expected

    def test_no_retry_never_retries(self):
        policy = NoRetry()
        assert not policy.should_retry(None)
        assert not policy.should_retry(503)


class TestBackoff:
    @given(attempt=st.integers(min_value=0, max_value=20))
    def test_delay_bounded_by_max(self, attempt):
        """PBT: delay never exceeds max_delay plus jitter."""
        policy = ExponentialBackoff(base_delay=0.5, max_delay=8, jitter_ratio=0.5)
        delay = policy.delay_for(attempt)
        assert 0 <= delay <= 8 * 1.5

    def test_delay_monotonic_without_jitter(self):
        """PBT: without jitter, delay doubles until capped."""
        policy = ExponentialBackoff(base_delay=1, max_delay=8, jitter_ratio=0)
        assert [policy.delay_for(a) for a in range(5)] == [1, 2, 4, 8, 8]

    def test_wait_uses_injected_sleep(self):
        policy = ExponentialBackoff(base_delay=0.25, jitter_ratio=0)
        sleep = FakeSleep()
        policy._sleep = sleep  # type: ignore[method-assign]
        policy.wait_before_retry(1)
        assert sleep.calls == [0.5]

    def test_negative_delays_rejected(self):
        with pytest.raises(ValueError):
            ExponentialBackoff(base_delay=-1)

    def test_consecutive_failures_reset_on_success(self):
        policy = ExponentialBackoff()
        policy.handle_response(503)
        policy.handle_response(429)
        assert policy.consecutive_failures == 2
        policy.handle_response(200)
        assert policy.consecutive_failures == 0
