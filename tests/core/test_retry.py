"""
Unit tests for the retry policy.
"""

import threading
import time

import pytest

from espkit.core.retry import RetryExhausted, RetryPolicy


class Flaky:
    """Callable failing a fixed number of times before returning."""

    def __init__(self, failures, error=ConnectionError("boom"), result="ok"):
        self.failures = failures
        self.error = error
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


class TestRetryPolicyValidation:
    """Test RetryPolicy construction."""

    def test_defaults(self):
        """Test default values."""
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.base_delay == 1.0
        assert policy.max_delay == 30.0

    def test_zero_attempts_rejected(self):
        """Test that at least one attempt is required."""
        with pytest.raises(ValueError, match="max_attempts"):
            RetryPolicy(max_attempts=0)

    def test_negative_delay_rejected(self):
        """Test negative delays are rejected."""
        with pytest.raises(ValueError, match="negative"):
            RetryPolicy(base_delay=-1)

    def test_jitter_out_of_range_rejected(self):
        """Test jitter must be a fraction."""
        with pytest.raises(ValueError, match="jitter"):
            RetryPolicy(jitter=1.5)


class TestRetryPolicyDelay:
    """Test backoff delay computation."""

    def test_exponential_growth(self):
        """Test delays double per attempt."""
        policy = RetryPolicy(base_delay=1.0, jitter=0)
        assert [policy.delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_delay_capped(self):
        """Test delays never exceed max_delay."""
        policy = RetryPolicy(base_delay=10.0, max_delay=15.0, jitter=0)
        assert policy.delay(5) == 15.0

    def test_jitter_stays_within_bounds(self):
        """Test jittered delays stay within the configured fraction."""
        policy = RetryPolicy(base_delay=2.0, jitter=0.5)
        for _ in range(50):
            assert 1.0 <= policy.delay(1) <= 3.0


class TestRetryPolicyCall:
    """Test RetryPolicy.call."""

    def test_success_first_try(self, retry_policy, sleeps):
        """Test no sleeping when the first attempt succeeds."""
        fn = Flaky(0)
        assert retry_policy.call(fn, retry_on=(ConnectionError,)) == "ok"
        assert fn.calls == 1
        assert sleeps == []

    def test_success_after_retries(self, retry_policy, sleeps):
        """Test transient failures are retried with backoff."""
        fn = Flaky(2)
        assert retry_policy.call(fn, retry_on=(ConnectionError,)) == "ok"
        assert fn.calls == 3
        assert sleeps == [1.0, 2.0]

    def test_exhausted(self, retry_policy, sleeps):
        """Test RetryExhausted carries the attempt count and last error."""
        fn = Flaky(10)
        with pytest.raises(RetryExhausted) as exc_info:
            retry_policy.call(fn, retry_on=(ConnectionError,))

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, ConnectionError)
        assert fn.calls == 3
        assert len(sleeps) == 2

    def test_non_retryable_propagates(self, retry_policy, sleeps):
        """Test exceptions outside retry_on are not retried."""
        fn = Flaky(1, error=KeyError("nope"))
        with pytest.raises(KeyError):
            retry_policy.call(fn, retry_on=(ConnectionError,))
        assert fn.calls == 1
        assert sleeps == []

    def test_cancelled_event_ends_retries(self, retry_policy, sleeps):
        """Test a set cancel event short-circuits the remaining attempts."""
        cancel = threading.Event()
        cancel.set()
        fn = Flaky(10)
        with pytest.raises(RetryExhausted) as exc_info:
            retry_policy.call(fn, retry_on=(ConnectionError,), cancel_event=cancel)
        assert exc_info.value.attempts == 1
        assert sleeps == []

    def test_cancel_interrupts_backoff(self):
        """Test setting the event during a long backoff ends the wait early."""
        policy = RetryPolicy(max_attempts=3, base_delay=30.0, jitter=0)
        cancel = threading.Event()
        timer = threading.Timer(0.05, cancel.set)
        fn = Flaky(10)

        start = time.monotonic()
        timer.start()
        try:
            with pytest.raises(RetryExhausted) as exc_info:
                policy.call(fn, retry_on=(ConnectionError,), cancel_event=cancel)
        finally:
            timer.cancel()

        assert time.monotonic() - start < 10
        assert exc_info.value.attempts == 1
        assert fn.calls == 1
