"""Tests for RetryPolicy and call_with_retry."""

import pytest

from specbuilder.errors import FetchError, ResponseFormatError
from specbuilder.retry import RetryPolicy, call_with_retry


class TestRetryPolicy:
    def test_exponential_delays_are_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)
        assert [policy.delay_for(n) for n in range(7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]

    def test_fixed_delay(self):
        policy = RetryPolicy(base_delay=2.5, exponential=False)
        assert policy.delay_for(0) == policy.delay_for(5) == 2.5

    def test_jitter_stays_in_range(self):
        policy = RetryPolicy(base_delay=1.0, jitter=0.5)
        for _ in range(20):
            assert 1.0 <= policy.delay_for(0) <= 1.5

    def test_exhausted(self):
        policy = RetryPolicy(max_attempts=3)
        assert not policy.exhausted(2)
        assert policy.exhausted(3)


class Flaky:
    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error or FetchError("temporary")
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class TestCallWithRetry:
    def test_succeeds_after_failures(self):
        func = Flaky(2)
        sleeps = []

        result = call_with_retry(func, RetryPolicy(max_attempts=3), (FetchError,), sleep=sleeps.append)

        assert result == "ok"
        assert func.calls == 3
        assert sleeps == [1.0, 2.0]

    def test_raises_after_max_attempts(self):
        func = Flaky(5)
        sleeps = []

        with pytest.raises(FetchError):
            call_with_retry(func, RetryPolicy(max_attempts=3), (FetchError,), sleep=sleeps.append)

        assert func.calls == 3
        assert len(sleeps) == 2

    def test_should_retry_filter(self):
        func = Flaky(1, error=ResponseFormatError("bad shape"))

        with pytest.raises(ResponseFormatError):
            call_with_retry(
                func,
                RetryPolicy(),
                (FetchError,),
                should_retry=lambda e: not isinstance(e, ResponseFormatError),
                sleep=lambda s: None,
            )
        assert func.calls == 1

    def test_other_exceptions_propagate(self):
        func = Flaky(1, error=KeyError("nope"))

        with pytest.raises(KeyError):
            call_with_retry(func, RetryPolicy(), (FetchError,), sleep=lambda s: None)
        assert func.calls == 1
