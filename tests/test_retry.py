"""Tests for the retry policy and error classification."""

import httpx
import pytest

from tasksync.core.config import RetryConfig
from tasksync.core.sync import (
    OrderingConflictError,
    PermanentRejectionError,
    RetryPolicy,
    TransientDeliveryError,
    is_retryable_error,
)


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_default_schedule(self) -> None:
        """Test delays double from one second."""
        policy = RetryPolicy()
        assert [policy.calculate_delay(i) for i in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_delay_is_capped(self) -> None:
        """Test no single delay exceeds the cap."""
        policy = RetryPolicy(max_retries=10)
        assert policy.calculate_delay(10) == 30.0

    def test_exhausted_after_cap(self) -> None:
        """Test the fourth failed attempt exhausts the default budget."""
        policy = RetryPolicy()
        assert not policy.exhausted(3)
        assert policy.exhausted(4)

    def test_zero_retries(self) -> None:
        """Test a zero budget fails on the first failed attempt."""
        assert RetryPolicy(max_retries=0).exhausted(1)

    def test_jitter_stays_within_bounds(self) -> None:
        policy = RetryPolicy(jitter=True, jitter_ratio=0.2)
        for _ in range(50):
            delay = policy.calculate_delay(1)
            assert 1.6 <= delay <= 2.4

    def test_from_config(self) -> None:
        policy = RetryPolicy.from_config(RetryConfig(max_retries=5, base_delay=0.5))
        assert policy.max_retries == 5
        assert policy.calculate_delay(0) == 0.5

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_retries": -1},
            {"base_delay": 0},
            {"multiplier": 0.5},
            {"base_delay": 10, "max_delay": 5},
            {"jitter_ratio": 1.5},
        ],
    )
    def test_invalid_parameters(self, kwargs) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestIsRetryableError:
    """Tests for is_retryable_error."""

    def test_transient_and_permanent(self) -> None:
        assert is_retryable_error(TransientDeliveryError("HTTP 503"))
        assert not is_retryable_error(PermanentRejectionError(422, "title required"))
        assert not is_retryable_error(OrderingConflictError(409, "membership changed"))

    def test_httpx_errors(self) -> None:
        request = httpx.Request("GET", "https://tasks.example.com/api/tasks")
        assert is_retryable_error(httpx.ConnectError("refused", request=request))
        assert is_retryable_error(httpx.ReadTimeout("slow", request=request))

        for status, expected in ((500, True), (429, True), (408, True), (404, False)):
            response = httpx.Response(status, request=request)
            error = httpx.HTTPStatusError("error", request=request, response=response)
            assert is_retryable_error(error) is expected

    def test_programming_errors_are_not_retried(self) -> None:
        assert not is_retryable_error(KeyError("oops"))
