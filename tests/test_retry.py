"""Tests for calbridge.retry.

Covers:
- RetryPolicy backoff growth, cap and jitter bounds
- RetryPolicy.from_config()
- retry_unavailable() retries only ProviderUnavailable
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from calbridge.errors import AuthExpired, ProviderRateLimited, ProviderUnavailable
from calbridge.retry import NO_RETRY, RetryPolicy, retry_unavailable

pytestmark = pytest.mark.unit


class TestRetryPolicy:
    def test_first_attempt_has_no_delay(self) -> None:
        assert RetryPolicy().calculate_backoff(1) == 0.0

    def test_backoff_doubles_without_jitter(self) -> None:
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=100.0, jitter_factor=0.0)
        assert policy.calculate_backoff(2) == 1.0
        assert policy.calculate_backoff(3) == 2.0
        assert policy.calculate_backoff(4) == 4.0

    def test_backoff_is_capped(self) -> None:
        policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=3.0, jitter_factor=0.0)
        assert policy.calculate_backoff(10) == 3.0

    def test_jitter_stays_in_range(self) -> None:
        policy = RetryPolicy(base_delay_seconds=1.0, jitter_factor=0.5)
        for _ in range(50):
            assert 0.5 <= policy.calculate_backoff(2) <= 1.5

    def test_from_config(self) -> None:
        policy = RetryPolicy.from_config({"max_attempts": 4, "base_delay_seconds": 0.1})
        assert policy.max_attempts == 4
        assert policy.base_delay_seconds == 0.1
        assert policy.max_delay_seconds == 8.0


class TestRetryUnavailable:
    async def test_success_first_try(self) -> None:
        operation = AsyncMock(return_value="ok")
        sleep = AsyncMock()
        result = await retry_unavailable(
            operation, policy=RetryPolicy(), operation_name="op", sleep=sleep
        )
        assert result == "ok"
        operation.assert_awaited_once()
        sleep.assert_not_awaited()

    async def test_transient_failure_is_retried(self) -> None:
        operation = AsyncMock(side_effect=[ProviderUnavailable(), "ok"])
        sleep = AsyncMock()
        result = await retry_unavailable(
            operation, policy=RetryPolicy(max_attempts=3), operation_name="op", sleep=sleep
        )
        assert result == "ok"
        assert operation.await_count == 2
        sleep.assert_awaited_once()

    async def test_exhaustion_reraises_last_error(self) -> None:
        operation = AsyncMock(side_effect=ProviderUnavailable("still down"))
        with pytest.raises(ProviderUnavailable, match="still down"):
            await retry_unavailable(
                operation,
                policy=RetryPolicy(max_attempts=3),
                operation_name="op",
                sleep=AsyncMock(),
            )
        assert operation.await_count == 3

    @pytest.mark.parametrize("error", [AuthExpired(), ProviderRateLimited(retry_after=5)])
    async def test_other_errors_fail_fast(self, error: Exception) -> None:
        operation = AsyncMock(side_effect=error)
        with pytest.raises(type(error)):
            await retry_unavailable(
                operation, policy=RetryPolicy(max_attempts=5), operation_name="op", sleep=AsyncMock()
            )
        operation.assert_awaited_once()

    async def test_no_retry_policy(self) -> None:
        operation = AsyncMock(side_effect=ProviderUnavailable())
        with pytest.raises(ProviderUnavailable):
            await retry_unavailable(operation, policy=NO_RETRY, operation_name="op", sleep=AsyncMock())
        operation.assert_awaited_once()
