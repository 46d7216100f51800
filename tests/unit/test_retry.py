"""Tests for the upstream retry policy."""
from unittest.mock import AsyncMock

import httpx
import pytest

from dashboard.gripp.client import (
    MalformedResponseError,
    UpstreamAuthError,
    UpstreamHTTPError,
    UpstreamRPCError,
    UpstreamTimeoutError,
)
from dashboard.gripp.retry import RetryExhaustedError, RetryPolicy, is_retryable


class TestIsRetryable:
    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_retryable_statuses(self, status):
        assert is_retryable(UpstreamHTTPError(status))

    @pytest.mark.parametrize("status", [400, 404, 422])
    def test_client_errors_are_terminal(self, status):
        assert not is_retryable(UpstreamHTTPError(status))

    def test_timeout_and_malformed_are_retryable(self):
        assert is_retryable(UpstreamTimeoutError("slow"))
        assert is_retryable(MalformedResponseError("no rows"))

    def test_rpc_and_auth_errors_are_terminal(self):
        assert not is_retryable(UpstreamRPCError(-1, "bad filter"))
        assert not is_retryable(UpstreamAuthError("bad key"))

    def test_raw_transport_error_is_retryable(self):
        assert is_retryable(httpx.ConnectError("refused"))

    def test_unrelated_exception_is_terminal(self):
        assert not is_retryable(ValueError("bug"))


class TestRetryPolicy:
    def test_delay_doubles_from_base(self):
        policy = RetryPolicy(base_delay=2.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [2.0, 4.0, 8.0, 16.0, 32.0]

    async def test_returns_first_success(self, sleep):
        fn = AsyncMock(return_value="ok")
        policy = RetryPolicy(sleep=sleep)
        assert await policy.call(fn, 1, key="v") == "ok"
        fn.assert_awaited_once_with(1, key="v")
        assert sleep.delays == []

    async def test_recovers_after_transient_failures(self, sleep):
        fn = AsyncMock(side_effect=[UpstreamTimeoutError("t"), UpstreamHTTPError(503), "ok"])
        policy = RetryPolicy(sleep=sleep)
        assert await policy.call(fn) == "ok"
        assert fn.await_count == 3
        assert sleep.delays == [2.0, 4.0]

    async def test_permanent_failure_retries_exactly_five_times(self, sleep):
        """Backoff schedule 2000, 4000, 8000, 16000, 32000 ms, then give up."""
        fn = AsyncMock(side_effect=UpstreamTimeoutError("down"))
        policy = RetryPolicy(max_retries=5, base_delay=2.0, sleep=sleep)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await policy.call(fn, description="hour.get")

        assert fn.await_count == 6
        assert [int(d * 1000) for d in sleep.delays] == [2000, 4000, 8000, 16000, 32000]
        assert exc_info.value.attempts == 6
        assert isinstance(exc_info.value.last_error, UpstreamTimeoutError)
        assert "hour.get" in str(exc_info.value)

    async def test_terminal_error_raised_immediately(self, sleep):
        fn = AsyncMock(side_effect=UpstreamRPCError(-32600, "invalid request"))
        policy = RetryPolicy(sleep=sleep)
        with pytest.raises(UpstreamRPCError):
            await policy.call(fn)
        assert fn.await_count == 1
        assert sleep.delays == []

    async def test_zero_retries_means_single_attempt(self, sleep):
        fn = AsyncMock(side_effect=MalformedResponseError("bad"))
        policy = RetryPolicy(max_retries=0, sleep=sleep)
        with pytest.raises(RetryExhaustedError) as exc_info:
            await policy.call(fn)
        assert exc_info.value.attempts == 1
        assert sleep.delays == []

    async def test_custom_retryable_predicate(self, sleep):
        fn = AsyncMock(side_effect=[KeyError("x"), "ok"])
        policy = RetryPolicy(retryable=lambda exc: isinstance(exc, KeyError), sleep=sleep)
        assert await policy.call(fn) == "ok"
        assert sleep.delays == [2.0]
