"""
Unit tests for the retry engine: attempt bounds, classification, backoff and cancellation.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.core.exceptions import IngestionCancelledError
from app.core.retry import AbortSignal, compute_backoff_delay, is_transient_error, with_retry


def flaky(failures: int, error: Exception | None = None):
    """Operation failing `failures` times before returning "ok"; counts calls."""
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise error or ConnectionResetError("connection reset by peer")
        return "ok"

    return operation, calls


# -- Attempt bounds --

class TestRetryBounds:
    async def test_success_first_try(self):
        operation, calls = flaky(0)
        assert await with_retry(operation, retries=3, base_delay_ms=0) == "ok"
        assert calls["count"] == 1

    @pytest.mark.parametrize("failures", [1, 2, 3])
    async def test_succeeds_after_k_failures(self, failures):
        operation, calls = flaky(failures)
        assert await with_retry(operation, retries=3, base_delay_ms=0) == "ok"
        assert calls["count"] == failures + 1

    async def test_raises_last_error_after_budget(self):
        operation, calls = flaky(10)
        with pytest.raises(ConnectionResetError):
            await with_retry(operation, retries=3, base_delay_ms=0)
        assert calls["count"] == 4

    async def test_zero_retries_means_single_attempt(self):
        operation, calls = flaky(10)
        with pytest.raises(ConnectionResetError):
            await with_retry(operation, retries=0, base_delay_ms=0)
        assert calls["count"] == 1

    async def test_negative_retries_rejected(self):
        operation, _ = flaky(0)
        with pytest.raises(ValueError):
            await with_retry(operation, retries=-1)

    async def test_non_transient_error_is_not_retried(self):
        operation, calls = flaky(5, error=ValueError("count mismatch"))
        with pytest.raises(ValueError):
            await with_retry(operation, retries=3, base_delay_ms=0)
        assert calls["count"] == 1


# -- Cancellation --

class TestCancellation:
    async def test_aborted_signal_skips_operation(self):
        signal = AbortSignal()
        signal.abort("user left")
        operation, calls = flaky(0)

        with pytest.raises(IngestionCancelledError) as exc_info:
            await with_retry(operation, abort_signal=signal)
        assert calls["count"] == 0
        assert exc_info.value.reason == "user left"

    async def test_abort_during_backoff_stops_retrying(self):
        signal = AbortSignal()
        calls = {"count": 0}

        async def operation():
            calls["count"] += 1
            asyncio.get_running_loop().call_later(0.01, signal.abort, "shutdown")
            raise TimeoutError("timed out")

        with pytest.raises(IngestionCancelledError):
            await with_retry(operation, retries=5, base_delay_ms=5000, abort_signal=signal)
        assert calls["count"] == 1

    async def test_cancellation_error_is_not_retried(self):
        operation, calls = flaky(5, error=IngestionCancelledError("stop"))
        with pytest.raises(IngestionCancelledError):
            await with_retry(operation, retries=3, base_delay_ms=0)
        assert calls["count"] == 1

    async def test_signal_wait_times_out(self):
        signal = AbortSignal()
        assert await signal.wait(0.01) is False
        signal.abort()
        assert await signal.wait(0.01) is True
        assert signal.aborted


# -- Classification --

class TestTransientClassification:
    @pytest.mark.parametrize("error", [
        TimeoutError(),
        asyncio.TimeoutError(),
        ConnectionResetError(),
        BrokenPipeError(),
        httpx.ReadTimeout("read timed out"),
        httpx.ConnectError("refused"),
        httpx.RemoteProtocolError("peer closed"),
        RuntimeError("socket hang up"),
        RuntimeError("Connection terminated unexpectedly"),
        RuntimeError("ECONNRESET"),
        RuntimeError("The operation was aborted"),
    ])
    def test_transient(self, error):
        assert is_transient_error(error)

    @pytest.mark.parametrize("error", [
        ValueError("bad input"),
        KeyError("id"),
        RuntimeError("Embedding count mismatch"),
        IngestionCancelledError("timeout"),
    ])
    def test_not_transient(self, error):
        assert not is_transient_error(error)


# -- Backoff --

class TestBackoff:
    def test_exponential_with_bounded_jitter(self):
        for attempt in range(4):
            delay = compute_backoff_delay(attempt, base_delay_ms=400)
            floor = 400 * 2 ** attempt / 1000
            assert floor <= delay <= floor + 0.1

    async def test_sleeps_between_attempts(self):
        operation, _ = flaky(2)
        with patch("app.core.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await with_retry(operation, retries=3, base_delay_ms=400)

        delays = [c.args[0] for c in sleep.call_args_list]
        assert len(delays) == 2
        assert 0.4 <= delays[0] <= 0.5
        assert 0.8 <= delays[1] <= 0.9
