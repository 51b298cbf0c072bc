"""
Bounded retry with exponential backoff for calls to external services.

Every call the ingestion pipeline makes to an external store goes through
`with_retry`. Only transport-level faults (timeouts, resets, aborted or
terminated connections) are retried; everything else surfaces immediately.
A shared `AbortSignal` cancels the whole run between attempts.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

import httpx

from app.core.exceptions import IngestionCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRIES = 3
DEFAULT_BASE_DELAY_MS = 400
MAX_JITTER_MS = 100

_TRANSIENT_MESSAGE_MARKERS = (
    "timeout",
    "timed out",
    "abort",
    "econnreset",
    "socket hang up",
    "connection reset",
    "connection terminated",
)


class AbortSignal:
    """Cancellation flag shared by every stage of one pipeline run."""

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def abort(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def throw_if_aborted(self) -> None:
        """Raise IngestionCancelledError if the signal has fired."""
        if self._event.is_set():
            raise IngestionCancelledError(self._reason)

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait until aborted or `timeout` elapses. Returns True if aborted."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True


def is_transient_error(error: BaseException) -> bool:
    """Return True only for transport-level faults that are worth retrying."""
    if isinstance(error, IngestionCancelledError):
        return False
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MESSAGE_MARKERS)


def compute_backoff_delay(attempt: int, base_delay_ms: int = DEFAULT_BASE_DELAY_MS) -> float:
    """Delay in seconds before retrying after `attempt` (0-based) failed."""
    delay_ms = base_delay_ms * (2 ** attempt) + random.uniform(0, MAX_JITTER_MS)
    return delay_ms / 1000


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    retries: int = DEFAULT_RETRIES,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    abort_signal: AbortSignal | None = None,
    label: str | None = None,
) -> T:
    """Run `operation` up to `retries + 1` times.

    Args:
        operation: Zero-argument callable returning an awaitable.
        retries: Extra attempts allowed after the first one.
        base_delay_ms: Backoff base; attempt n waits base * 2^n + jitter(0..100ms).
        abort_signal: Checked before every attempt and every backoff sleep.
        label: Name used in log lines.

    Returns:
        The operation's result.

    Raises:
        IngestionCancelledError: If the signal fired (not counted as an attempt).
        Exception: The first non-transient error, or the last transient one.
    """
    if retries < 0:
        raise ValueError("retries must be >= 0")

    name = label or getattr(operation, "__name__", "operation")
    attempts = retries + 1
    last_error: Exception | None = None

    for attempt in range(attempts):
        if abort_signal is not None:
            abort_signal.throw_if_aborted()

        try:
            result = await operation()
        except Exception as e:
            if abort_signal is not None:
                abort_signal.throw_if_aborted()

            if not is_transient_error(e):
                raise

            last_error = e
            if attempt + 1 >= attempts:
                logger.error(f"❌ {name} failed after {attempts} attempts: {e}")
                break

            delay = compute_backoff_delay(attempt, base_delay_ms)
            logger.warning(
                f"⚠️ {name} failed on attempt {attempt + 1}/{attempts}, "
                f"retrying in {delay:.2f}s: {e}"
            )

            if abort_signal is not None:
                abort_signal.throw_if_aborted()
                if await abort_signal.wait(delay):
                    abort_signal.throw_if_aborted()
            else:
                await asyncio.sleep(delay)
            continue

        if attempt > 0:
            logger.info(f"✅ {name} succeeded on attempt {attempt + 1}")
        return result

    raise last_error
