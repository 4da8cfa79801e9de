"""
Lap Engine - Timeout/Retry Guard.

============================================================
PURPOSE
============================================================
Bounds every asynchronous external call.

guard():
- Races an operation against a deadline
- On expiry raises GuardTimeoutError(label, bound)
- The underlying operation is NOT cancelled; its late
  result or error is discarded

guarded_call():
- Re-invokes a fresh operation on transient failures with
  exponential backoff, bounded by RetryConfig
- Non-retryable errors propagate immediately

============================================================
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .config import RetryConfig
from .errors import GuardTimeoutError, NetworkError


logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================================
# GUARD
# ============================================================

def _discard_late_result(label: str) -> Callable[["asyncio.Future"], None]:
    def callback(task: "asyncio.Future") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug(f"Abandoned operation {label} failed late: {exc}")
        else:
            logger.debug(f"Discarding late result of abandoned operation {label}")
    return callback


async def guard(operation: Awaitable[T], bound_seconds: float, label: str) -> T:
    """
    Await an operation with a deadline.

    Args:
        operation: Awaitable to run
        bound_seconds: Deadline in seconds
        label: Name used in diagnostics

    Returns:
        The operation's result

    Raises:
        GuardTimeoutError: If the deadline passes first
    """
    task = asyncio.ensure_future(operation)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout=bound_seconds)
    except asyncio.TimeoutError:
        # The operation may have raised a TimeoutError of its own.
        if task.done():
            return task.result()
        task.add_done_callback(_discard_late_result(label))
        logger.warning(f"{label} timed out after {bound_seconds:.1f}s")
        raise GuardTimeoutError(label, bound_seconds) from None


# ============================================================
# GUARDED CALL WITH RETRY
# ============================================================

async def guarded_call(
    factory: Callable[[], Awaitable[T]],
    bound_seconds: float,
    label: str,
    retry: Optional[RetryConfig] = None,
    on_attempt: Optional[Callable[[int], None]] = None,
) -> T:
    """
    Run a guarded operation with bounded retry.

    Args:
        factory: Zero-argument callable producing a fresh awaitable
        bound_seconds: Deadline per attempt
        label: Name used in diagnostics
        retry: Retry policy (default: single attempt)
        on_attempt: Called with the 1-based attempt number before each try

    Returns:
        The operation's result

    Raises:
        GuardTimeoutError: Last attempt timed out
        NetworkError: Last attempt failed with a network error
        Exception: Any non-retryable error, unchanged
    """
    retry = retry or RetryConfig.disabled()
    total_attempts = retry.max_retries + 1

    for attempt in range(1, total_attempts + 1):
        if on_attempt is not None:
            on_attempt(attempt)

        try:
            return await guard(factory(), bound_seconds, label)
        except GuardTimeoutError as e:
            if not retry.retry_on_timeout or attempt >= total_attempts:
                raise
            error: Exception = e
        except NetworkError as e:
            if not (retry.retry_on_network_error and e.is_retryable) or attempt >= total_attempts:
                raise
            error = e

        delay = retry.delay_for(attempt)
        logger.warning(
            f"{label} failed (attempt {attempt}/{total_attempts}): {error}. "
            f"Retrying in {delay:.1f}s..."
        )
        if delay > 0:
            await asyncio.sleep(delay)

    # Unreachable: the final attempt either returns or raises.
    raise RuntimeError(f"{label}: retry loop exited without result")
