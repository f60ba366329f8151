"""
Cancelable deadline wrapper for coroutines.

``with_deadline`` races an operation against a timer and an optional
external cancel signal. When the operation loses, its cancellation hook is
invoked exactly once so the underlying transport is aborted instead of being
left open, and the caller gets a typed error.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import inspect
import logging
import math
from typing import Any, TypeVar

from ._exceptions import OperationCancelledError, TimeoutError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _validate_timeout(timeout: Any) -> None:
    if timeout is None:
        return
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
        raise ValidationError(f"Expected timeout to be a positive number, got {timeout!r}")
    if math.isnan(timeout) or timeout <= 0:
        raise ValidationError(f"Expected timeout to be a positive number, got {timeout!r}")


def _discard(awaitable: Awaitable[Any]) -> None:
    """Close a coroutine that will never be awaited."""
    if inspect.iscoroutine(awaitable):
        awaitable.close()


async def with_deadline(
    awaitable: Awaitable[T],
    timeout: float | None,
    *,
    cancel_event: asyncio.Event | None = None,
    on_cancel: Callable[[], object] | None = None,
    message: str | None = None,
) -> T:
    """
    Await ``awaitable`` bounded by ``timeout`` seconds and ``cancel_event``.

    Args:
        awaitable: Coroutine or future to run
        timeout: Positive number of seconds; ``None`` or ``math.inf`` means unbounded
        cancel_event: Optional external signal; setting it aborts the operation
        on_cancel: Cancellation hook of the operation, called at most once
        message: Optional message for the timeout error

    Returns:
        The operation's result

    Raises:
        ValidationError: If ``timeout`` is zero, negative or not a number
        TimeoutError: If the timer fires first
        OperationCancelledError: If ``cancel_event`` is set first
    """
    try:
        _validate_timeout(timeout)
    except ValidationError:
        _discard(awaitable)
        raise

    unbounded = timeout is None or math.isinf(timeout)
    if unbounded and cancel_event is None:
        return await awaitable

    if cancel_event is not None and cancel_event.is_set():
        _discard(awaitable)
        raise OperationCancelledError()

    task = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None
    waiters: set[asyncio.Future[Any]] = {task}
    if watcher is not None:
        waiters.add(watcher)

    try:
        done, _ = await asyncio.wait(
            waiters,
            timeout=None if unbounded else timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        await _abort(task, on_cancel)
        raise
    finally:
        if watcher is not None and not watcher.done():
            watcher.cancel()

    if task in done:
        return task.result()

    await _abort(task, on_cancel)
    if watcher is not None and watcher in done:
        logger.debug("Operation cancelled by external signal")
        raise OperationCancelledError()

    logger.debug("Operation timed out after %ss", timeout)
    raise TimeoutError(
        message or f"Operation timed out after {timeout} seconds",
        timeout=timeout,
    )


async def _abort(task: asyncio.Future[Any], on_cancel: Callable[[], object] | None) -> None:
    if on_cancel is not None:
        try:
            on_cancel()
        except Exception:
            # A failing hook never replaces the deadline error.
            logger.warning("Cancellation hook failed", exc_info=True)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
