"""Async concurrency primitives used by the stage executor and pipeline engine."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")

Sleeper = Callable[[float], Awaitable[None]]


class CancellationToken:
    """
    Cooperative cancellation flag.

    The engine only polls ``is_cancelled`` at stage boundaries, so the token is a plain
    flag plus an ``asyncio.Event`` for callers that want to await the signal.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._event: asyncio.Event | None = None
        self.reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        if self._event is not None:
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    async def wait(self) -> None:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()


async def run_with_timeout(coroutine: Awaitable[T], timeout_seconds: float) -> T:
    """Await ``coroutine`` with a hard deadline; raises ``TimeoutError`` on expiry."""
    if timeout_seconds <= 0:
        _close_unscheduled_coroutine(coroutine)
        raise ValueError("timeout_seconds must be > 0")
    try:
        return await asyncio.wait_for(_await_value(coroutine), timeout=timeout_seconds)
    except TimeoutError as exc:
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds") from exc


def backoff_delay(
    attempt: int,
    *,
    base_seconds: float,
    multiplier: float,
    max_seconds: float,
) -> float:
    """Delay before retry ``attempt`` (1-based): ``base * multiplier**(attempt-1)``, capped."""
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    if base_seconds < 0 or max_seconds < 0:
        raise ValueError("backoff seconds must be >= 0")
    if multiplier < 1:
        raise ValueError("multiplier must be >= 1")
    delay = base_seconds * (multiplier ** (attempt - 1))
    return min(delay, max_seconds)


async def _await_value(awaitable: Awaitable[T]) -> T:
    return await awaitable


def _close_unscheduled_coroutine(awaitable: Awaitable[object]) -> None:
    # Close raw coroutine objects that were never scheduled so CPython does not warn at GC.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "CancellationToken",
    "Sleeper",
    "backoff_delay",
    "run_with_timeout",
]
