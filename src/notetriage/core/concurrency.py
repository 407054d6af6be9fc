"""Windowed concurrency helpers for batches of outbound calls.

A batch is split into fixed-size windows. Each window runs concurrently and
is collected with settle_all(), which never raises on behalf of a single
item: every coroutine yields a Settled value carrying either its result or
its exception, in input order.

Usage:
    from notetriage.core.concurrency import settle_all, windows

    for window in windows(candidates, size=2):
        settled = await settle_all([process(c) for c in window])
        for item in settled:
            if item.ok:
                ...
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Iterator, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Settled(Generic[T]):
    """Outcome of one awaited item: a value or the exception it raised."""

    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def settle_all(awaitables: Sequence[Awaitable[T]]) -> list[Settled[T]]:
    """Await all items concurrently and collect every outcome.

    Cancellation of the caller still propagates; only exceptions raised by
    individual items are captured.

    Args:
        awaitables: Coroutines or futures to run together

    Returns:
        One Settled per input, in input order
    """
    if not awaitables:
        return []

    outcomes = await asyncio.gather(*awaitables, return_exceptions=True)
    settled: list[Settled[T]] = []
    for outcome in outcomes:
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            settled.append(Settled(error=outcome))
        else:
            settled.append(Settled(value=outcome))
    return settled


def windows(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of at most `size` items."""
    if size < 1:
        raise ValueError(f"Window size must be >= 1, got {size}")
    for start in range(0, len(items), size):
        yield items[start : start + size]
