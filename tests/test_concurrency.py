"""Tests for windowed concurrency helpers."""

import asyncio

import pytest

from notetriage.core.concurrency import settle_all, windows


class TestWindows:
    def test_splits_into_fixed_size_slices(self) -> None:
        assert list(windows([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]

    def test_empty(self) -> None:
        assert list(windows([], 3)) == []

    def test_invalid_size(self) -> None:
        with pytest.raises(ValueError):
            list(windows([1], 0))


class TestSettleAll:
    @pytest.mark.asyncio
    async def test_outcomes_in_input_order(self) -> None:
        async def value(n: int, delay: float) -> int:
            await asyncio.sleep(delay)
            return n

        async def fail() -> int:
            raise RuntimeError("boom")

        settled = await settle_all([value(1, 0.02), fail(), value(3, 0.0)])

        assert [s.ok for s in settled] == [True, False, True]
        assert settled[0].value == 1
        assert settled[2].value == 3
        assert isinstance(settled[1].error, RuntimeError)

    @pytest.mark.asyncio
    async def test_runs_concurrently(self) -> None:
        running = 0
        peak = 0

        async def track() -> None:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        await settle_all([track() for _ in range(3)])

        assert peak == 3

    @pytest.mark.asyncio
    async def test_empty(self) -> None:
        assert await settle_all([]) == []
