# -*- coding: utf-8 -*-
"""
Request budget tests (virtual clock, no real sleeping).
"""
import pytest


class TestSlidingWindowLimiter:

    @pytest.mark.asyncio
    async def test_waits_for_oldest_call_to_expire(self, clock):
        from core.rate_limit import SlidingWindowLimiter
        limiter = SlidingWindowLimiter(2, 1.0, label="HL", clock=clock, sleep=clock.sleep)
        start = clock()

        await limiter.acquire()
        await limiter.acquire()
        assert limiter.waits == 0
        await limiter.acquire()

        assert limiter.waits == 1
        assert clock() - start == pytest.approx(1.0)
        assert limiter.in_window() == 1

    @pytest.mark.asyncio
    async def test_no_wait_after_window(self, clock):
        from core.rate_limit import SlidingWindowLimiter
        limiter = SlidingWindowLimiter(1, 1.0, clock=clock, sleep=clock.sleep)
        await limiter.acquire()
        clock.advance(1.5)
        await limiter.acquire()
        assert limiter.waits == 0

    def test_invalid_arguments(self):
        from core.rate_limit import SlidingWindowLimiter
        with pytest.raises(ValueError):
            SlidingWindowLimiter(0)


class TestWeightBudget:

    @pytest.mark.asyncio
    async def test_exhausted_window_waits_for_next(self, clock):
        from core.rate_limit import WeightBudget
        budget = WeightBudget(10, 60.0, label="AS", clock=clock, sleep=clock.sleep)
        start = clock()

        await budget.acquire(6)
        await budget.acquire(6)

        assert budget.waits == 1
        assert clock() - start == pytest.approx(60.0)
        assert budget.used == 6

    @pytest.mark.asyncio
    async def test_oversized_weight_is_clamped(self, clock):
        from core.rate_limit import WeightBudget
        budget = WeightBudget(10, 60.0, clock=clock, sleep=clock.sleep)
        await budget.acquire(25)
        assert budget.used == 10
        assert budget.snapshot()["capacity"] == 10

    @pytest.mark.asyncio
    async def test_window_rolls_over(self, clock):
        from core.rate_limit import WeightBudget
        budget = WeightBudget(10, 60.0, clock=clock, sleep=clock.sleep)
        await budget.acquire(8)
        clock.advance(61)
        await budget.acquire(8)
        assert budget.waits == 0
        assert budget.used == 8
