# -*- coding: utf-8 -*-
"""
Per-venue request budgets.

Two shapes are used by the gateways:
- WeightBudget: a weight allowance per fixed window (Aster: 2400 weight / 60 s)
- SlidingWindowLimiter: N calls per sliding window (Hyperliquid: 20 / 1 s, Lighter: 10 / 1 s)

Each budget is guarded by its own asyncio.Lock, so a venue waiting for its
window only blocks callers of that venue.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Any

log = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


class WeightBudget:
    """Fixed-window weight budget."""

    def __init__(self, capacity: int, window_s: float = 60.0, label: str = "",
                 clock: Clock = time.monotonic, sleep: Sleeper = asyncio.sleep) -> None:
        if capacity <= 0 or window_s <= 0:
            raise ValueError("capacity and window_s must be positive")
        self.capacity = int(capacity)
        self.window_s = float(window_s)
        self.label = label
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._window_start = clock()
        self._used = 0
        self.waits = 0

    @property
    def used(self) -> int:
        return self._used

    def _roll(self, now: float) -> None:
        if now - self._window_start >= self.window_s:
            self._window_start = now
            self._used = 0

    async def acquire(self, weight: int = 1) -> None:
        """Consume `weight`, sleeping until the next window when the current one is exhausted."""
        weight = int(weight)
        if weight > self.capacity:
            log.warning(f"[RATE] {self.label} request weight {weight} exceeds budget {self.capacity}, clamping")
            weight = self.capacity
        async with self._lock:
            now = self._clock()
            self._roll(now)
            if self._used + weight > self.capacity:
                wait = self._window_start + self.window_s - now
                if wait > 0:
                    self.waits += 1
                    log.debug(f"[RATE] {self.label} weight budget exhausted ({self._used}/{self.capacity}), waiting {wait:.2f}s")
                    await self._sleep(wait)
                self._window_start = self._clock()
                self._used = 0
            self._used += weight

    def snapshot(self) -> Dict[str, Any]:
        return {"type": "weight", "used": self._used, "capacity": self.capacity, "window_s": self.window_s}


class SlidingWindowLimiter:
    """At most `max_calls` acquisitions within any `window_s` interval."""

    def __init__(self, max_calls: int, window_s: float = 1.0, label: str = "",
                 clock: Clock = time.monotonic, sleep: Sleeper = asyncio.sleep) -> None:
        if max_calls <= 0 or window_s <= 0:
            raise ValueError("max_calls and window_s must be positive")
        self.max_calls = int(max_calls)
        self.window_s = float(window_s)
        self.label = label
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._calls: Deque[float] = deque()
        self.waits = 0

    def _purge(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.window_s:
            self._calls.popleft()

    async def acquire(self, weight: int = 1) -> None:
        # weight is accepted for interface parity with WeightBudget; every call counts once
        async with self._lock:
            now = self._clock()
            self._purge(now)
            while len(self._calls) >= self.max_calls:
                wait = self._calls[0] + self.window_s - now
                if wait > 0:
                    self.waits += 1
                    log.debug(f"[RATE] {self.label} {self.max_calls}/{self.window_s:g}s reached, waiting {wait:.3f}s")
                    await self._sleep(wait)
                now = self._clock()
                self._purge(now)
            self._calls.append(now)

    def in_window(self) -> int:
        self._purge(self._clock())
        return len(self._calls)

    def snapshot(self) -> Dict[str, Any]:
        return {"type": "sliding", "in_window": self.in_window(), "max_calls": self.max_calls,
                "window_s": self.window_s}
