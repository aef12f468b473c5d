# -*- coding: utf-8 -*-
"""
Pytest configuration and shared fixtures.
"""
import pytest
import sys
import os
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.models import (  # noqa: E402
    Balance, OrderFill, OrderKind, OrderResult, OrderSide, OrderStatus,
    PrecisionRule, RawFunding, Venue,
)
from core.rate_limit import SlidingWindowLimiter  # noqa: E402
from venues.base import GatewayBase  # noqa: E402


class FakeClock:
    """Manually advanced clock, usable wherever a `clock` callable is injected."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.now += max(0.0, seconds)


class StopLoop(Exception):
    """Raised by LimitedSleeper to end a background loop under test."""


class LimitedSleeper:
    """Advances `clock` on each sleep and raises StopLoop on call number `limit`."""

    def __init__(self, clock: Optional[FakeClock] = None, limit: int = 3):
        self.clock = clock
        self.limit = limit
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if len(self.calls) >= self.limit:
            raise StopLoop()
        if self.clock is not None:
            self.clock.advance(seconds)


class FakeGateway(GatewayBase):
    """
    Scriptable in-memory gateway.

    Limit orders rest with `entry_fill` (status + filled fraction); market
    orders fill immediately unless `market_ok` is False.
    """

    def __init__(self, venue: Venue, balance: float = 10_000.0):
        super().__init__({}, SlidingWindowLimiter(1000, label=venue.label))
        self.venue = venue
        self.balance = balance
        self.missing: List[str] = []
        self.place_ok = True
        self.market_ok = True
        self.entry_status = OrderStatus.FILLED
        self.entry_fill_fraction = 1.0
        self.orders: List[Dict] = []
        self.cancelled: List[str] = []
        self.funding: List[RawFunding] = []
        self.rules: Dict[str, PrecisionRule] = {}
        self._fills: Dict[str, OrderFill] = {}

    def missing_credentials(self) -> List[str]:
        return list(self.missing)

    async def fetch_precision_rules(self) -> Dict[str, PrecisionRule]:
        return dict(self.rules)

    async def fetch_funding(self) -> List[RawFunding]:
        return list(self.funding)

    async def place_order(self, symbol: str, side: OrderSide, qty: float, price: Optional[float] = None,
                          kind: OrderKind = OrderKind.LIMIT, reduce_only: bool = False) -> OrderResult:
        self.orders.append({"symbol": symbol, "side": side, "qty": qty, "price": price,
                            "kind": kind, "reduce_only": reduce_only})
        order_id = f"{self.label}-{len(self.orders)}"
        if kind is OrderKind.MARKET:
            if not self.market_ok:
                return self._failed_order(symbol, side, kind, qty, "market order rejected")
            self._fills[order_id] = OrderFill(OrderStatus.FILLED, qty, price or 0.0)
            return OrderResult(True, self.venue, symbol, side, kind, qty, order_id=order_id,
                               status=OrderStatus.FILLED, filled_qty=qty, avg_price=price or 0.0)
        if not self.place_ok:
            return self._failed_order(symbol, side, kind, qty, "insufficient margin")
        filled = qty * self.entry_fill_fraction if self.entry_status is not OrderStatus.OPEN else 0.0
        self._fills[order_id] = OrderFill(self.entry_status, filled, price or 0.0)
        return OrderResult(True, self.venue, symbol, side, kind, qty, order_id=order_id, status=OrderStatus.OPEN)

    async def get_order_fill(self, order_id: str, symbol: str) -> OrderFill:
        return self._fills.get(order_id, OrderFill(OrderStatus.UNKNOWN))

    async def cancel_order(self, order_id: str, symbol: str) -> bool:
        self.cancelled.append(order_id)
        fill = self._fills.get(order_id)
        if fill is not None and fill.status is not OrderStatus.FILLED:
            self._fills[order_id] = OrderFill(OrderStatus.CANCELLED, fill.filled_qty, fill.avg_price)
        return True

    async def get_balance(self) -> Balance:
        return Balance(self.venue, self.balance, self.balance)

    def market_orders(self) -> List[Dict]:
        return [o for o in self.orders if o["kind"] is OrderKind.MARKET]


def make_rule(venue: Venue, symbol: str, tick: float = 0.1, step: float = 0.001,
              min_notional: float = 5.0, qty_min: float = 0.001) -> PrecisionRule:
    from core.precision import count_decimals
    return PrecisionRule(
        venue=venue, symbol=symbol,
        price_tick=tick, price_decimals=count_decimals(tick),
        qty_step=step, qty_decimals=count_decimals(step),
        qty_min=qty_min, min_notional=min_notional,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateways():
    return {
        Venue.ASTER: FakeGateway(Venue.ASTER),
        Venue.HYPERLIQUID: FakeGateway(Venue.HYPERLIQUID),
    }


@pytest.fixture
def precision():
    from core.precision import PrecisionManager
    pm = PrecisionManager()
    pm.set_rules(Venue.ASTER, {
        sym: make_rule(Venue.ASTER, sym) for sym in ("BTCUSDT", "ETHUSDT", "SOLUSDT")
    })
    pm.set_rules(Venue.HYPERLIQUID, {
        sym: make_rule(Venue.HYPERLIQUID, sym, min_notional=10.0) for sym in ("BTC", "ETH", "SOL")
    })
    return pm


@pytest.fixture
def feed(gateways, clock):
    from core.funding_feed import FundingFeed
    from core.symbols import SymbolResolver
    return FundingFeed(gateways, SymbolResolver(), clock=clock)


@pytest.fixture
def store(tmp_path):
    from strategies.storage import StateStore
    return StateStore(str(tmp_path / "state.json"), str(tmp_path / "funding.csv"))


@pytest.fixture
def notifier():
    """ArbNotifier double recording every event."""
    from core.notifier import ArbNotifier
    n = MagicMock(spec=ArbNotifier)
    for name in ("strategy_started", "strategy_stopped", "position_opened", "position_closed",
                 "rebalance_summary", "negative_spread", "unhedged_position", "readiness_failed"):
        setattr(n, name, AsyncMock())
    return n


@pytest.fixture
def strategy_config():
    from core.config import StrategyConfig
    return StrategyConfig(
        paper_mode=False,
        capital_per_venue=1000.0,
        target_positions=2,
        allocations=[60.0, 40.0],
        candidate_multiplier=3,
        min_apr_pct=10.0,
        fill_timeout_ms=2000,
        fill_poll_interval_s=1.0,
    )


@pytest.fixture
def engine(strategy_config, gateways, feed, precision, store, notifier, clock):
    from strategies.funding_arbitrage import FundingArbitrageEngine
    return FundingArbitrageEngine(strategy_config, gateways, feed, precision, store, notifier,
                                  clock=clock, sleep=clock.sleep)


async def push_funding(feed, venue: Venue, symbol: str, rate: float, price: float, interval_h: float = 1.0):
    """Feed one funding observation (rate per `interval_h` hours)."""
    await feed.ingest(venue, [RawFunding(symbol, price, rate, interval_h)])
