# -*- coding: utf-8 -*-
"""
Shared value types for the funding arbitrage engine.

Venue-independent records passed between the funding feed, the precision
manager, the venue gateways and the arbitrage engine.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

HOURS_PER_YEAR = 24 * 365


class Venue(str, Enum):
    """Supported derivatives venues."""
    ASTER = "aster"
    HYPERLIQUID = "hyperliquid"
    LIGHTER = "lighter"

    @property
    def label(self) -> str:
        return _VENUE_LABELS[self]

    @classmethod
    def parse(cls, value: Any) -> "Venue":
        if isinstance(value, Venue):
            return value
        key = str(value or "").strip().lower()
        for v in cls:
            if key in (v.value, v.label.lower()):
                return v
        raise ValueError(f"Unknown venue: {value!r}")


_VENUE_LABELS = {
    Venue.ASTER: "AS",
    Venue.HYPERLIQUID: "HL",
    Venue.LIGHTER: "LT",
}


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderKind(str, Enum):
    LIMIT = "LIMIT"
    MARKET = "MARKET"


class OrderStatus(str, Enum):
    """Normalized order state across venues."""
    FILLED = "FILLED"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    OPEN = "OPEN"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    UNKNOWN = "UNKNOWN"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.CANCELLED,
                        OrderStatus.REJECTED, OrderStatus.EXPIRED)


@dataclass
class RawFunding:
    """One funding observation as reported by a venue, before symbol resolution."""
    symbol: str
    mark_price: float
    raw_rate: float
    interval_hours: float
    next_funding_ms: Optional[int] = None


@dataclass
class FundingQuote:
    """Latest funding state for (venue, asset). Superseded by each new observation."""
    asset: str
    venue: Venue
    symbol: str
    mark_price: float
    raw_rate: float
    normalized_hourly_rate: float
    annualized_rate_pct: float
    payment_frequency_hours: float
    next_payment_at: Optional[float] = None
    observed_at: float = field(default_factory=time.time)
    multiplier: float = 1.0

    @property
    def unit_price(self) -> float:
        """Mark price per unit of the underlying (undoes contract multipliers)."""
        if self.multiplier <= 0:
            return self.mark_price
        return self.mark_price / self.multiplier


@dataclass
class PrecisionRule:
    """Per-venue, per-symbol tick/step/minimum rules."""
    venue: Venue
    symbol: str
    price_tick: float
    price_decimals: int
    qty_step: float
    qty_decimals: int
    qty_min: float = 0.0
    qty_max: float = 0.0  # 0 = unbounded
    min_notional: float = 0.0
    market_qty_step: Optional[float] = None
    market_qty_min: Optional[float] = None
    market_qty_max: Optional[float] = None


@dataclass
class OrderResult:
    """Standardized order placement result across all venues."""
    success: bool
    venue: Venue
    symbol: str
    side: OrderSide
    kind: OrderKind
    requested_qty: float
    order_id: Optional[str] = None
    status: OrderStatus = OrderStatus.UNKNOWN
    filled_qty: float = 0.0
    avg_price: float = 0.0
    error: str = ""
    simulated: bool = False
    raw: Any = None


@dataclass
class OrderFill:
    """Order state as returned by a status query."""
    status: OrderStatus
    filled_qty: float = 0.0
    avg_price: float = 0.0


@dataclass
class Balance:
    venue: Venue
    available: float
    total: float = 0.0


@dataclass
class Spread:
    """Derived funding spread between two venues for one asset. Never persisted."""
    asset: str
    long_venue: Venue
    short_venue: Venue
    long_rate: float
    short_rate: float
    hourly_spread: float
    annualized_spread_pct: float
    long_symbol: str = ""
    short_symbol: str = ""
    long_mark_price: float = 0.0
    short_mark_price: float = 0.0
    long_unit_price: float = 0.0
    short_unit_price: float = 0.0

    @property
    def average_unit_price(self) -> float:
        prices = [p for p in (self.long_unit_price, self.short_unit_price) if p > 0]
        return sum(prices) / len(prices) if prices else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset": self.asset,
            "long_venue": self.long_venue.value,
            "short_venue": self.short_venue.value,
            "long_rate": self.long_rate,
            "short_rate": self.short_rate,
            "hourly_spread": self.hourly_spread,
            "annualized_spread_pct": self.annualized_spread_pct,
        }


@dataclass(frozen=True)
class RebalanceEvent:
    """Immutable audit record appended on every rebalance cycle."""
    timestamp: float
    entered: tuple
    exited: tuple
    spreads_considered: int
    trigger: str = "scheduled"
    aborted_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "entered": list(self.entered),
            "exited": list(self.exited),
            "spreads_considered": self.spreads_considered,
            "trigger": self.trigger,
            "aborted_reason": self.aborted_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RebalanceEvent":
        return cls(
            timestamp=float(data.get("timestamp", 0.0)),
            entered=tuple(data.get("entered") or ()),
            exited=tuple(data.get("exited") or ()),
            spreads_considered=int(data.get("spreads_considered", 0)),
            trigger=str(data.get("trigger", "scheduled")),
            aborted_reason=data.get("aborted_reason"),
        )
