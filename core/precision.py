# -*- coding: utf-8 -*-
"""
Precision & Validation Rules.

Per-venue, per-symbol price tick, quantity step and minimum notional, refreshed
from each venue's instrument metadata (hourly by default). Orders are rounded
and validated here before they reach a gateway.

Rounding rules:
- price rounds to the NEAREST tick
- quantity rounds UP to the next step (never down), then clamps to [min, max],
  so a notional that met the venue minimum before rounding still meets it after

Missing rules never raise: a warning is counted and a fixed-decimal default is used.
"""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from core.models import OrderKind, PrecisionRule, Venue

log = logging.getLogger(__name__)

DEFAULT_PRICE_DECIMALS = 4
DEFAULT_QTY_DECIMALS = 2
MIN_NOTIONAL_BUFFER = 1.01

RulesFetcher = Callable[[], Awaitable[Dict[str, PrecisionRule]]]


class ValidationErrorKind(str, Enum):
    NOTIONAL_BELOW_MIN = "NOTIONAL_BELOW_MIN"
    QTY_BELOW_MIN = "QTY_BELOW_MIN"
    QTY_ABOVE_MAX = "QTY_ABOVE_MAX"
    INVALID_PRICE = "INVALID_PRICE"
    INVALID_QUANTITY = "INVALID_QUANTITY"


@dataclass
class ValidationIssue:
    kind: ValidationErrorKind
    message: str


@dataclass
class ValidationResult:
    valid: bool
    corrected_price: float
    corrected_quantity: float
    notional: float
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def error_kinds(self) -> List[ValidationErrorKind]:
        return [e.kind for e in self.errors]


def count_decimals(value: float) -> int:
    """Number of decimals needed to represent a tick/step (0.001 -> 3, 1e-05 -> 5)."""
    try:
        d = Decimal(str(value)).normalize()
    except InvalidOperation:
        return 0
    exp = d.as_tuple().exponent
    return max(0, -int(exp)) if isinstance(exp, int) else 0


def _dec(x: float) -> Decimal:
    return Decimal(str(x))


def round_to_tick(value: float, tick: float) -> float:
    """Nearest multiple of tick (half up)."""
    if tick <= 0:
        return value
    t = _dec(tick)
    steps = (_dec(value) / t).to_integral_value(rounding=ROUND_HALF_UP)
    return float(steps * t)


def ceil_to_step(value: float, step: float) -> float:
    """Smallest multiple of step that is >= value."""
    if step <= 0:
        return value
    s = _dec(step)
    steps = (_dec(value) / s).to_integral_value(rounding=ROUND_CEILING)
    return float(steps * s)


def hyperliquid_price_tick(mark_price: float, sz_decimals: int) -> Tuple[float, int]:
    """
    Price tick from the mark price magnitude (5 significant figures), capped at
    6 - szDecimals decimals as Hyperliquid perps require.
    """
    if mark_price >= 10000:
        decimals = 0
    elif mark_price >= 1000:
        decimals = 1
    elif mark_price >= 100:
        decimals = 2
    elif mark_price >= 10:
        decimals = 3
    elif mark_price >= 1:
        decimals = 4
    elif mark_price >= 0.1:
        decimals = 5
    else:
        decimals = 6
    decimals = max(0, min(decimals, 6 - int(sz_decimals)))
    return 10.0 ** -decimals, decimals


class PrecisionManager:
    """
    Holds PrecisionRule sets for every venue and rounds/validates orders.

    Usage:
        pm = PrecisionManager()
        pm.register_source(Venue.ASTER, aster.fetch_precision_rules)
        await pm.refresh()
        qty = pm.calculate_quantity_from_dollar(Venue.ASTER, "BTCUSDT", 50.0, 65000.0)
    """

    def __init__(self, refresh_interval_s: float = 3600.0, clock: Callable[[], float] = time.time) -> None:
        self.refresh_interval_s = float(refresh_interval_s)
        self._clock = clock
        self._rules: Dict[Venue, Dict[str, PrecisionRule]] = {}
        self._sources: Dict[Venue, RulesFetcher] = {}
        self._last_refresh: Dict[Venue, float] = {}
        self.missing_rule_warnings = 0

    # ==================== Loading ====================

    def register_source(self, venue: Venue, fetcher: RulesFetcher) -> None:
        self._sources[Venue.parse(venue)] = fetcher

    def set_rules(self, venue: Venue, rules: Dict[str, PrecisionRule]) -> None:
        venue = Venue.parse(venue)
        self._rules[venue] = {sym.upper(): r for sym, r in rules.items()}
        self._last_refresh[venue] = self._clock()

    def is_stale(self, venue: Venue) -> bool:
        last = self._last_refresh.get(Venue.parse(venue))
        return last is None or (self._clock() - last) >= self.refresh_interval_s

    async def refresh(self, force: bool = False) -> Dict[Venue, int]:
        """Reload rules from every registered source that is stale (or all when forced)."""
        loaded: Dict[Venue, int] = {}
        for venue, fetcher in self._sources.items():
            if not force and not self.is_stale(venue):
                continue
            try:
                rules = await fetcher()
            except Exception as e:
                log.warning(f"[PRECISION] {venue.label} rules refresh failed, keeping previous set: {e}")
                continue
            if not rules:
                log.warning(f"[PRECISION] {venue.label} returned no rules, keeping previous set")
                continue
            self.set_rules(venue, rules)
            loaded[venue] = len(rules)
            log.info(f"[PRECISION] {venue.label}: loaded rules for {len(rules)} symbols")
        return loaded

    def get_rules(self, venue: Venue, symbol: str) -> Optional[PrecisionRule]:
        return self._rules.get(Venue.parse(venue), {}).get(str(symbol).upper())

    def _rules_or_warn(self, venue: Venue, symbol: str) -> Optional[PrecisionRule]:
        rules = self.get_rules(venue, symbol)
        if rules is None:
            self.missing_rule_warnings += 1
            log.warning(f"[PRECISION] No rules for {symbol} on {Venue.parse(venue).label}, using default decimals")
        return rules

    # ==================== Rounding ====================

    def round_price(self, venue: Venue, symbol: str, price: float) -> float:
        rules = self._rules_or_warn(venue, symbol)
        if rules is None:
            return round(price, DEFAULT_PRICE_DECIMALS)
        if rules.price_tick > 0:
            return round(round_to_tick(price, rules.price_tick), rules.price_decimals)
        return round(price, rules.price_decimals)

    def _qty_bounds(self, rules: PrecisionRule, kind: OrderKind) -> Tuple[float, float, float]:
        is_market = OrderKind(kind) is OrderKind.MARKET
        step = rules.market_qty_step if is_market and rules.market_qty_step else rules.qty_step
        qmin = rules.market_qty_min if is_market and rules.market_qty_min else rules.qty_min
        qmax = rules.market_qty_max if is_market and rules.market_qty_max else rules.qty_max
        return step, qmin, qmax

    def _ceil_quantity(self, rules: Optional[PrecisionRule], qty: float, kind: OrderKind) -> float:
        if rules is None:
            return round(ceil_to_step(qty, 10.0 ** -DEFAULT_QTY_DECIMALS), DEFAULT_QTY_DECIMALS)
        step, _, _ = self._qty_bounds(rules, kind)
        decimals = max(rules.qty_decimals, count_decimals(step) if step > 0 else 0)
        if step > 0:
            return round(ceil_to_step(qty, step), decimals)
        return round(qty, decimals)

    def min_quantity(self, venue: Venue, symbol: str, kind: OrderKind = OrderKind.LIMIT) -> float:
        """Smallest tradable quantity (0 when the symbol has no rules)."""
        rules = self.get_rules(venue, symbol)
        if rules is None:
            return 0.0
        return self._qty_bounds(rules, kind)[1]

    def round_quantity(self, venue: Venue, symbol: str, qty: float, kind: OrderKind = OrderKind.LIMIT) -> float:
        """Round UP to the step, then clamp into [min, max]. Idempotent."""
        rules = self._rules_or_warn(venue, symbol)
        rounded = self._ceil_quantity(rules, qty, kind)
        if rules is None:
            return rounded
        _, qmin, qmax = self._qty_bounds(rules, kind)
        if qmin > 0:
            rounded = max(qmin, rounded)
        if qmax > 0:
            rounded = min(qmax, rounded)
        return rounded

    def calculate_quantity_from_dollar(self, venue: Venue, symbol: str, dollars: float, price: float,
                                       kind: OrderKind = OrderKind.LIMIT) -> float:
        """Quantity for a notional. Bumps to min_notional (+1%) when rounding leaves it short."""
        if price <= 0:
            raise ValueError(f"price must be positive, got {price}")
        rounded_price = self.round_price(venue, symbol, price)
        if rounded_price <= 0:
            rounded_price = price
        qty = self.round_quantity(venue, symbol, dollars / rounded_price, kind)
        rules = self.get_rules(venue, symbol)
        if rules is not None and qty * rounded_price < rules.min_notional:
            log.warning(
                f"[PRECISION] {symbol}: notional {qty * rounded_price:.2f} below minimum {rules.min_notional}, adjusting"
            )
            qty = self.round_quantity(venue, symbol, rules.min_notional * MIN_NOTIONAL_BUFFER / rounded_price, kind)
        return qty

    # ==================== Validation ====================

    def validate_order(self, venue: Venue, symbol: str, price: float, qty: float,
                       kind: OrderKind = OrderKind.LIMIT) -> ValidationResult:
        """
        Round and check an order. Notional is recomputed from the corrected values;
        market orders use `price` as the reference price.

        Returns:
            ValidationResult with valid=False and explicit error kinds when the
            notional is below the venue minimum or the quantity is outside [min, max].
        """
        kind = OrderKind(kind)
        errors: List[ValidationIssue] = []
        warnings: List[str] = []

        if price is None or not math.isfinite(price) or price <= 0:
            errors.append(ValidationIssue(ValidationErrorKind.INVALID_PRICE, f"Invalid price {price}"))
        if qty is None or not math.isfinite(qty) or qty <= 0:
            errors.append(ValidationIssue(ValidationErrorKind.INVALID_QUANTITY, f"Invalid quantity {qty}"))
        if errors:
            return ValidationResult(False, price or 0.0, qty or 0.0, 0.0, errors, warnings)

        rules = self.get_rules(venue, symbol)
        if rules is None:
            self.missing_rule_warnings += 1
            warnings.append(f"No precision rules found for {symbol} on {Venue.parse(venue).label}")
            corrected_price = round(price, DEFAULT_PRICE_DECIMALS) if kind is OrderKind.LIMIT else price
            corrected_qty = self._ceil_quantity(None, qty, kind)
            return ValidationResult(True, corrected_price, corrected_qty, corrected_price * corrected_qty,
                                    errors, warnings)

        if kind is OrderKind.LIMIT:
            corrected_price = self.round_price(venue, symbol, price)
            if abs(corrected_price - price) > 1e-12:
                warnings.append(f"Price {price} will be rounded to {corrected_price}")
        else:
            corrected_price = price

        stepped = self._ceil_quantity(rules, qty, kind)
        if abs(stepped - qty) > 1e-12:
            warnings.append(f"Quantity {qty} will be rounded to {stepped}")

        _, qmin, qmax = self._qty_bounds(rules, kind)
        if qmin > 0 and stepped < qmin:
            errors.append(ValidationIssue(ValidationErrorKind.QTY_BELOW_MIN, f"Quantity {stepped} below minimum {qmin}"))
        if qmax > 0 and stepped > qmax:
            errors.append(ValidationIssue(ValidationErrorKind.QTY_ABOVE_MAX, f"Quantity {stepped} above maximum {qmax}"))
        corrected_qty = self.round_quantity(venue, symbol, qty, kind)

        notional = corrected_price * corrected_qty
        if notional < rules.min_notional:
            errors.append(ValidationIssue(
                ValidationErrorKind.NOTIONAL_BELOW_MIN,
                f"Notional value {notional:.2f} below minimum {rules.min_notional}",
            ))

        return ValidationResult(not errors, corrected_price, corrected_qty, notional, errors, warnings)

    def describe(self, venue: Venue, symbol: str) -> Dict[str, Any]:
        """Rule summary for logs and the status snapshot."""
        rules = self.get_rules(venue, symbol)
        if rules is None:
            return {"found": False, "message": f"No rules found for {symbol} on {Venue.parse(venue).label}"}
        return {
            "found": True,
            "price": {"decimals": rules.price_decimals, "tick": rules.price_tick},
            "quantity": {"decimals": rules.qty_decimals, "step": rules.qty_step,
                         "min": rules.qty_min, "max": rules.qty_max},
            "min_notional": rules.min_notional,
        }
