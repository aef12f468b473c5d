# -*- coding: utf-8 -*-
"""
Funding Arbitrage Engine: delta-neutral funding carry across Aster, Hyperliquid and Lighter.

For each asset quoted on two venues, short the venue paying the larger funding
(absolute hourly rate) and long the other. The engine:
- ranks spreads and holds the top `target_positions`, sized by rank allocations
- enters both legs concurrently and repairs one-sided fills with an emergency hedge
- accrues funding, marks PnL and force-closes positions whose spread turns negative
- rebalances on a timer or on manual trigger (with cooldown)

=============================================================================
FILE STRUCTURE
=============================================================================

SECTION 1: DATA CLASSES & ERRORS
    - PositionStatus, ArbPosition
    - RebalanceCooldownError, RebalanceInProgressError, InvariantViolation,
      PositionNotFoundError

SECTION 2: STATE MANAGEMENT
    - _load_state, _persist, history trimming

SECTION 3: REBALANCE
    - validate_readiness, rebalance, trigger_rebalance, _select_targets

SECTION 4: ENTRY
    - open_position (hedged entry), fill polling, emergency hedge, unwind

SECTION 5: EXIT & MARKING
    - close_position, update_position, check_exits

SECTION 6: LIFECYCLE (start/stop, background loops)

SECTION 7: QUERIES (get_status, histories, top spreads)
=============================================================================
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from core.config import StrategyConfig
from core.funding_feed import FundingFeed
from core.models import (
    FundingQuote, OrderFill, OrderKind, OrderResult, OrderSide, OrderStatus,
    RebalanceEvent, Spread, Venue,
)
from core.notifier import ArbNotifier
from core.precision import PrecisionManager
from core.preflight import ReadinessCheck, ReadinessReport
from risk.allocator import allocation_for_rank, compute_leg_plan, free_slots, leg_notional
from strategies.spreads import current_spread_for, rank_spreads, spreads_by_asset
from strategies.storage import StateStore
from venues.base import GatewayBase, GatewayError

log = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600.0


# =============================================================================
# SECTION 1: DATA CLASSES & ERRORS
# =============================================================================

class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


@dataclass
class ArbPosition:
    """One hedged position: long leg on one venue, short leg on another."""
    id: str
    asset: str
    rank: int
    allocation_pct: float
    long_venue: Venue
    long_symbol: str
    long_size: float
    long_notional: float
    long_entry_price: float
    short_venue: Venue
    short_symbol: str
    short_size: float
    short_notional: float
    short_entry_price: float
    entry_spread: float
    entry_time: float
    long_current_price: float = 0.0
    long_funding_rate: float = 0.0    # hourly
    short_current_price: float = 0.0
    short_funding_rate: float = 0.0   # hourly
    current_spread: float = 0.0       # annualized %
    funding_earned: float = 0.0
    pnl: float = 0.0
    status: PositionStatus = PositionStatus.OPEN
    exit_time: Optional[float] = None
    exit_reason: Optional[str] = None
    close_errors: List[str] = field(default_factory=list)
    last_funding_accrual: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "asset": self.asset,
            "rank": self.rank,
            "allocation_pct": self.allocation_pct,
            "long_venue": self.long_venue.value,
            "long_symbol": self.long_symbol,
            "long_size": self.long_size,
            "long_notional": self.long_notional,
            "long_entry_price": self.long_entry_price,
            "long_current_price": self.long_current_price,
            "long_funding_rate": self.long_funding_rate,
            "short_venue": self.short_venue.value,
            "short_symbol": self.short_symbol,
            "short_size": self.short_size,
            "short_notional": self.short_notional,
            "short_entry_price": self.short_entry_price,
            "short_current_price": self.short_current_price,
            "short_funding_rate": self.short_funding_rate,
            "entry_spread": self.entry_spread,
            "current_spread": self.current_spread,
            "funding_earned": self.funding_earned,
            "pnl": self.pnl,
            "status": self.status.value,
            "entry_time": self.entry_time,
            "exit_time": self.exit_time,
            "exit_reason": self.exit_reason,
            "close_errors": list(self.close_errors),
            "last_funding_accrual": self.last_funding_accrual,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ArbPosition":
        return cls(
            id=str(d["id"]),
            asset=str(d["asset"]),
            rank=int(d.get("rank", 0)),
            allocation_pct=float(d.get("allocation_pct", 0.0)),
            long_venue=Venue.parse(d["long_venue"]),
            long_symbol=str(d.get("long_symbol", "")),
            long_size=float(d.get("long_size", 0.0)),
            long_notional=float(d.get("long_notional", 0.0)),
            long_entry_price=float(d.get("long_entry_price", 0.0)),
            long_current_price=float(d.get("long_current_price", 0.0)),
            long_funding_rate=float(d.get("long_funding_rate", 0.0)),
            short_venue=Venue.parse(d["short_venue"]),
            short_symbol=str(d.get("short_symbol", "")),
            short_size=float(d.get("short_size", 0.0)),
            short_notional=float(d.get("short_notional", 0.0)),
            short_entry_price=float(d.get("short_entry_price", 0.0)),
            short_current_price=float(d.get("short_current_price", 0.0)),
            short_funding_rate=float(d.get("short_funding_rate", 0.0)),
            entry_spread=float(d.get("entry_spread", 0.0)),
            current_spread=float(d.get("current_spread", 0.0)),
            funding_earned=float(d.get("funding_earned", 0.0)),
            pnl=float(d.get("pnl", 0.0)),
            status=PositionStatus(d.get("status", PositionStatus.OPEN.value)),
            entry_time=float(d.get("entry_time", 0.0)),
            exit_time=d.get("exit_time"),
            exit_reason=d.get("exit_reason"),
            close_errors=list(d.get("close_errors") or []),
            last_funding_accrual=float(d.get("last_funding_accrual", d.get("entry_time", 0.0))),
        )


class RebalanceCooldownError(Exception):
    def __init__(self, remaining_s: float) -> None:
        self.remaining_s = float(remaining_s)
        super().__init__(f"Manual rebalance on cooldown, {self.remaining_s:.0f}s remaining")


class RebalanceInProgressError(Exception):
    pass


class InvariantViolation(Exception):
    pass


class PositionNotFoundError(Exception):
    pass


@dataclass
class _Leg:
    """Working state of one entry leg."""
    venue: Venue
    gateway: GatewayBase
    symbol: str
    side: OrderSide
    qty: float
    price: float
    result: Optional[OrderResult] = None
    fill: Optional[OrderFill] = None

    @property
    def label(self) -> str:
        return f"{self.venue.label} {self.side.value} {self.symbol}"

    @property
    def filled(self) -> bool:
        return self.fill is not None and self.fill.status is OrderStatus.FILLED

    @property
    def filled_qty(self) -> float:
        return self.fill.filled_qty if self.fill is not None else 0.0


class FundingArbitrageEngine:
    """
    Rank-allocated, delta-neutral funding arbitrage.

    Position and history mutations all happen under `self._lock`; the
    `_rebalance_in_progress` flag rejects overlapping cycles instead of queueing them.
    """

    def __init__(
        self,
        config: StrategyConfig,
        gateways: Dict[Venue, GatewayBase],
        feed: FundingFeed,
        precision: PrecisionManager,
        store: StateStore,
        notifier: Optional[ArbNotifier] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.gateways = gateways
        self.feed = feed
        self.precision = precision
        self.store = store
        self.notifier = notifier or ArbNotifier()
        self._clock = clock
        self._sleep = sleep

        self.positions: Dict[str, ArbPosition] = {}
        self.closed_positions: List[ArbPosition] = []
        self.rebalance_history: List[RebalanceEvent] = []
        self.unhedged_exposures: List[Dict[str, Any]] = []
        self.last_rebalance_time: Optional[float] = None
        self.last_manual_trigger: Optional[float] = None
        self.enabled = False

        self._lock = asyncio.Lock()
        self._rebalance_in_progress = False
        self._tasks: List[asyncio.Task] = []

    @property
    def total_capital(self) -> float:
        return self.config.capital_per_venue * len(self.gateways)

    @property
    def rebalance_interval_s(self) -> float:
        return self.config.rebalance_interval_minutes * 60.0

    def open_positions(self) -> List[ArbPosition]:
        return sorted(self.positions.values(), key=lambda p: p.rank)

    # =========================================================================
    # SECTION 2: STATE MANAGEMENT
    # =========================================================================

    def _load_state(self) -> None:
        data = self.store.load()
        if not data:
            log.info("[ARB] No saved state, starting fresh")
            return
        self.positions = {}
        for raw in data.get("positions") or []:
            try:
                pos = ArbPosition.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                log.error(f"[ARB] Skipping unreadable saved position: {e}")
                continue
            self.positions[pos.id] = pos
        self.closed_positions = []
        for raw in data.get("closed_positions") or []:
            try:
                self.closed_positions.append(ArbPosition.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                log.error(f"[ARB] Skipping unreadable closed position: {e}")
        self.rebalance_history = [RebalanceEvent.from_dict(e) for e in data.get("rebalance_history") or []]
        self.unhedged_exposures = list(data.get("unhedged_exposures") or [])
        self.last_rebalance_time = data.get("last_rebalance_time")
        self.last_manual_trigger = data.get("last_manual_trigger")
        self._trim_histories()
        log.info(f"[ARB] Restored {len(self.positions)} open positions, "
                 f"{len(self.closed_positions)} closed, {len(self.rebalance_history)} rebalances")
        if self.unhedged_exposures:
            log.warning(f"[ARB] {len(self.unhedged_exposures)} unhedged exposures recorded, check venues manually")

    def _state(self) -> Dict[str, Any]:
        return {
            "config": self.config.to_dict(),
            "positions": [p.to_dict() for p in self.open_positions()],
            "closed_positions": [p.to_dict() for p in self.closed_positions],
            "rebalance_history": [e.to_dict() for e in self.rebalance_history],
            "last_rebalance_time": self.last_rebalance_time,
            "last_manual_trigger": self.last_manual_trigger,
            "enabled": self.enabled,
            "unhedged_exposures": list(self.unhedged_exposures),
        }

    def _persist(self) -> bool:
        return self.store.save(self._state())

    def _trim_histories(self) -> None:
        self.closed_positions = self.closed_positions[-self.config.closed_history_limit:]
        self.rebalance_history = self.rebalance_history[-self.config.rebalance_history_limit:]

    def _record_unhedged(self, asset: str, venue: Venue, side: OrderSide, qty: float, detail: str) -> None:
        self.unhedged_exposures.append({
            "asset": asset,
            "venue": venue.value,
            "side": side.value,
            "qty": qty,
            "detail": detail,
            "timestamp": self._clock(),
        })
        log.error(f"[ARB] UNHEDGED {asset}: {side.value} {qty} on {venue.label} ({detail})")

    # =========================================================================
    # SECTION 3: REBALANCE
    # =========================================================================

    async def validate_readiness(self) -> ReadinessReport:
        check = ReadinessCheck(self.config.capital_per_venue, self.gateways, self.config.paper_mode)
        return await check.run_all()

    async def trigger_rebalance(self) -> RebalanceEvent:
        """Manual rebalance, throttled by `manual_cooldown_s`."""
        now = self._clock()
        if self.last_manual_trigger is not None:
            remaining = self.config.manual_cooldown_s - (now - self.last_manual_trigger)
            if remaining > 0:
                raise RebalanceCooldownError(remaining)
        if self._rebalance_in_progress:
            raise RebalanceInProgressError("A rebalance is already in progress")
        self.last_manual_trigger = now
        return await self.rebalance(trigger="manual")

    async def rebalance(self, trigger: str = "scheduled") -> RebalanceEvent:
        """
        Run one rebalance cycle.

        Raises:
            RebalanceInProgressError: another cycle is running.
        """
        if self._rebalance_in_progress:
            raise RebalanceInProgressError("A rebalance is already in progress")
        self._rebalance_in_progress = True
        try:
            async with self._lock:
                return await self._rebalance_locked(trigger)
        finally:
            self._rebalance_in_progress = False

    async def _rebalance_locked(self, trigger: str) -> RebalanceEvent:
        log.info(f"[ARB] Rebalance started ({trigger})")
        now = self._clock()
        self.last_rebalance_time = now

        report = await self.validate_readiness()
        if not report.ok:
            event = RebalanceEvent(now, (), (), 0, trigger, aborted_reason="; ".join(report.issues))
            log.warning(f"[ARB] Rebalance aborted, not ready: {report.issues}")
            self._record_event(event)
            self._persist()
            await self.notifier.readiness_failed(report.issues)
            return event

        candidates = self.get_candidates()
        candidate_map = spreads_by_asset(candidates)

        # Kept: open positions still among candidates with a positive current spread
        kept: List[ArbPosition] = []
        to_close: List[ArbPosition] = []
        for pos in self.open_positions():
            self._refresh_position(pos)
            if pos.status is PositionStatus.OPEN and pos.asset in candidate_map and pos.current_spread > 0:
                kept.append(pos)
            else:
                to_close.append(pos)

        targets = self._select_targets(candidates, kept)

        exited: List[str] = []
        for pos in to_close:
            await self._close_position(pos, "rebalance")
            exited.append(pos.asset)

        entered: List[str] = []
        for spread, rank, alloc in targets:
            try:
                pos = await self.open_position(spread, rank, alloc)
            except InvariantViolation as e:
                log.error(f"[ARB] Refusing {spread.asset}: {e}")
                continue
            if pos is not None:
                entered.append(pos.asset)

        event = RebalanceEvent(self._clock(), tuple(entered), tuple(exited), len(candidates), trigger)
        self._record_event(event)
        self._persist()
        log.info(f"[ARB] Rebalance done: entered={entered} exited={exited} "
                 f"open={len(self.positions)} alloc={self.allocated_pct():.0f}%")
        await self.notifier.rebalance_summary(event)
        return event

    def _record_event(self, event: RebalanceEvent) -> None:
        self.rebalance_history.append(event)
        self._trim_histories()

    def get_candidates(self) -> List[Spread]:
        spreads = rank_spreads(self.feed.all_quotes(), self.config.excluded_assets)
        spreads = [s for s in spreads if s.long_venue in self.gateways and s.short_venue in self.gateways]
        return spreads[: self.config.target_positions * self.config.candidate_multiplier]

    def allocated_pct(self) -> float:
        return sum(p.allocation_pct for p in self.positions.values())

    def _select_targets(self, candidates: List[Spread], kept: List[ArbPosition]) -> List[Tuple[Spread, int, float]]:
        """New entries as (spread, rank, allocation_pct) for the rank slots not held by kept positions."""
        allocations = self.config.allocations[: self.config.target_positions]
        slots = free_slots(allocations, [p.rank for p in kept])
        held = {p.asset for p in kept}
        targets: List[Tuple[Spread, int, float]] = []
        for spread in candidates:
            if len(targets) >= len(slots):
                break
            if spread.asset in held:
                continue
            if spread.hourly_spread <= 0 or spread.annualized_spread_pct < self.config.min_apr_pct:
                continue
            rank = slots[len(targets)]
            alloc = allocation_for_rank(allocations, rank) or 0.0
            if not self._affordable(spread, alloc):
                continue
            targets.append((spread, rank, alloc))
        return targets

    def _affordable(self, spread: Spread, allocation_pct: float) -> bool:
        """Can both legs meet their venue minimums at this allocation?"""
        unit_price = spread.average_unit_price
        for venue, symbol in ((spread.long_venue, spread.long_symbol), (spread.short_venue, spread.short_symbol)):
            rules = self.precision.get_rules(venue, symbol)
            min_notional = rules.min_notional if rules else 0.0
            min_qty = rules.qty_min if rules else 0.0
            plan = compute_leg_plan(self.config.capital_per_venue, allocation_pct, min_notional,
                                    unit_price=unit_price, min_qty=min_qty)
            if plan.notional_usd <= 0:
                log.info(f"[ARB] Skip {spread.asset}: {plan.reason} on {venue.label} at {allocation_pct:g}%")
                return False
        return True

    # =========================================================================
    # SECTION 4: ENTRY
    # =========================================================================

    def _check_price_divergence(self, spread: Spread) -> None:
        a, b = spread.long_unit_price, spread.short_unit_price
        if a <= 0 or b <= 0:
            raise InvariantViolation(f"{spread.asset}: missing unit price (long={a}, short={b})")
        divergence = abs(a - b) / min(a, b)
        if divergence > self.config.max_price_divergence:
            raise InvariantViolation(
                f"{spread.asset}: unit prices diverge by {divergence:.0%} "
                f"({spread.long_venue.label}={a:g}, {spread.short_venue.label}={b:g}), check contract multipliers"
            )

    def _build_leg(self, venue: Venue, symbol: str, side: OrderSide, notional: float, price: float) -> Optional[_Leg]:
        kind = self.config.entry_order_kind
        try:
            qty = self.precision.calculate_quantity_from_dollar(venue, symbol, notional, price, kind)
        except ValueError as e:
            log.warning(f"[ARB] {venue.label} {symbol}: cannot size leg: {e}")
            return None
        # Validate the unclamped size so a leg capped at qty_max is rejected, not shrunk
        check = self.precision.validate_order(venue, symbol, price, max(qty, notional / price), kind)
        if not check.valid:
            log.warning(f"[ARB] {venue.label} {symbol}: order invalid: "
                        + "; ".join(issue.message for issue in check.errors))
            return None
        return _Leg(venue, self.gateways[venue], symbol, side, check.corrected_quantity, check.corrected_price)

    async def open_position(self, spread: Spread, rank: int, allocation_pct: float) -> Optional[ArbPosition]:
        """
        Hedged entry: both legs at once, then repair one-sided fills.

        Args:
            spread: ranked spread (decides which venue is long / short).
            rank: 1-based allocation rank.
            allocation_pct: percentage of capital_per_venue committed to each leg.

        Returns:
            The new OPEN position, or None when no hedged position could be built.

        Raises:
            InvariantViolation: unit prices of the two legs disagree beyond tolerance.
        """
        self._check_price_divergence(spread)
        notional = leg_notional(self.config.capital_per_venue, allocation_pct)
        long_leg = self._build_leg(spread.long_venue, spread.long_symbol, OrderSide.BUY, notional,
                                   spread.long_mark_price)
        short_leg = self._build_leg(spread.short_venue, spread.short_symbol, OrderSide.SELL, notional,
                                    spread.short_mark_price)
        if long_leg is None or short_leg is None:
            return None
        legs = [long_leg, short_leg]

        log.info(f"[ARB] Entering {spread.asset} #{rank} ({allocation_pct:g}%): "
                 f"LONG {long_leg.venue.label} {long_leg.qty} / SHORT {short_leg.venue.label} {short_leg.qty} "
                 f"spread={spread.annualized_spread_pct:.2f}%")

        results = await asyncio.gather(*(self._place(leg, self.config.entry_order_kind) for leg in legs))
        for leg, res in zip(legs, results):
            leg.result = res

        # Placement failure: no position, undo whatever got accepted
        failed = [leg for leg in legs if not leg.result.success]
        if failed:
            for leg in failed:
                log.warning(f"[ARB] {spread.asset}: {leg.label} placement failed: {leg.result.error}")
            for leg in legs:
                if leg.result.success:
                    await self._cancel_and_unwind(spread.asset, leg)
            return None

        await self._await_fills(legs)

        filled = [leg for leg in legs if leg.filled]
        if len(filled) == 0:
            log.info(f"[ARB] {spread.asset}: neither leg filled, cancelling")
            for leg in legs:
                await self._cancel_and_unwind(spread.asset, leg)
            return None

        if len(filled) == 1:
            done, pending = filled[0], next(leg for leg in legs if not leg.filled)
            hedged = await self._emergency_hedge(spread.asset, pending)
            if not hedged:
                detail = f"{pending.label} unfilled and emergency hedge failed"
                self._record_unhedged(spread.asset, done.venue, done.side, done.filled_qty, detail)
                self._persist()
                await self.notifier.unhedged_position(spread.asset, done.venue, done.side, done.filled_qty, detail)
                return None

        pos = self._create_position(spread, rank, allocation_pct, notional, long_leg, short_leg)
        self.positions[pos.id] = pos
        self._persist()
        log.info(f"[ARB] Opened {pos.asset}: LONG {pos.long_venue.label} {pos.long_size} @ {pos.long_entry_price} / "
                 f"SHORT {pos.short_venue.label} {pos.short_size} @ {pos.short_entry_price}")
        await self.notifier.position_opened(pos)
        return pos

    async def _place(self, leg: _Leg, kind: OrderKind, qty: Optional[float] = None,
                     reduce_only: bool = False, side: Optional[OrderSide] = None) -> OrderResult:
        side = side or leg.side
        qty = leg.qty if qty is None else qty
        try:
            return await leg.gateway.place_order(leg.symbol, side, qty, price=leg.price, kind=kind,
                                                 reduce_only=reduce_only)
        except GatewayError as e:
            return OrderResult(False, leg.venue, leg.symbol, side, kind, qty, status=OrderStatus.REJECTED, error=str(e))

    async def _read_fill(self, leg: _Leg) -> OrderFill:
        res = leg.result
        if res is None or not res.order_id:
            return OrderFill(OrderStatus.UNKNOWN)
        try:
            return await leg.gateway.get_order_fill(res.order_id, leg.symbol)
        except GatewayError as e:
            log.warning(f"[ARB] {leg.label}: fill query failed: {e}")
            return OrderFill(OrderStatus.UNKNOWN)

    async def _await_fills(self, legs: List[_Leg]) -> None:
        """Poll until every leg is terminal or fill_timeout_ms elapses."""
        for leg in legs:
            if leg.result.status is OrderStatus.FILLED:
                leg.fill = OrderFill(OrderStatus.FILLED, leg.result.filled_qty or leg.qty, leg.result.avg_price)

        interval = self.config.fill_poll_interval_s
        timeout_s = self.config.fill_timeout_ms / 1000.0
        polls = max(1, math.ceil(timeout_s / interval)) if interval > 0 else 1
        for attempt in range(polls):
            pending = [leg for leg in legs if leg.fill is None or not leg.fill.status.is_terminal]
            if not pending:
                return
            fills = await asyncio.gather(*(self._read_fill(leg) for leg in pending))
            for leg, fill in zip(pending, fills):
                leg.fill = fill
            if all(leg.fill.status.is_terminal for leg in legs):
                return
            if attempt < polls - 1:
                await self._sleep(interval)
        log.info("[ARB] Fill timeout: " + ", ".join(f"{leg.label}={leg.fill.status.value}" for leg in legs))

    async def _cancel_and_unwind(self, asset: str, leg: _Leg) -> None:
        """Cancel a leg's order and flatten whatever part of it filled."""
        res = leg.result
        if res is not None and res.order_id and not (leg.fill and leg.fill.status.is_terminal):
            try:
                await leg.gateway.cancel_order(res.order_id, leg.symbol)
            except GatewayError as e:
                log.warning(f"[ARB] {leg.label}: cancel failed: {e}")
        fill = await self._read_fill(leg)
        if fill.filled_qty <= 0:
            return
        unwind = await self._place(leg, OrderKind.MARKET, qty=fill.filled_qty, reduce_only=True,
                                   side=leg.side.opposite())
        if not unwind.success:
            detail = f"unwind of {leg.label} failed: {unwind.error}"
            self._record_unhedged(asset, leg.venue, leg.side, fill.filled_qty, detail)
            await self.notifier.unhedged_position(asset, leg.venue, leg.side, fill.filled_qty, detail)

    async def _emergency_hedge(self, asset: str, leg: _Leg) -> bool:
        """Complete the unfilled leg with a market order for the remaining size."""
        if leg.result and leg.result.order_id:
            try:
                await leg.gateway.cancel_order(leg.result.order_id, leg.symbol)
            except GatewayError as e:
                log.warning(f"[ARB] {leg.label}: cancel before hedge failed: {e}")
            # fills can land while the cancel is in flight
            fresh = await self._read_fill(leg)
            if fresh.status is not OrderStatus.UNKNOWN and fresh.filled_qty >= leg.filled_qty:
                leg.fill = fresh
        already = leg.filled_qty
        prior_price = leg.fill.avg_price if leg.fill and leg.fill.avg_price else leg.price
        residual = leg.qty - already
        if residual <= 1e-12:
            log.info(f"[ARB] {asset}: {leg.label} completed during cancel, no hedge needed")
            leg.fill = OrderFill(OrderStatus.FILLED, already, prior_price)
            return True
        min_qty = self.precision.min_quantity(leg.venue, leg.symbol, OrderKind.MARKET)
        if residual < min_qty:
            log.warning(f"[ARB] {asset}: {leg.label} residual {residual:.8f} below venue minimum {min_qty}, "
                        f"keeping filled {already}")
            leg.fill = OrderFill(OrderStatus.FILLED, already, prior_price)
            return True
        remaining = self.precision.round_quantity(leg.venue, leg.symbol, residual, OrderKind.MARKET)
        log.warning(f"[ARB] {asset}: one leg filled, emergency hedge {leg.label} {remaining}")
        res = await self._place(leg, OrderKind.MARKET, qty=remaining)
        if not res.success:
            log.error(f"[ARB] {asset}: emergency hedge rejected: {res.error}")
            return False
        if res.status is not OrderStatus.FILLED:
            ok = await leg.gateway.wait_for_fill(res.order_id, leg.symbol, attempts=5,
                                                 interval_s=self.config.fill_poll_interval_s)
            if not ok:
                log.error(f"[ARB] {asset}: emergency hedge not filled")
                return False
        hedge_price = res.avg_price or leg.price
        total = already + remaining
        avg = (prior_price * already + hedge_price * remaining) / total if total > 0 else hedge_price
        leg.fill = OrderFill(OrderStatus.FILLED, total, avg)
        return True

    def _create_position(self, spread: Spread, rank: int, allocation_pct: float, notional: float,
                         long_leg: _Leg, short_leg: _Leg) -> ArbPosition:
        now = self._clock()
        long_px = long_leg.fill.avg_price or long_leg.price
        short_px = short_leg.fill.avg_price or short_leg.price
        return ArbPosition(
            id=f"{spread.asset}-{spread.long_venue.label}-{spread.short_venue.label}-{int(now * 1000)}",
            asset=spread.asset,
            rank=rank,
            allocation_pct=allocation_pct,
            long_venue=spread.long_venue,
            long_symbol=spread.long_symbol,
            long_size=long_leg.fill.filled_qty or long_leg.qty,
            long_notional=notional,
            long_entry_price=long_px,
            long_current_price=long_px,
            long_funding_rate=spread.long_rate,
            short_venue=spread.short_venue,
            short_symbol=spread.short_symbol,
            short_size=short_leg.fill.filled_qty or short_leg.qty,
            short_notional=notional,
            short_entry_price=short_px,
            short_current_price=short_px,
            short_funding_rate=spread.short_rate,
            entry_spread=spread.annualized_spread_pct,
            current_spread=spread.annualized_spread_pct,
            entry_time=now,
            last_funding_accrual=now,
        )

    # =========================================================================
    # SECTION 5: EXIT & MARKING
    # =========================================================================

    def update_position(self, position: ArbPosition, long_quote: FundingQuote, short_quote: FundingQuote) -> ArbPosition:
        """Refresh prices and rates, accrue funding since the last accrual, recompute PnL."""
        now = self._clock()
        position.long_current_price = long_quote.mark_price
        position.short_current_price = short_quote.mark_price
        position.long_funding_rate = long_quote.normalized_hourly_rate
        position.short_funding_rate = short_quote.normalized_hourly_rate
        position.current_spread = current_spread_for(long_quote, short_quote)

        elapsed_h = max(0.0, now - position.last_funding_accrual) / SECONDS_PER_HOUR
        hourly = abs(short_quote.normalized_hourly_rate) - abs(long_quote.normalized_hourly_rate)
        position.funding_earned += position.long_notional * hourly * elapsed_h
        position.last_funding_accrual = now

        long_pnl = 0.0
        if position.long_entry_price > 0:
            long_pnl = (position.long_current_price - position.long_entry_price) / position.long_entry_price \
                * position.long_notional
        short_pnl = 0.0
        if position.short_entry_price > 0:
            short_pnl = (position.short_entry_price - position.short_current_price) / position.short_entry_price \
                * position.short_notional
        position.pnl = long_pnl + short_pnl + position.funding_earned
        return position

    def _refresh_position(self, position: ArbPosition) -> bool:
        long_q = self.feed.get_quote(position.long_venue, position.asset)
        short_q = self.feed.get_quote(position.short_venue, position.asset)
        if long_q is None or short_q is None:
            log.debug(f"[ARB] {position.asset}: no fresh quotes, keeping last marks")
            return False
        self.update_position(position, long_q, short_q)
        return True

    async def close_position(self, position_id: str, reason: str = "manual") -> ArbPosition:
        """
        Close an open position by id.

        Raises:
            PositionNotFoundError: no open position with that id.
        """
        async with self._lock:
            pos = self.positions.get(position_id)
            if pos is None:
                raise PositionNotFoundError(position_id)
            await self._close_position(pos, reason)
            self._persist()
            return pos

    async def _close_position(self, pos: ArbPosition, reason: str) -> None:
        pos.status = PositionStatus.CLOSING
        log.info(f"[ARB] Closing {pos.asset} ({reason})")
        long_leg = _Leg(pos.long_venue, self.gateways[pos.long_venue], pos.long_symbol, OrderSide.SELL,
                        pos.long_size, pos.long_current_price or pos.long_entry_price)
        short_leg = _Leg(pos.short_venue, self.gateways[pos.short_venue], pos.short_symbol, OrderSide.BUY,
                         pos.short_size, pos.short_current_price or pos.short_entry_price)
        legs = [long_leg, short_leg]
        results = await asyncio.gather(*(self._place(leg, OrderKind.MARKET, reduce_only=True) for leg in legs))

        for leg, res in zip(legs, results):
            if res.success:
                continue
            error = f"{leg.label} close failed: {res.error}"
            pos.close_errors.append(error)
            # Residual exposure is the original leg still open
            self._record_unhedged(pos.asset, leg.venue, leg.side.opposite(), leg.qty, error)
            await self.notifier.unhedged_position(pos.asset, leg.venue, leg.side.opposite(), leg.qty, error)

        pos.status = PositionStatus.CLOSED
        pos.exit_time = self._clock()
        pos.exit_reason = reason
        self.positions.pop(pos.id, None)
        self.closed_positions.append(pos)
        self._trim_histories()
        log.info(f"[ARB] Closed {pos.asset}: funding=${pos.funding_earned:.4f} pnl=${pos.pnl:.4f}"
                 + (f" errors={pos.close_errors}" if pos.close_errors else ""))
        await self.notifier.position_closed(pos)

    async def check_exits(self) -> List[str]:
        """Refresh every open position and close those whose spread turned negative."""
        closed: List[str] = []
        async with self._lock:
            for pos in self.open_positions():
                if pos.status is PositionStatus.CLOSING:
                    # Left mid-close by a previous run
                    await self._close_position(pos, pos.exit_reason or "restart")
                    closed.append(pos.asset)
                    continue
                if not self._refresh_position(pos):
                    continue
                if pos.current_spread < 0:
                    log.warning(f"[ARB] {pos.asset}: spread {pos.current_spread:.2f}% negative, closing")
                    await self.notifier.negative_spread(pos)
                    await self._close_position(pos, "negative_spread")
                    closed.append(pos.asset)
            if self.positions or closed:
                self._persist()
        return closed

    async def close_all(self, reason: str = "manual") -> int:
        async with self._lock:
            positions = self.open_positions()
            for pos in positions:
                await self._close_position(pos, reason)
            self._persist()
        return len(positions)

    # =========================================================================
    # SECTION 6: LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        self._load_state()
        await self.precision.refresh()
        await self.feed.start()
        self.enabled = True
        self._tasks = [
            asyncio.create_task(self._scheduler_loop(), name="arb-rebalance"),
            asyncio.create_task(self._exit_monitor_loop(), name="arb-exit-monitor"),
            asyncio.create_task(self._funding_snapshot_loop(), name="arb-funding-log"),
            asyncio.create_task(self._precision_refresh_loop(), name="arb-precision-refresh"),
        ]
        self._persist()
        mode = "PAPER" if self.config.paper_mode else "LIVE"
        log.info(f"[ARB] Started ({mode}) total capital=${self.total_capital:,.2f} "
                 f"venues={[v.label for v in self.gateways]}")
        await self.notifier.strategy_started(self.total_capital, self.config.paper_mode)

    async def stop(self, close_positions: bool = False, reason: str = "shutdown") -> None:
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if close_positions and self.positions:
            n = await self.close_all("shutdown")
            log.info(f"[ARB] Closed {n} positions on stop")
        await self.feed.stop()
        self.enabled = False
        self._persist()
        log.info(f"[ARB] Stopped ({reason})")
        await self.notifier.strategy_stopped(reason)

    def next_rebalance_time(self) -> float:
        """Next scheduled run. Missed runs collapse into one immediate run."""
        now = self._clock()
        if self.last_rebalance_time is None:
            return now
        return max(now, self.last_rebalance_time + self.rebalance_interval_s)

    async def _scheduler_loop(self) -> None:
        while True:
            delay = self.next_rebalance_time() - self._clock()
            if delay > 0:
                await self._sleep(delay)
            try:
                await self.rebalance(trigger="scheduled")
            except RebalanceInProgressError:
                log.info("[ARB] Scheduled rebalance skipped, another cycle in progress")
                await self._sleep(self.config.spread_check_interval_s)
            except GatewayError as e:
                log.error(f"[ARB] Scheduled rebalance failed: {e}")
                self.last_rebalance_time = self._clock()
            except Exception as e:
                log.error(f"[ARB] Scheduled rebalance crashed: {e!r}")
                self.last_rebalance_time = self._clock()

    async def _exit_monitor_loop(self) -> None:
        while True:
            await self._sleep(self.config.spread_check_interval_s)
            try:
                await self.check_exits()
            except GatewayError as e:
                log.warning(f"[ARB] Exit monitor error: {e}")
            except Exception as e:
                log.error(f"[ARB] Exit monitor crashed: {e!r}")

    async def _funding_snapshot_loop(self) -> None:
        while True:
            await self._sleep(self.config.funding_snapshot_interval_s)
            try:
                n = self.store.append_funding_snapshot(self.feed.snapshot())
            except Exception as e:
                log.error(f"[ARB] Funding snapshot failed: {e!r}")
                continue
            log.debug(f"[ARB] Funding snapshot: {n} rows")

    async def _precision_refresh_loop(self) -> None:
        while True:
            await self._sleep(self.precision.refresh_interval_s)
            try:
                loaded = await self.precision.refresh()
            except Exception as e:
                log.error(f"[ARB] Precision refresh crashed: {e!r}")
                continue
            log.debug(f"[ARB] Precision refresh: {sum(loaded.values())} rules reloaded")

    # =========================================================================
    # SECTION 7: QUERIES
    # =========================================================================

    def get_status(self) -> Dict[str, Any]:
        open_positions = self.open_positions()
        allocated = sum(p.long_notional + p.short_notional for p in open_positions)
        last = self.last_rebalance_time
        return {
            "enabled": self.enabled,
            "paper_mode": self.config.paper_mode,
            "total_capital": self.total_capital,
            "allocated_capital": allocated,
            "available_capital": self.total_capital - allocated,
            "open_positions": [p.to_dict() for p in open_positions],
            "total_pnl": sum(p.pnl for p in open_positions) + sum(p.pnl for p in self.closed_positions),
            "total_funding_earned": sum(p.funding_earned for p in open_positions)
            + sum(p.funding_earned for p in self.closed_positions),
            "last_rebalance_time": last,
            "next_rebalance_time": (last + self.rebalance_interval_s) if last is not None else None,
            "rebalance_in_progress": self._rebalance_in_progress,
            "unhedged_exposures": list(self.unhedged_exposures),
        }

    def get_closed_positions(self) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in reversed(self.closed_positions)]

    def get_rebalance_history(self) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in reversed(self.rebalance_history)]

    def get_top_spreads(self, limit: int = 10) -> List[Dict[str, Any]]:
        spreads = rank_spreads(self.feed.all_quotes(), self.config.excluded_assets)
        return [s.to_dict() for s in spreads[:limit]]
