# -*- coding: utf-8 -*-
"""
Funding Feed.

Collects funding observations from every venue, resolves native symbols to
canonical assets, normalizes rates to an hourly basis and keeps the latest
FundingQuote per (venue, asset).

Two ingestion paths converge on `ingest()`:
- polling: REST snapshots every `poll_interval_s` (Hyperliquid, Lighter)
- streaming: venue push stream (Aster markPrice), bootstrapped by one poll,
  with exponential reconnect backoff and a no-message watchdog
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from core.models import HOURS_PER_YEAR, FundingQuote, RawFunding, Venue
from core.symbols import SymbolResolver
from venues.base import GatewayBase, GatewayError

log = logging.getLogger(__name__)

QuoteCallback = Callable[[FundingQuote], Any]

RECONNECT_BACKOFF_START_S = 1.0
RECONNECT_BACKOFF_FACTOR = 1.5
RECONNECT_BACKOFF_MAX_S = 30.0


def normalize_hourly(raw_rate: float, interval_hours: float) -> float:
    """Per-period funding rate -> hourly rate."""
    if interval_hours <= 0:
        raise ValueError(f"interval_hours must be positive, got {interval_hours}")
    return float(raw_rate) / float(interval_hours)


def annualize_pct(hourly_rate: float) -> float:
    """Hourly rate -> annualized percent (simple, not compounded)."""
    return float(hourly_rate) * HOURS_PER_YEAR * 100.0


class FundingFeed:
    """
    Latest funding state per venue and asset.

    Args:
        gateways: Venue -> gateway supplying `fetch_funding` (and stream hooks)
        resolver: SymbolResolver used to unify native symbols
        poll_interval_s: REST snapshot period
        stale_timeout_s: Stream watchdog; reconnect when silent this long
        stream_symbols: Optional explicit symbol list per streaming venue
        clock: Time source for `observed_at`
        ws_connect: websockets.connect compatible factory
        sleep: Coroutine used for poll waits and reconnect backoff
    """

    def __init__(
        self,
        gateways: Dict[Venue, GatewayBase],
        resolver: SymbolResolver,
        poll_interval_s: float = 30.0,
        stale_timeout_s: float = 60.0,
        stream_symbols: Optional[Dict[Venue, List[str]]] = None,
        clock: Callable[[], float] = time.time,
        ws_connect: Optional[Callable[..., Any]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.gateways = gateways
        self.resolver = resolver
        self.poll_interval_s = float(poll_interval_s)
        self.stale_timeout_s = float(stale_timeout_s)
        self.stream_symbols = stream_symbols or {}
        self._clock = clock
        self._ws_connect = ws_connect or websockets.connect
        self._sleep = sleep
        self._quotes: Dict[Tuple[Venue, str], FundingQuote] = {}
        self._subscribers: List[QuoteCallback] = []
        self._tasks: List[asyncio.Task] = []
        self.unresolved: Dict[Venue, int] = defaultdict(int)
        self.unresolved_symbols: Dict[Venue, set] = defaultdict(set)
        self.reconnects: Dict[Venue, int] = defaultdict(int)
        self.last_update: Dict[Venue, float] = {}

    # ==================== Ingestion ====================

    def subscribe(self, callback: QuoteCallback) -> None:
        """Register a sync or async callback receiving every new FundingQuote."""
        self._subscribers.append(callback)

    async def ingest(self, venue: Venue, observations: Iterable[RawFunding]) -> List[FundingQuote]:
        """Resolve, normalize, store and publish a batch of observations from one venue."""
        venue = Venue.parse(venue)
        accepted: List[FundingQuote] = []
        now = self._clock()
        for obs in observations:
            res = self.resolver.resolve(obs.symbol, venue)
            if res is None:
                self.unresolved[venue] += 1
                if obs.symbol not in self.unresolved_symbols[venue]:
                    self.unresolved_symbols[venue].add(obs.symbol)
                    log.warning(f"[FEED] {venue.label}: unresolved symbol {obs.symbol}, dropped")
                continue
            try:
                hourly = normalize_hourly(obs.raw_rate, obs.interval_hours)
            except ValueError as e:
                log.warning(f"[FEED] {venue.label}:{obs.symbol} {e}")
                continue
            quote = FundingQuote(
                asset=res.asset.id,
                venue=venue,
                symbol=obs.symbol,
                mark_price=obs.mark_price,
                raw_rate=obs.raw_rate,
                normalized_hourly_rate=hourly,
                annualized_rate_pct=annualize_pct(hourly),
                payment_frequency_hours=obs.interval_hours,
                next_payment_at=obs.next_funding_ms / 1000.0 if obs.next_funding_ms else None,
                observed_at=now,
                multiplier=res.multiplier,
            )
            self._quotes[(venue, quote.asset)] = quote
            accepted.append(quote)
        if accepted:
            self.last_update[venue] = now
        for quote in accepted:
            await self._publish(quote)
        return accepted

    async def _publish(self, quote: FundingQuote) -> None:
        for cb in list(self._subscribers):
            try:
                result = cb(quote)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                # a broken subscriber must not stop ingestion
                log.warning(f"[FEED] subscriber {getattr(cb, '__name__', cb)} failed: {e}")

    # ==================== Polling ====================

    async def poll_once(self, venue: Venue) -> int:
        """Fetch one REST snapshot from a venue. Returns the number of quotes stored."""
        venue = Venue.parse(venue)
        observations = await self.gateways[venue].fetch_funding()
        quotes = await self.ingest(venue, observations)
        log.debug(f"[FEED] {venue.label}: {len(quotes)}/{len(observations)} funding quotes")
        return len(quotes)

    async def _poll_loop(self, venue: Venue) -> None:
        while True:
            try:
                await self.poll_once(venue)
            except GatewayError as e:
                log.warning(f"[FEED] {venue.label} poll failed: {e}")
            except Exception as e:
                log.error(f"[FEED] {venue.label} poll crashed: {e!r}")
            await self._sleep(self.poll_interval_s)

    # ==================== Streaming ====================

    async def _stream_loop(self, venue: Venue) -> None:
        gateway = self.gateways[venue]
        backoff = RECONNECT_BACKOFF_START_S
        while True:
            url = gateway.stream_url(self.stream_symbols.get(venue, []))
            try:
                async with self._ws_connect(url, ping_interval=20, ping_timeout=30, close_timeout=5) as ws:
                    log.info(f"[FEED] {venue.label} stream connected")
                    backoff = RECONNECT_BACKOFF_START_S
                    while True:
                        # watchdog: heartbeats arrive every few seconds
                        raw = await asyncio.wait_for(ws.recv(), timeout=self.stale_timeout_s)
                        observations = gateway.parse_stream_message(raw)
                        if observations:
                            await self.ingest(venue, observations)
            except asyncio.TimeoutError:
                log.warning(f"[FEED] {venue.label} stream silent for {self.stale_timeout_s:.0f}s, reconnecting")
            except (ConnectionClosed, WebSocketException, OSError) as e:
                log.warning(f"[FEED] {venue.label} stream error: {e} - reconnecting in {backoff:.1f}s")
            except Exception as e:
                log.error(f"[FEED] {venue.label} stream crashed: {e!r} - reconnecting in {backoff:.1f}s")
            self.reconnects[venue] += 1
            await self._sleep(backoff)
            backoff = min(backoff * RECONNECT_BACKOFF_FACTOR, RECONNECT_BACKOFF_MAX_S)

    async def _bootstrap_then_stream(self, venue: Venue) -> None:
        try:
            await self.poll_once(venue)
        except GatewayError as e:
            log.warning(f"[FEED] {venue.label} bootstrap snapshot failed: {e}")
        except Exception as e:
            log.error(f"[FEED] {venue.label} bootstrap snapshot crashed: {e!r}")
        await self._stream_loop(venue)

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        if self._tasks:
            return
        for venue, gateway in self.gateways.items():
            if gateway.supports_streaming:
                coro = self._bootstrap_then_stream(venue)
                name = f"feed_stream_{venue.value}"
            else:
                coro = self._poll_loop(venue)
                name = f"feed_poll_{venue.value}"
            self._tasks.append(asyncio.create_task(coro, name=name))
        log.info(f"[FEED] Started for {', '.join(v.label for v in self.gateways)}")

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    # ==================== Queries ====================

    def get_quote(self, venue: Venue, asset: str) -> Optional[FundingQuote]:
        return self._quotes.get((Venue.parse(venue), asset.upper()))

    def quotes_for(self, asset: str) -> Dict[Venue, FundingQuote]:
        asset = asset.upper()
        return {v: q for (v, a), q in self._quotes.items() if a == asset}

    def all_quotes(self) -> Dict[str, Dict[Venue, FundingQuote]]:
        out: Dict[str, Dict[Venue, FundingQuote]] = defaultdict(dict)
        for (venue, asset), q in self._quotes.items():
            out[asset][venue] = q
        return dict(out)

    def assets_on_multiple_venues(self) -> List[str]:
        return sorted(a for a, by_venue in self.all_quotes().items() if len(by_venue) >= 2)

    def mark_price(self, venue: Venue, symbol: str) -> Optional[float]:
        """Latest mark price for a native symbol (paper fills)."""
        venue = Venue.parse(venue)
        for (v, _), q in self._quotes.items():
            if v is venue and q.symbol.upper() == symbol.upper():
                return q.mark_price
        return None

    def snapshot(self) -> List[Dict[str, Any]]:
        """Flat rows for the funding log."""
        rows = []
        for (venue, asset), q in sorted(self._quotes.items(), key=lambda kv: (kv[0][1], kv[0][0].value)):
            rows.append({
                "observed_at": round(q.observed_at, 3),
                "venue": venue.value,
                "asset": asset,
                "symbol": q.symbol,
                "mark_price": q.mark_price,
                "raw_rate": q.raw_rate,
                "interval_hours": q.payment_frequency_hours,
                "hourly_rate": q.normalized_hourly_rate,
                "annualized_pct": round(q.annualized_rate_pct, 4),
            })
        return rows
