# -*- coding: utf-8 -*-
"""
Abstract base class for exchange gateways.

Every venue (Aster, Hyperliquid, Lighter) inherits from GatewayBase so the
funding feed, the precision manager and the arbitrage engine can drive all of
them through the same interface. Quantities handed to a gateway are already
rounded by the PrecisionManager; the gateway only formats and signs them.
"""
from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import aiohttp

from core.http import DEFAULT_TIMEOUT_S, new_session
from core.models import (
    Balance, OrderFill, OrderKind, OrderResult, OrderSide, OrderStatus,
    PrecisionRule, RawFunding, Venue,
)
from core.rate_limit import SlidingWindowLimiter, WeightBudget

log = logging.getLogger(__name__)

Budget = Union[WeightBudget, SlidingWindowLimiter]

READ_ATTEMPTS = 5
RETRYABLE_STATUSES = (418, 429)
MAX_RETRY_AFTER_S = 60.0


class GatewayError(Exception):
    """Transport failure after retries, or a call the gateway cannot make (missing credentials)."""

    def __init__(self, venue: Venue, message: str) -> None:
        super().__init__(f"[{venue.label}] {message}")
        self.venue = venue


def is_retryable_status(status: int) -> bool:
    """Rate limited (418 ban, 429) or a server-side failure."""
    return status in RETRYABLE_STATUSES or status >= 500


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After in seconds, capped. HTTP-date values are ignored."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return min(max(0.0, seconds), MAX_RETRY_AFTER_S)


def format_number(value: float) -> str:
    """Plain decimal string without exponent or trailing zeros (0.00100000 -> '0.001')."""
    d = Decimal(str(value)).normalize()
    text = f"{d:f}"
    return "0" if text in ("-0", "") else text


class GatewayBase(ABC):
    """
    Base for all venue gateways.

    Subclasses set `venue`, build their budget and implement the abstract
    methods. Outbound HTTP goes through `_request`, which waits on the venue
    budget first and retries reads with `2**attempt` backoff.
    """

    venue: Venue
    supports_streaming: bool = False

    def __init__(self, cfg: Optional[Dict[str, Any]], budget: Budget) -> None:
        self.cfg = cfg or {}
        self.rest_url: str = str(self.cfg.get("rest_url", "")).rstrip("/")
        self.timeout_s = float(self.cfg.get("timeout_s", DEFAULT_TIMEOUT_S))
        self._budget = budget
        self._session: Optional[aiohttp.ClientSession] = None
        self._sleep = asyncio.sleep

    @property
    def label(self) -> str:
        return self.venue.label

    @property
    def budget(self) -> Budget:
        return self._budget

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Open the REST session. Must be called before any network call."""
        if self._session is None or self._session.closed:
            self._session = new_session(self.timeout_s)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    @abstractmethod
    def missing_credentials(self) -> List[str]:
        """Names of credential environment variables that are not set."""

    def check_credentials(self) -> bool:
        """
        Verify that API credentials are present.
        Does NOT make network calls - just checks if keys exist.
        """
        return not self.missing_credentials()

    # ==================== Market data ====================

    @abstractmethod
    async def fetch_precision_rules(self) -> Dict[str, PrecisionRule]:
        """Tick/step/minimum rules for every listed symbol, keyed by venue symbol."""

    @abstractmethod
    async def fetch_funding(self) -> List[RawFunding]:
        """Current funding observation for every listed symbol."""

    def stream_url(self, symbols: List[str]) -> str:
        raise NotImplementedError(f"{self.label} has no funding stream")

    def parse_stream_message(self, raw: Union[str, bytes]) -> List[RawFunding]:
        raise NotImplementedError(f"{self.label} has no funding stream")

    # ==================== Trading ====================

    @abstractmethod
    async def place_order(
        self,
        symbol: str,
        side: OrderSide,
        qty: float,
        price: Optional[float] = None,
        kind: OrderKind = OrderKind.LIMIT,
        reduce_only: bool = False,
    ) -> OrderResult:
        """
        Place an order on the venue. Never retried.

        Args:
            symbol: Venue symbol
            side: BUY or SELL
            qty: Quantity in venue units, already rounded
            price: Limit price (reference price for market orders)
            kind: LIMIT or MARKET
            reduce_only: If True, only reduce an existing position

        Returns:
            OrderResult; failures are reported with success=False, never raised.
        """

    @abstractmethod
    async def get_order_fill(self, order_id: str, symbol: str) -> OrderFill:
        """Current state of an order, with filled quantity and average price."""

    async def get_order_status(self, order_id: str, symbol: str) -> OrderStatus:
        return (await self.get_order_fill(order_id, symbol)).status

    @abstractmethod
    async def cancel_order(self, order_id: str, symbol: str) -> bool:
        """Cancel an open order. Returns True if the venue accepted the cancel."""

    @abstractmethod
    async def get_balance(self) -> Balance:
        """Available and total collateral in USD."""

    async def wait_for_fill(self, order_id: str, symbol: str, attempts: int = 10,
                            interval_s: float = 1.0) -> bool:
        """
        Poll the order status until it is filled or dead.

        Returns:
            True on FILLED; False on CANCELLED/REJECTED/EXPIRED or when attempts run out.
        """
        for attempt in range(max(1, attempts)):
            try:
                status = await self.get_order_status(order_id, symbol)
            except GatewayError as e:
                log.warning(f"[{self.label}] wait_for_fill poll error: {e}")
                status = OrderStatus.UNKNOWN
            if status is OrderStatus.FILLED:
                return True
            if status in (OrderStatus.CANCELLED, OrderStatus.REJECTED, OrderStatus.EXPIRED):
                log.info(f"[{self.label}] Order {order_id} ended {status.value}")
                return False
            if attempt < attempts - 1:
                await self._sleep(interval_s)
        log.info(f"[{self.label}] Order {order_id} not filled after {attempts} polls")
        return False

    # ==================== Helpers ====================

    def _failed_order(self, symbol: str, side: OrderSide, kind: OrderKind, qty: float,
                      error: str, raw: Any = None) -> OrderResult:
        log.warning(f"[{self.label}] {side.value} {qty} {symbol} rejected: {error}")
        return OrderResult(
            success=False, venue=self.venue, symbol=symbol, side=side, kind=kind,
            requested_qty=qty, status=OrderStatus.REJECTED, error=error, raw=raw,
        )

    async def _request(self, method: str, url: str, *, weight: int = 1,
                       attempts: int = READ_ATTEMPTS, **kwargs) -> Any:
        """
        Budgeted HTTP call returning parsed JSON.

        Non-JSON bodies come back as {"_raw_text": ..., "_http_status": ...}.
        Transport errors and rate-limit/server statuses (418, 429, 5xx) are
        retried `attempts` times with 2**attempt backoff (or the venue's
        Retry-After), then raised as GatewayError. With `attempts=1` the
        response is returned whatever its status.
        """
        if self._session is None or self._session.closed:
            await self.start()
        last_error: Any = None
        for attempt in range(max(1, attempts)):
            await self._budget.acquire(weight)
            retry_after: Optional[float] = None
            try:
                async with self._session.request(method, url, **kwargs) as r:
                    text = await r.text()
                    if attempts > 1 and is_retryable_status(r.status):
                        last_error = f"HTTP {r.status} {text[:200]}"
                        retry_after = parse_retry_after(r.headers.get("Retry-After"))
                    else:
                        try:
                            return json.loads(text)
                        except ValueError:
                            return {"_raw_text": text, "_http_status": r.status}
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = e
            if attempt + 1 >= attempts:
                break
            wait = retry_after if retry_after is not None else 2 ** attempt
            log.warning(f"[{self.label}] {method} {url} error (attempt {attempt + 1}/{attempts}): {last_error}. "
                        f"Retrying in {wait}s...")
            await self._sleep(wait)
        raise GatewayError(self.venue, f"{method} {url} failed: {last_error}")
