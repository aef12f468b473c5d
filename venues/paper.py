# -*- coding: utf-8 -*-
"""
Paper trading wrapper.

Market data, precision rules and the funding stream come from the real venue;
orders are simulated and filled immediately at the current mark price.
"""
from __future__ import annotations

import itertools
import logging
from typing import Callable, Dict, List, Optional, Union

from core.models import (
    Balance, OrderFill, OrderKind, OrderResult, OrderSide, OrderStatus,
    PrecisionRule, RawFunding,
)
from venues.base import GatewayBase

log = logging.getLogger(__name__)

PriceSource = Callable[[str], Optional[float]]


class PaperGateway(GatewayBase):
    """Simulated execution on top of a real gateway's market data."""

    def __init__(self, inner: GatewayBase, capital: float, price_source: Optional[PriceSource] = None) -> None:
        super().__init__(inner.cfg, inner.budget)
        self.inner = inner
        self.venue = inner.venue
        self.supports_streaming = inner.supports_streaming
        self.capital = float(capital)
        self.price_source = price_source
        self._ids = itertools.count(1)
        self._fills: Dict[str, OrderFill] = {}

    async def start(self) -> None:
        await self.inner.start()

    async def close(self) -> None:
        await self.inner.close()

    def missing_credentials(self) -> List[str]:
        return []

    async def fetch_precision_rules(self) -> Dict[str, PrecisionRule]:
        return await self.inner.fetch_precision_rules()

    async def fetch_funding(self) -> List[RawFunding]:
        return await self.inner.fetch_funding()

    def stream_url(self, symbols: List[str]) -> str:
        return self.inner.stream_url(symbols)

    def parse_stream_message(self, raw: Union[str, bytes]) -> List[RawFunding]:
        return self.inner.parse_stream_message(raw)

    async def place_order(self, symbol: str, side: OrderSide, qty: float, price: Optional[float] = None,
                          kind: OrderKind = OrderKind.LIMIT, reduce_only: bool = False) -> OrderResult:
        side = OrderSide(side)
        kind = OrderKind(kind)
        mark = self.price_source(symbol) if self.price_source else None
        fill_price = mark or price or 0.0
        if qty <= 0 or fill_price <= 0:
            return self._failed_order(symbol, side, kind, qty, "no price to simulate fill")
        order_id = f"paper-{self.label}-{next(self._ids)}"
        self._fills[order_id] = OrderFill(OrderStatus.FILLED, qty, fill_price)
        log.info(f"[{self.label}] PAPER {side.value} {qty} {symbol} @ {fill_price}")
        return OrderResult(True, self.venue, symbol, side, kind, qty, order_id=order_id,
                           status=OrderStatus.FILLED, filled_qty=qty, avg_price=fill_price, simulated=True)

    async def get_order_fill(self, order_id: str, symbol: str) -> OrderFill:
        # simulated fills are terminal, each is reported once
        return self._fills.pop(order_id, OrderFill(OrderStatus.UNKNOWN))

    async def cancel_order(self, order_id: str, symbol: str) -> bool:
        return order_id in self._fills

    async def get_balance(self) -> Balance:
        return Balance(self.venue, available=self.capital, total=self.capital)
