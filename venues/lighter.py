# -*- coding: utf-8 -*-
"""
Lighter gateway.

Public data via REST API v1 (orderBooks, funding-rates, exchangeStats, account).
Orders are signed and sent by the `lighter` SDK SignerClient. Lighter does not
echo fills synchronously, so fill state is derived from the account position
change since the order was submitted.
"""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from core.models import (
    Balance, OrderFill, OrderKind, OrderResult, OrderSide, OrderStatus,
    PrecisionRule, RawFunding, Venue,
)
from core.rate_limit import SlidingWindowLimiter
from venues.base import GatewayBase, GatewayError

log = logging.getLogger(__name__)

DEFAULT_REST_URL = "https://mainnet.zklighter.elliot.ai"
MAINNET_CHAIN_ID = 304
MARKET_SLIPPAGE = 0.02
FUNDING_INTERVAL_H = 1.0


@dataclass
class LighterMarket:
    market_id: int
    symbol: str
    price_decimals: int
    size_decimals: int
    min_base_amount: float = 0.0
    min_quote_amount: float = 0.0


@dataclass
class _PendingOrder:
    symbol: str
    side: OrderSide
    qty: float
    kind: OrderKind
    position_before: float
    price: float


def _f(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class LighterGateway(GatewayBase):
    venue = Venue.LIGHTER

    def __init__(self, cfg: Optional[Dict[str, Any]] = None,
                 budget: Optional[SlidingWindowLimiter] = None) -> None:
        cfg = dict(cfg or {})
        cfg.setdefault("rest_url", DEFAULT_REST_URL)
        super().__init__(cfg, budget or SlidingWindowLimiter(int(cfg.get("calls_per_second", 10)), 1.0, label="LT"))
        self.private_key_env = str(cfg.get("private_key_env", "LIGHTER_PRIVATE_KEY"))
        self.account_index_env = str(cfg.get("account_index_env", "LIGHTER_ACCOUNT_INDEX"))
        self.api_key_index_env = str(cfg.get("api_key_index_env", "LIGHTER_API_KEY_INDEX"))
        self.private_key = os.environ.get(self.private_key_env, "").strip()
        account_idx = os.environ.get(self.account_index_env, "").strip()
        api_key_idx = os.environ.get(self.api_key_index_env, "").strip()
        self.account_index: Optional[int] = int(account_idx) if account_idx.isdigit() else None
        self.api_key_index: int = int(api_key_idx) if api_key_idx.isdigit() else 0
        self.chain_id = int(cfg.get("chain_id", MAINNET_CHAIN_ID))

        self._signer = None
        self._markets: Dict[str, LighterMarket] = {}
        self._pending: Dict[str, _PendingOrder] = {}
        self._marks: Dict[str, float] = {}

    def missing_credentials(self) -> List[str]:
        missing = []
        if not self.private_key:
            missing.append(self.private_key_env)
        if self.account_index is None:
            missing.append(self.account_index_env)
        return missing

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        await super().start()
        if self._signer is None and self.check_credentials():
            self._init_signer()

    def _init_signer(self) -> None:
        import lighter

        self._signer = lighter.SignerClient(
            url=self.rest_url,
            account_index=self.account_index,
            api_private_keys={self.api_key_index: self.private_key},
        )
        self._signer.chain_id = self.chain_id
        log.info(f"[Lighter] SignerClient ready (account={self.account_index}, "
                 f"api_key_idx={self.api_key_index}, chain_id={self.chain_id})")

    async def close(self) -> None:
        if self._signer is not None and hasattr(self._signer, "close"):
            await self._signer.close()
        self._signer = None
        await super().close()

    # ==================== Markets ====================

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("GET", f"{self.rest_url}{path}", params=params)

    async def load_markets(self) -> Dict[str, LighterMarket]:
        data = await self._get("/api/v1/orderBooks")
        books = data.get("order_books") if isinstance(data, dict) else data
        markets: Dict[str, LighterMarket] = {}
        for inst in books if isinstance(books, list) else []:
            sym = str(inst.get("symbol", "")).upper()
            market_id = inst.get("market_id", inst.get("id"))
            if not sym or market_id is None:
                continue
            markets[sym] = LighterMarket(
                market_id=int(market_id),
                symbol=sym,
                price_decimals=int(inst.get("supported_price_decimals", 2)),
                size_decimals=int(inst.get("supported_size_decimals", 4)),
                min_base_amount=_f(inst.get("min_base_amount")),
                min_quote_amount=_f(inst.get("min_quote_amount")),
            )
        if markets:
            self._markets = markets
        log.info(f"[Lighter] Loaded {len(markets)} markets")
        return self._markets

    async def _market(self, symbol: str) -> LighterMarket:
        key = symbol.upper()
        if key not in self._markets:
            await self.load_markets()
        if key not in self._markets:
            raise GatewayError(self.venue, f"unknown market {symbol}")
        return self._markets[key]

    # ==================== Market data ====================

    async def fetch_precision_rules(self) -> Dict[str, PrecisionRule]:
        rules: Dict[str, PrecisionRule] = {}
        for sym, m in (await self.load_markets()).items():
            rules[sym] = PrecisionRule(
                venue=self.venue, symbol=sym,
                price_tick=10.0 ** -m.price_decimals, price_decimals=m.price_decimals,
                qty_step=10.0 ** -m.size_decimals, qty_decimals=m.size_decimals,
                qty_min=m.min_base_amount, min_notional=m.min_quote_amount,
            )
        return rules

    async def fetch_funding(self) -> List[RawFunding]:
        if not self._markets:
            await self.load_markets()
        by_id = {m.market_id: sym for sym, m in self._markets.items()}

        stats = await self._get("/api/v1/exchangeStats")
        for item in (stats.get("order_book_stats", []) if isinstance(stats, dict) else []):
            sym = str(item.get("symbol", "")).upper()
            px = _f(item.get("last_trade_price"))
            if sym and px > 0:
                self._marks[sym] = px

        data = await self._get("/api/v1/funding-rates")
        out: List[RawFunding] = []
        for item in (data.get("funding_rates", []) if isinstance(data, dict) else []):
            # the endpoint also lists other exchanges' rates
            if str(item.get("exchange", "")).lower() != "lighter":
                continue
            sym = by_id.get(item.get("market_id")) or str(item.get("symbol", "")).upper()
            mark = self._marks.get(sym, 0.0)
            if not sym or mark <= 0 or item.get("rate") is None:
                continue
            out.append(RawFunding(symbol=sym, mark_price=mark, raw_rate=_f(item.get("rate")),
                                  interval_hours=FUNDING_INTERVAL_H))
        return out

    # ==================== Account ====================

    async def _account(self) -> Dict[str, Any]:
        if self.account_index is None:
            raise GatewayError(self.venue, f"{self.account_index_env} not set")
        data = await self._get("/api/v1/account", {"by": "index", "value": str(self.account_index)})
        accounts = data.get("accounts") if isinstance(data, dict) else None
        if not accounts:
            raise GatewayError(self.venue, f"account query failed: {str(data)[:200]}")
        return accounts[0]

    async def get_positions(self) -> Dict[str, float]:
        """Signed position size per market symbol."""
        acc = await self._account()
        out: Dict[str, float] = {}
        for pos in acc.get("positions", []) or []:
            sym = str(pos.get("symbol", "")).upper()
            size = _f(pos.get("position"))
            sign = int(pos.get("sign", 1) or 1)
            if sym:
                out[sym] = size * sign
        return out

    async def get_balance(self) -> Balance:
        acc = await self._account()
        total = _f(acc.get("collateral"))
        available = _f(acc.get("available_balance"), total)
        return Balance(self.venue, available=available, total=total)

    # ==================== Trading ====================

    async def place_order(self, symbol: str, side: OrderSide, qty: float, price: Optional[float] = None,
                          kind: OrderKind = OrderKind.LIMIT, reduce_only: bool = False) -> OrderResult:
        sym = symbol.upper()
        side = OrderSide(side)
        kind = OrderKind(kind)
        if self._signer is None:
            return self._failed_order(sym, side, kind, qty, "signer not initialized")
        if qty <= 0:
            return self._failed_order(sym, side, kind, qty, "quantity must be positive")
        ref_price = price or self._marks.get(sym, 0.0)
        if ref_price <= 0:
            return self._failed_order(sym, side, kind, qty, f"no reference price for {sym}")

        try:
            market = await self._market(sym)
            position_before = (await self.get_positions()).get(sym, 0.0)
        except GatewayError as e:
            return self._failed_order(sym, side, kind, qty, str(e))

        signer = self._signer
        if kind is OrderKind.MARKET:
            # worst acceptable price
            worst = ref_price * (1 + MARKET_SLIPPAGE) if side is OrderSide.BUY else ref_price * (1 - MARKET_SLIPPAGE)
            order_type = signer.ORDER_TYPE_MARKET
            time_in_force = signer.ORDER_TIME_IN_FORCE_IMMEDIATE_OR_CANCEL
            expiry = 0
            price_int = int(round(worst * 10 ** market.price_decimals))
        else:
            order_type = signer.ORDER_TYPE_LIMIT
            time_in_force = signer.ORDER_TIME_IN_FORCE_GOOD_TILL_TIME
            expiry = -1
            price_int = int(round(ref_price * 10 ** market.price_decimals))
        base_amount = int(round(qty * 10 ** market.size_decimals))
        client_order_index = int(time.time() * 1_000_000) % 2 ** 31

        await self._budget.acquire(1)
        try:
            _created, response, error = await signer.create_order(
                market_index=market.market_id,
                client_order_index=client_order_index,
                base_amount=base_amount,
                price=price_int,
                is_ask=side is OrderSide.SELL,
                order_type=order_type,
                time_in_force=time_in_force,
                reduce_only=reduce_only,
                order_expiry=expiry,
                api_key_index=self.api_key_index,
            )
        except Exception as e:
            # SDK transport errors surface as arbitrary exceptions
            return self._failed_order(sym, side, kind, qty, f"create_order raised: {e}")
        if error:
            return self._failed_order(sym, side, kind, qty, str(error))
        code = getattr(response, "code", 200)
        if code != 200:
            return self._failed_order(sym, side, kind, qty, f"code={code} {getattr(response, 'message', '')}")

        order_id = str(client_order_index)
        self._pending[order_id] = _PendingOrder(sym, side, qty, kind, position_before, ref_price)
        log.info(f"[Lighter] {side.value} {qty} {sym} {kind.value} -> order {order_id} accepted")
        return OrderResult(True, self.venue, sym, side, kind, qty, order_id=order_id,
                           status=OrderStatus.OPEN, raw=response)

    async def get_order_fill(self, order_id: str, symbol: str) -> OrderFill:
        pending = self._pending.get(str(order_id))
        if pending is None:
            return OrderFill(OrderStatus.UNKNOWN)
        current = (await self.get_positions()).get(pending.symbol, 0.0)
        delta = current - pending.position_before
        if pending.side is OrderSide.SELL:
            delta = -delta
        filled = max(0.0, min(delta, pending.qty))
        if filled >= pending.qty * 0.999:
            del self._pending[str(order_id)]
            return OrderFill(OrderStatus.FILLED, pending.qty, pending.price)
        if filled > 0:
            return OrderFill(OrderStatus.PARTIALLY_FILLED, filled, pending.price)
        return OrderFill(OrderStatus.OPEN)

    async def cancel_order(self, order_id: str, symbol: str) -> bool:
        if self._signer is None or not order_id:
            return False
        try:
            market = await self._market(symbol)
            await self._budget.acquire(1)
            _cancel, response, error = await self._signer.cancel_order(
                market_index=market.market_id,
                order_index=int(order_id),
                api_key_index=self.api_key_index,
            )
        except GatewayError as e:
            log.warning(f"[Lighter] cancel {order_id} error: {e}")
            return False
        except Exception as e:
            log.warning(f"[Lighter] cancel {order_id} raised: {e}")
            return False
        if error:
            log.warning(f"[Lighter] cancel {order_id} rejected: {error}")
            return False
        if getattr(response, "code", 200) == 200:
            self._pending.pop(str(order_id), None)
            return True
        return False
