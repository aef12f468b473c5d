# -*- coding: utf-8 -*-
"""
Aster gateway: Binance Futures-compatible REST API with HMAC-SHA256 signing
and the `<symbol>@markPrice` combined stream for funding updates.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import time
import urllib.parse
from typing import Any, Dict, List, Optional, Union

from core.models import (
    Balance, OrderFill, OrderKind, OrderResult, OrderSide, OrderStatus,
    PrecisionRule, RawFunding, Venue,
)
from core.precision import count_decimals
from core.rate_limit import WeightBudget
from venues.base import GatewayBase, GatewayError, format_number

log = logging.getLogger(__name__)

DEFAULT_REST_URL = "https://fapi.asterdex.com"
DEFAULT_WS_URL = "wss://fstream.asterdex.com"
DEFAULT_MIN_NOTIONAL = 5.0
DEFAULT_FUNDING_INTERVAL_H = 8
FUNDING_INFO_TTL_S = 300.0
RECV_WINDOW = "5000"

# Request weights against the 2400 / minute budget
WEIGHTS = {
    "order": 1,
    "order_query": 1,
    "balance": 5,
    "premium_index": 10,
    "exchange_info": 1,
    "funding_info": 1,
    "time": 1,
}

_STATUS_MAP = {
    "NEW": OrderStatus.OPEN,
    "PARTIALLY_FILLED": OrderStatus.PARTIALLY_FILLED,
    "FILLED": OrderStatus.FILLED,
    "CANCELED": OrderStatus.CANCELLED,
    "CANCELLED": OrderStatus.CANCELLED,
    "REJECTED": OrderStatus.REJECTED,
    "EXPIRED": OrderStatus.EXPIRED,
}

QUOTE_ASSETS = ("USDT", "USDC", "USD")


def _f(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class AsterGateway(GatewayBase):
    venue = Venue.ASTER
    supports_streaming = True

    def __init__(self, cfg: Optional[Dict[str, Any]] = None, budget: Optional[WeightBudget] = None) -> None:
        cfg = dict(cfg or {})
        cfg.setdefault("rest_url", DEFAULT_REST_URL)
        super().__init__(cfg, budget or WeightBudget(int(cfg.get("weight_per_minute", 2400)), 60.0, label="AS"))
        self.ws_url: str = str(cfg.get("ws_url", DEFAULT_WS_URL)).rstrip("/")
        self.api_key_env = str(cfg.get("api_key_env", "ASTER_API_KEY"))
        self.api_secret_env = str(cfg.get("api_secret_env", "ASTER_API_SECRET"))
        self.api_key = os.environ.get(self.api_key_env, "").strip()
        self.api_secret = os.environ.get(self.api_secret_env, "").strip()
        self._time_offset_ms = 0
        self._intervals: Dict[str, int] = {}
        self._intervals_ts = 0.0

    def missing_credentials(self) -> List[str]:
        missing = []
        if not self.api_key:
            missing.append(self.api_key_env)
        if not self.api_secret:
            missing.append(self.api_secret_env)
        return missing

    async def start(self) -> None:
        await super().start()
        await self.sync_time()

    async def sync_time(self) -> None:
        """Align request timestamps with the server clock (GET /fapi/v1/time)."""
        try:
            data = await self._public_get("/fapi/v1/time", None, WEIGHTS["time"])
        except GatewayError as e:
            log.warning(f"[Aster] server time unavailable, using local clock: {e}")
            return
        server_ms = data.get("serverTime") if isinstance(data, dict) else None
        if server_ms:
            self._time_offset_ms = int(server_ms) - int(time.time() * 1000)
            log.debug(f"[Aster] server clock offset {self._time_offset_ms} ms")

    def _timestamp_ms(self) -> int:
        return int(time.time() * 1000) + self._time_offset_ms

    # ==================== Signing ====================

    def _sign_params(self, params: Dict[str, Any]) -> Dict[str, str]:
        """
        Sign a request: params sorted alphabetically (timestamp and recvWindow
        added when absent), urlencoded, HMAC-SHA256 with the API secret.
        `signature` is appended last.
        """
        d = {k: str(v) for k, v in params.items() if v is not None}
        if "timestamp" not in d:
            d["timestamp"] = str(self._timestamp_ms())
        if "recvWindow" not in d:
            d["recvWindow"] = RECV_WINDOW
        d = dict(sorted(d.items()))
        query = urllib.parse.urlencode(d)
        d["signature"] = hmac.new(self.api_secret.encode(), query.encode(), hashlib.sha256).hexdigest()
        return d

    # ==================== Transport ====================

    async def _public_get(self, path: str, params: Optional[Dict[str, Any]], weight: int) -> Any:
        return await self._request("GET", f"{self.rest_url}{path}", weight=weight, params=params)

    def _auth_headers(self) -> Dict[str, str]:
        if self.missing_credentials():
            raise GatewayError(self.venue, f"credentials not set: {', '.join(self.missing_credentials())}")
        return {"X-MBX-APIKEY": self.api_key}

    async def _private_get(self, path: str, params: Dict[str, Any], weight: int = 1) -> Any:
        headers = self._auth_headers()
        return await self._request("GET", f"{self.rest_url}{path}", weight=weight,
                                   params=self._sign_params(params), headers=headers)

    async def _private_post(self, path: str, params: Dict[str, Any], weight: int = 1) -> Any:
        headers = {**self._auth_headers(), "Content-Type": "application/x-www-form-urlencoded"}
        # order placement: one attempt only
        return await self._request("POST", f"{self.rest_url}{path}", weight=weight, attempts=1,
                                   data=self._sign_params(params), headers=headers)

    async def _private_delete(self, path: str, params: Dict[str, Any], weight: int = 1) -> Any:
        headers = self._auth_headers()
        return await self._request("DELETE", f"{self.rest_url}{path}", weight=weight, attempts=1,
                                   params=self._sign_params(params), headers=headers)

    @staticmethod
    def _api_error(data: Any) -> Optional[str]:
        """Error text for `{"code": <non-zero>, "msg": ...}` or raw non-JSON bodies."""
        if isinstance(data, dict):
            if "_raw_text" in data:
                return f"HTTP {data.get('_http_status')}: {str(data['_raw_text'])[:200]}"
            code = data.get("code")
            if code not in (None, 0, 200) and "msg" in data:
                return f"code={code} msg={data.get('msg')}"
        return None

    # ==================== Market data ====================

    async def fetch_precision_rules(self) -> Dict[str, PrecisionRule]:
        data = await self._public_get("/fapi/v1/exchangeInfo", None, WEIGHTS["exchange_info"])
        rules: Dict[str, PrecisionRule] = {}
        for s in (data.get("symbols", []) if isinstance(data, dict) else []):
            if s.get("status", "TRADING") != "TRADING":
                continue
            sym = str(s.get("symbol", "")).upper()
            if not sym:
                continue
            tick = step = qmin = qmax = 0.0
            min_notional = DEFAULT_MIN_NOTIONAL
            m_step = m_min = m_max = None
            for f in s.get("filters", []):
                ft = f.get("filterType")
                if ft == "PRICE_FILTER":
                    tick = _f(f.get("tickSize"))
                elif ft == "LOT_SIZE":
                    step = _f(f.get("stepSize"))
                    qmin = _f(f.get("minQty"))
                    qmax = _f(f.get("maxQty"))
                elif ft == "MARKET_LOT_SIZE":
                    m_step = _f(f.get("stepSize")) or None
                    m_min = _f(f.get("minQty")) or None
                    m_max = _f(f.get("maxQty")) or None
                elif ft == "MIN_NOTIONAL":
                    min_notional = _f(f.get("notional", f.get("minNotional")), DEFAULT_MIN_NOTIONAL) or DEFAULT_MIN_NOTIONAL
            price_decimals = int(s.get("pricePrecision", count_decimals(tick) if tick else 8))
            qty_decimals = int(s.get("quantityPrecision", count_decimals(step) if step else 8))
            rules[sym] = PrecisionRule(
                venue=self.venue, symbol=sym,
                price_tick=tick, price_decimals=price_decimals,
                qty_step=step, qty_decimals=qty_decimals,
                qty_min=qmin, qty_max=qmax, min_notional=min_notional,
                market_qty_step=m_step, market_qty_min=m_min, market_qty_max=m_max,
            )
        log.info(f"[Aster] Loaded rules for {len(rules)} symbols")
        return rules

    async def fetch_funding_intervals(self) -> Dict[str, int]:
        """
        Funding interval hours per symbol from /fapi/v1/fundingInfo.

        Aster intervals vary per symbol (8h, 4h, 1h); symbols missing from the
        response use 8h. Cached for 5 minutes.
        """
        if self._intervals and (time.time() - self._intervals_ts) < FUNDING_INFO_TTL_S:
            return self._intervals
        try:
            data = await self._public_get("/fapi/v1/fundingInfo", None, WEIGHTS["funding_info"])
        except GatewayError as e:
            log.warning(f"[Aster] fundingInfo error, keeping cached intervals: {e}")
            return self._intervals
        intervals: Dict[str, int] = {}
        for item in data if isinstance(data, list) else []:
            sym = str(item.get("symbol", "")).upper()
            if sym:
                intervals[sym] = int(item.get("fundingIntervalHours") or DEFAULT_FUNDING_INTERVAL_H)
        non_std = sum(1 for i in intervals.values() if i != DEFAULT_FUNDING_INTERVAL_H)
        log.info(f"[Aster] Loaded {len(intervals)} funding intervals ({non_std} non-8h)")
        self._intervals = intervals
        self._intervals_ts = time.time()
        return intervals

    def funding_interval(self, symbol: str) -> int:
        return self._intervals.get(symbol.upper(), DEFAULT_FUNDING_INTERVAL_H)

    async def fetch_funding(self) -> List[RawFunding]:
        await self.fetch_funding_intervals()
        data = await self._public_get("/fapi/v1/premiumIndex", None, WEIGHTS["premium_index"])
        out: List[RawFunding] = []
        for item in data if isinstance(data, list) else []:
            sym = str(item.get("symbol", "")).upper()
            rate = item.get("lastFundingRate")
            mark = _f(item.get("markPrice"))
            if not sym or rate in (None, "") or mark <= 0:
                continue
            next_ms = item.get("nextFundingTime")
            out.append(RawFunding(
                symbol=sym, mark_price=mark, raw_rate=_f(rate),
                interval_hours=self.funding_interval(sym),
                next_funding_ms=int(next_ms) if next_ms else None,
            ))
        return out

    def stream_url(self, symbols: List[str]) -> str:
        """Combined markPrice stream for the given symbols (all symbols when empty)."""
        if not symbols:
            return f"{self.ws_url}/ws/!markPrice@arr"
        streams = "/".join(f"{s.lower()}@markPrice" for s in symbols)
        return f"{self.ws_url}/stream?streams={streams}"

    def parse_stream_message(self, raw: Union[str, bytes]) -> List[RawFunding]:
        """
        markPriceUpdate events: `s` symbol, `p` mark price, `r` funding rate,
        `T` next funding time. Accepts both the wrapped `{"stream", "data"}` form
        and the bare event or array.
        """
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            msg = json.loads(raw)
        except ValueError as e:
            log.warning(f"[Aster] stream parse error: {e}")
            return []
        payload = msg.get("data", msg) if isinstance(msg, dict) else msg
        events = payload if isinstance(payload, list) else [payload]
        out: List[RawFunding] = []
        for ev in events:
            if not isinstance(ev, dict) or ev.get("e", "markPriceUpdate") != "markPriceUpdate":
                continue
            sym = str(ev.get("s", "")).upper()
            mark = _f(ev.get("p"))
            if not sym or mark <= 0 or ev.get("r") in (None, ""):
                continue
            out.append(RawFunding(
                symbol=sym, mark_price=mark, raw_rate=_f(ev.get("r")),
                interval_hours=self.funding_interval(sym),
                next_funding_ms=int(ev["T"]) if ev.get("T") else None,
            ))
        return out

    # ==================== Trading ====================

    async def place_order(self, symbol: str, side: OrderSide, qty: float, price: Optional[float] = None,
                          kind: OrderKind = OrderKind.LIMIT, reduce_only: bool = False) -> OrderResult:
        sym = symbol.upper()
        side = OrderSide(side)
        kind = OrderKind(kind)
        if qty <= 0:
            return self._failed_order(sym, side, kind, qty, "quantity must be positive")
        if kind is OrderKind.LIMIT and not price:
            return self._failed_order(sym, side, kind, qty, "limit order without price")

        params: Dict[str, Any] = {
            "symbol": sym,
            "side": side.value,
            "type": kind.value,
            "quantity": format_number(qty),
        }
        if kind is OrderKind.LIMIT:
            params["price"] = format_number(price)
            params["timeInForce"] = "GTC"
        if reduce_only:
            params["reduceOnly"] = "true"
        try:
            data = await self._private_post("/fapi/v1/order", params, WEIGHTS["order"])
        except GatewayError as e:
            return self._failed_order(sym, side, kind, qty, str(e))

        err = self._api_error(data)
        if err or not isinstance(data, dict) or not data.get("orderId"):
            return self._failed_order(sym, side, kind, qty, err or f"unexpected response: {data}", raw=data)

        status = _STATUS_MAP.get(str(data.get("status", "NEW")).upper(), OrderStatus.UNKNOWN)
        result = OrderResult(
            success=True, venue=self.venue, symbol=sym, side=side, kind=kind, requested_qty=qty,
            order_id=str(data["orderId"]), status=status,
            filled_qty=_f(data.get("executedQty", data.get("cumQty"))),
            avg_price=_f(data.get("avgPrice")), raw=data,
        )
        log.info(f"[Aster] {side.value} {params['quantity']} {sym} {kind.value} -> order {result.order_id} {status.value}")
        return result

    async def get_order_fill(self, order_id: str, symbol: str) -> OrderFill:
        data = await self._private_get("/fapi/v1/order", {"symbol": symbol.upper(), "orderId": str(order_id)},
                                       WEIGHTS["order_query"])
        if self._api_error(data) or not isinstance(data, dict):
            log.warning(f"[Aster] order query {order_id} failed: {self._api_error(data) or data}")
            return OrderFill(OrderStatus.UNKNOWN)
        status = _STATUS_MAP.get(str(data.get("status", "")).upper(), OrderStatus.UNKNOWN)
        return OrderFill(status, _f(data.get("executedQty")), _f(data.get("avgPrice")))

    async def cancel_order(self, order_id: str, symbol: str) -> bool:
        if not order_id:
            return False
        try:
            data = await self._private_delete("/fapi/v1/order", {"symbol": symbol.upper(), "orderId": str(order_id)},
                                              WEIGHTS["order"])
        except GatewayError as e:
            log.warning(f"[Aster] cancel {order_id} error: {e}")
            return False
        err = self._api_error(data)
        if err:
            log.warning(f"[Aster] cancel {order_id} rejected: {err}")
            return False
        return isinstance(data, dict) and bool(data.get("orderId"))

    async def get_balance(self) -> Balance:
        data = await self._private_get("/fapi/v2/balance", {}, WEIGHTS["balance"])
        err = self._api_error(data)
        if err or not isinstance(data, list):
            raise GatewayError(self.venue, f"balance query failed: {err or data}")
        available = total = 0.0
        for acc in data:
            if str(acc.get("asset", "")).upper() in QUOTE_ASSETS:
                available += _f(acc.get("availableBalance"))
                total += _f(acc.get("balance", acc.get("walletBalance")))
        return Balance(self.venue, available=available, total=total)
