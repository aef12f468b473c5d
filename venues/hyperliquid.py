# -*- coding: utf-8 -*-
"""Hyperliquid gateway: /info reads, EIP-712 signed /exchange actions, IOC market orders."""
from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, List, Optional, Tuple

from eth_account import Account
from hyperliquid.utils.signing import (
    order_request_to_order_wire, order_wires_to_order_action, sign_l1_action,
)

from core.models import (
    Balance, OrderFill, OrderKind, OrderResult, OrderSide, OrderStatus,
    PrecisionRule, RawFunding, Venue,
)
from core.precision import hyperliquid_price_tick
from core.rate_limit import SlidingWindowLimiter
from venues.base import GatewayBase, GatewayError

log = logging.getLogger(__name__)

DEFAULT_REST_URL = "https://api.hyperliquid.xyz"
DEFAULT_MIN_NOTIONAL = 10.0
DEFAULT_SLIPPAGE = 0.05
FUNDING_INTERVAL_H = 1.0  # metaAndAssetCtxs funding is hourly

_STATUS_MAP = {
    "filled": OrderStatus.FILLED,
    "open": OrderStatus.OPEN,
    "triggered": OrderStatus.OPEN,
    "canceled": OrderStatus.CANCELLED,
    "marginCanceled": OrderStatus.CANCELLED,
    "reduceOnlyCanceled": OrderStatus.CANCELLED,
    "selfTradeCanceled": OrderStatus.CANCELLED,
    "siblingFilledCanceled": OrderStatus.CANCELLED,
    "scheduledCancel": OrderStatus.CANCELLED,
    "liquidatedCanceled": OrderStatus.CANCELLED,
    "rejected": OrderStatus.REJECTED,
}


def round_hl_price(price: float, sz_decimals: int) -> float:
    """
    Hyperliquid perp price rules:
    - at most 5 significant figures
    - at most 6 - szDecimals decimals
    """
    if price <= 0:
        return price
    return round(float(f"{price:.5g}"), max(0, 6 - int(sz_decimals)))


def cancel_action(asset: int, oid: int) -> Dict[str, Any]:
    return {"type": "cancel", "cancels": [{"a": int(asset), "o": int(oid)}]}


def _f(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class HyperliquidGateway(GatewayBase):
    venue = Venue.HYPERLIQUID

    def __init__(self, cfg: Optional[Dict[str, Any]] = None,
                 budget: Optional[SlidingWindowLimiter] = None) -> None:
        cfg = dict(cfg or {})
        cfg.setdefault("rest_url", DEFAULT_REST_URL)
        super().__init__(cfg, budget or SlidingWindowLimiter(int(cfg.get("calls_per_second", 20)), 1.0, label="HL"))
        self.private_key_env = str(cfg.get("private_key_env", "HL_PRIVATE_KEY"))
        self.account_address_env = str(cfg.get("account_address_env", "HL_ACCOUNT_ADDRESS"))
        self.account_address: str = os.environ.get(self.account_address_env, "").strip()
        self.is_mainnet: bool = bool(cfg.get("mainnet", "testnet" not in self.rest_url))
        self.slippage = float(cfg.get("market_slippage", DEFAULT_SLIPPAGE))
        self.vault_address: Optional[str] = cfg.get("vault_address") or None

        self._wallet = None
        private_key = os.environ.get(self.private_key_env, "").strip()
        if private_key:
            try:
                self._wallet = Account.from_key(private_key)
            except ValueError as e:
                log.error(f"[HL] {self.private_key_env} is not a valid private key: {e}")

        # coin -> (asset index, szDecimals)
        self._meta: Dict[str, Tuple[int, int]] = {}
        self._mids: Dict[str, float] = {}

    def missing_credentials(self) -> List[str]:
        missing = []
        if self._wallet is None:
            missing.append(self.private_key_env)
        if not self.account_address:
            missing.append(self.account_address_env)
        return missing

    @property
    def signer_address(self) -> Optional[str]:
        return self._wallet.address if self._wallet is not None else None

    # ==================== Transport ====================

    async def _info(self, payload: Dict[str, Any]) -> Any:
        return await self._request("POST", f"{self.rest_url}/info", json=payload)

    async def _exchange(self, action: Dict[str, Any]) -> Any:
        """Sign and submit an action to /exchange. One attempt only."""
        if self._wallet is None:
            raise GatewayError(self.venue, f"{self.private_key_env} not set")
        nonce = int(time.time() * 1000)
        signature = sign_l1_action(self._wallet, action, self.vault_address, nonce,
                                   expires_after=None, is_mainnet=self.is_mainnet)
        payload = {
            "action": action,
            "nonce": nonce,
            "signature": signature,
            "vaultAddress": self.vault_address,
        }
        return await self._request("POST", f"{self.rest_url}/exchange", attempts=1, json=payload)

    # ==================== Metadata ====================

    def _store_universe(self, universe: List[Dict[str, Any]]) -> None:
        for idx, asset in enumerate(universe):
            name = str(asset.get("name", ""))
            if name:
                self._meta[name.upper()] = (idx, int(asset.get("szDecimals", 0)))

    async def _asset_info(self, coin: str) -> Tuple[int, int]:
        key = coin.upper()
        if key not in self._meta:
            data = await self._info({"type": "meta"})
            self._store_universe(data.get("universe", []) if isinstance(data, dict) else [])
        if key not in self._meta:
            raise GatewayError(self.venue, f"unknown coin {coin}")
        return self._meta[key]

    async def _meta_and_ctxs(self) -> List[Tuple[Dict[str, Any], Dict[str, Any]]]:
        data = await self._info({"type": "metaAndAssetCtxs"})
        # [meta, assetCtxs], aligned by index
        if not isinstance(data, list) or len(data) != 2:
            raise GatewayError(self.venue, f"unexpected metaAndAssetCtxs response: {str(data)[:200]}")
        universe = data[0].get("universe", [])
        self._store_universe(universe)
        return list(zip(universe, data[1]))

    # ==================== Market data ====================

    async def fetch_precision_rules(self) -> Dict[str, PrecisionRule]:
        rules: Dict[str, PrecisionRule] = {}
        for asset, ctx in await self._meta_and_ctxs():
            if asset.get("isDelisted"):
                continue
            name = str(asset.get("name", ""))
            sz_dec = int(asset.get("szDecimals", 0))
            tick, price_decimals = hyperliquid_price_tick(_f(ctx.get("markPx")), sz_dec)
            step = 10.0 ** -sz_dec
            rules[name.upper()] = PrecisionRule(
                venue=self.venue, symbol=name,
                price_tick=tick, price_decimals=price_decimals,
                qty_step=step, qty_decimals=sz_dec,
                qty_min=step, min_notional=DEFAULT_MIN_NOTIONAL,
            )
        log.info(f"[HL] Loaded rules for {len(rules)} assets")
        return rules

    async def fetch_funding(self) -> List[RawFunding]:
        out: List[RawFunding] = []
        for asset, ctx in await self._meta_and_ctxs():
            name = str(asset.get("name", ""))
            mark = _f(ctx.get("markPx"))
            funding = ctx.get("funding")
            if not name or funding is None or mark <= 0:
                continue
            self._mids[name.upper()] = _f(ctx.get("midPx")) or mark
            out.append(RawFunding(symbol=name, mark_price=mark, raw_rate=_f(funding),
                                  interval_hours=FUNDING_INTERVAL_H))
        return out

    async def _mid(self, coin: str) -> float:
        mid = self._mids.get(coin.upper(), 0.0)
        if mid > 0:
            return mid
        data = await self._info({"type": "allMids"})
        if isinstance(data, dict):
            for name, px in data.items():
                self._mids[str(name).upper()] = _f(px)
        return self._mids.get(coin.upper(), 0.0)

    # ==================== Trading ====================

    async def place_order(self, symbol: str, side: OrderSide, qty: float, price: Optional[float] = None,
                          kind: OrderKind = OrderKind.LIMIT, reduce_only: bool = False) -> OrderResult:
        side = OrderSide(side)
        kind = OrderKind(kind)
        is_buy = side is OrderSide.BUY
        if qty <= 0:
            return self._failed_order(symbol, side, kind, qty, "quantity must be positive")
        try:
            asset, sz_dec = await self._asset_info(symbol)
            if kind is OrderKind.MARKET:
                ref = await self._mid(symbol) or (price or 0.0)
                if ref <= 0:
                    return self._failed_order(symbol, side, kind, qty, f"no mid price for {symbol}")
                # IOC limit through the book
                limit_px = ref * (1 + self.slippage) if is_buy else ref * (1 - self.slippage)
                tif = "Ioc"
            else:
                if not price:
                    return self._failed_order(symbol, side, kind, qty, "limit order without price")
                limit_px = price
                tif = "Gtc"
            limit_px = round_hl_price(limit_px, sz_dec)
            request = {
                "coin": symbol,
                "is_buy": is_buy,
                "sz": round(qty, sz_dec),
                "limit_px": limit_px,
                "order_type": {"limit": {"tif": tif}},
                "reduce_only": reduce_only,
            }
            wire = order_request_to_order_wire(request, asset)
            data = await self._exchange(order_wires_to_order_action([wire]))
        except (GatewayError, ValueError) as e:
            return self._failed_order(symbol, side, kind, qty, str(e))
        return self._parse_order_response(symbol, side, kind, qty, data)

    def _parse_order_response(self, symbol: str, side: OrderSide, kind: OrderKind, qty: float,
                              data: Any) -> OrderResult:
        # {"status": "ok", "response": {"type": "order", "data": {"statuses": [...]}}}
        if not isinstance(data, dict) or data.get("status") != "ok":
            err = data.get("response") if isinstance(data, dict) else data
            return self._failed_order(symbol, side, kind, qty, str(err), raw=data)
        statuses = (((data.get("response") or {}).get("data") or {}).get("statuses")) or []
        first = statuses[0] if statuses else {}
        if not isinstance(first, dict) or "error" in first:
            err = first.get("error") if isinstance(first, dict) else first
            return self._failed_order(symbol, side, kind, qty, str(err or "empty status"), raw=data)

        if "filled" in first:
            fill = first["filled"]
            filled = _f(fill.get("totalSz"))
            status = OrderStatus.FILLED if filled >= qty - 1e-12 else OrderStatus.PARTIALLY_FILLED
            result = OrderResult(True, self.venue, symbol, side, kind, qty, order_id=str(fill.get("oid")),
                                 status=status, filled_qty=filled, avg_price=_f(fill.get("avgPx")), raw=data)
        elif "resting" in first:
            result = OrderResult(True, self.venue, symbol, side, kind, qty,
                                 order_id=str(first["resting"].get("oid")), status=OrderStatus.OPEN, raw=data)
        else:
            return self._failed_order(symbol, side, kind, qty, f"unexpected status: {first}", raw=data)
        log.info(f"[HL] {side.value} {qty} {symbol} {kind.value} -> oid {result.order_id} {result.status.value}")
        return result

    async def get_order_fill(self, order_id: str, symbol: str) -> OrderFill:
        if not self.account_address:
            raise GatewayError(self.venue, f"{self.account_address_env} not set")
        data = await self._info({"type": "orderStatus", "user": self.account_address, "oid": int(order_id)})
        # {"status": "order", "order": {"order": {...}, "status": "filled", ...}}
        if not isinstance(data, dict) or data.get("status") != "order":
            return OrderFill(OrderStatus.UNKNOWN)
        wrapper = data.get("order") or {}
        order = wrapper.get("order") or {}
        orig = _f(order.get("origSz"))
        remaining = _f(order.get("sz"))
        filled = max(0.0, orig - remaining)
        status = _STATUS_MAP.get(str(wrapper.get("status", "")), OrderStatus.UNKNOWN)
        if status is OrderStatus.OPEN and filled > 0:
            status = OrderStatus.PARTIALLY_FILLED
        if status is OrderStatus.FILLED:
            filled = orig
        return OrderFill(status, filled, _f(order.get("limitPx")))

    async def cancel_order(self, order_id: str, symbol: str) -> bool:
        if not order_id:
            return False
        try:
            asset, _ = await self._asset_info(symbol)
            data = await self._exchange(cancel_action(asset, int(order_id)))
        except (GatewayError, ValueError) as e:
            log.warning(f"[HL] cancel {order_id} error: {e}")
            return False
        if not isinstance(data, dict) or data.get("status") != "ok":
            log.warning(f"[HL] cancel {order_id} rejected: {data}")
            return False
        statuses = (((data.get("response") or {}).get("data") or {}).get("statuses")) or []
        return bool(statuses) and statuses[0] == "success"

    async def get_balance(self) -> Balance:
        if not self.account_address:
            raise GatewayError(self.venue, f"{self.account_address_env} not set")
        data = await self._info({"type": "clearinghouseState", "user": self.account_address})
        if not isinstance(data, dict) or "marginSummary" not in data:
            raise GatewayError(self.venue, f"clearinghouseState failed: {str(data)[:200]}")
        total = _f(data["marginSummary"].get("accountValue"))
        return Balance(self.venue, available=_f(data.get("withdrawable")), total=total)
