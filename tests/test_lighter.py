# -*- coding: utf-8 -*-
"""
Lighter gateway tests (SignerClient and REST mocked).
"""
import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from core.models import OrderKind, OrderSide, OrderStatus


def _account(position: float, sign: int = 1, symbol: str = "ETH"):
    return {"accounts": [{
        "collateral": "1500", "available_balance": "1200",
        "positions": [{"symbol": symbol, "position": str(position), "sign": sign}],
    }]}


def _signer():
    signer = MagicMock()
    signer.ORDER_TYPE_LIMIT = 0
    signer.ORDER_TYPE_MARKET = 1
    signer.ORDER_TIME_IN_FORCE_IMMEDIATE_OR_CANCEL = 0
    signer.ORDER_TIME_IN_FORCE_GOOD_TILL_TIME = 1
    signer.create_order = AsyncMock(return_value=(None, SimpleNamespace(code=200), None))
    signer.cancel_order = AsyncMock(return_value=(None, SimpleNamespace(code=200), None))
    return signer


@pytest.fixture
def lt(monkeypatch):
    from venues.lighter import LighterGateway, LighterMarket
    monkeypatch.setenv("LIGHTER_PRIVATE_KEY", "abcd")
    monkeypatch.setenv("LIGHTER_ACCOUNT_INDEX", "17")
    monkeypatch.delenv("LIGHTER_API_KEY_INDEX", raising=False)
    gw = LighterGateway()
    gw._markets = {"ETH": LighterMarket(market_id=0, symbol="ETH", price_decimals=2, size_decimals=4)}
    gw._marks["ETH"] = 3000.0
    gw._signer = _signer()
    return gw


class TestCredentials:

    def test_api_key_index_defaults_to_zero(self, lt):
        assert lt.api_key_index == 0
        assert lt.account_index == 17
        assert lt.missing_credentials() == []

    def test_missing_account_index(self, monkeypatch):
        from venues.lighter import LighterGateway
        monkeypatch.setenv("LIGHTER_PRIVATE_KEY", "abcd")
        monkeypatch.delenv("LIGHTER_ACCOUNT_INDEX", raising=False)
        assert LighterGateway().missing_credentials() == ["LIGHTER_ACCOUNT_INDEX"]


class TestMarketData:

    @pytest.mark.asyncio
    async def test_precision_rules(self, lt):
        lt._get = AsyncMock(return_value={"order_books": [
            {"symbol": "BTC", "market_id": 1, "supported_price_decimals": 1,
             "supported_size_decimals": 5, "min_base_amount": "0.0002", "min_quote_amount": "10"},
        ]})
        rules = await lt.fetch_precision_rules()
        r = rules["BTC"]
        assert r.price_tick == pytest.approx(0.1)
        assert r.qty_step == pytest.approx(0.00001)
        assert (r.qty_min, r.min_notional) == (0.0002, 10.0)

    @pytest.mark.asyncio
    async def test_funding_filters_other_exchanges(self, lt):
        lt._get = AsyncMock(side_effect=[
            {"order_book_stats": [{"symbol": "ETH", "last_trade_price": "3010.5"}]},
            {"funding_rates": [
                {"market_id": 0, "exchange": "lighter", "symbol": "ETH", "rate": "0.00003"},
                {"market_id": 0, "exchange": "binance", "symbol": "ETH", "rate": "0.0001"},
            ]},
        ])
        funding = await lt.fetch_funding()
        assert len(funding) == 1
        assert funding[0].mark_price == 3010.5
        assert funding[0].raw_rate == 0.00003
        assert funding[0].interval_hours == 1.0


class TestTrading:

    @pytest.mark.asyncio
    async def test_limit_order_scaled_to_integers(self, lt):
        lt._get = AsyncMock(return_value=_account(0.0))

        res = await lt.place_order("eth", OrderSide.SELL, 0.25, price=3000.5)

        kwargs = lt._signer.create_order.call_args.kwargs
        assert kwargs["base_amount"] == 2500
        assert kwargs["price"] == 300050
        assert kwargs["is_ask"] is True
        assert kwargs["order_type"] == lt._signer.ORDER_TYPE_LIMIT
        assert res.success is True
        assert res.status is OrderStatus.OPEN

    @pytest.mark.asyncio
    async def test_market_order_uses_worst_price(self, lt):
        lt._get = AsyncMock(return_value=_account(0.0))

        await lt.place_order("ETH", OrderSide.BUY, 0.1, kind=OrderKind.MARKET)

        kwargs = lt._signer.create_order.call_args.kwargs
        assert kwargs["price"] == 306000
        assert kwargs["order_type"] == lt._signer.ORDER_TYPE_MARKET

    @pytest.mark.asyncio
    async def test_fill_from_position_delta(self, lt):
        lt._get = AsyncMock(return_value=_account(0.0))
        res = await lt.place_order("ETH", OrderSide.SELL, 0.2, price=3000.0)

        lt._get = AsyncMock(return_value=_account(0.1, sign=-1))
        fill = await lt.get_order_fill(res.order_id, "ETH")
        assert fill.status is OrderStatus.PARTIALLY_FILLED
        assert fill.filled_qty == pytest.approx(0.1)

        lt._get = AsyncMock(return_value=_account(0.2, sign=-1))
        fill = await lt.get_order_fill(res.order_id, "ETH")
        assert fill.status is OrderStatus.FILLED
        assert res.order_id not in lt._pending
        assert (await lt.get_order_fill(res.order_id, "ETH")).status is OrderStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_sdk_error_is_failed_order(self, lt):
        lt._get = AsyncMock(return_value=_account(0.0))
        lt._signer.create_order = AsyncMock(return_value=(None, None, "nonce too low"))

        res = await lt.place_order("ETH", OrderSide.BUY, 0.1, price=3000.0)

        assert res.success is False
        assert "nonce too low" in res.error

    @pytest.mark.asyncio
    async def test_no_signer(self, lt):
        lt._signer = None
        res = await lt.place_order("ETH", OrderSide.BUY, 0.1, price=3000.0)
        assert res.success is False

    @pytest.mark.asyncio
    async def test_unknown_order_fill(self, lt):
        fill = await lt.get_order_fill("999", "ETH")
        assert fill.status is OrderStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_balance(self, lt):
        lt._get = AsyncMock(return_value=_account(0.0))
        bal = await lt.get_balance()
        assert (bal.available, bal.total) == (1200.0, 1500.0)
