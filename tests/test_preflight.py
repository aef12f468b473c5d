# -*- coding: utf-8 -*-
"""
Readiness checklist and paper gateway tests.
"""
import pytest
from unittest.mock import AsyncMock

from core.models import OrderKind, OrderSide, OrderStatus, Venue
from conftest import FakeGateway


class TestReadinessCheck:

    @pytest.mark.asyncio
    async def test_all_pass(self, gateways):
        from core.preflight import ReadinessCheck
        report = await ReadinessCheck(1000.0, gateways, paper_mode=False).run_all()
        assert report.ok
        assert report.issues == []
        assert [r[0] for r in report.results] == ["AS Credentials", "HL Credentials", "AS Balance", "HL Balance"]

    @pytest.mark.asyncio
    async def test_missing_credentials(self, gateways):
        from core.preflight import ReadinessCheck
        gateways[Venue.HYPERLIQUID].missing = ["HL_PRIVATE_KEY"]
        report = await ReadinessCheck(1000.0, gateways, paper_mode=False).run_all()
        assert not report.ok
        assert report.issues == ["HL Credentials: Missing: HL_PRIVATE_KEY"]

    @pytest.mark.asyncio
    async def test_paper_mode_skips_credentials(self, gateways):
        from core.preflight import ReadinessCheck
        gateways[Venue.HYPERLIQUID].missing = ["HL_PRIVATE_KEY"]
        report = await ReadinessCheck(1000.0, gateways, paper_mode=True).run_all()
        assert report.ok

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, gateways):
        from core.preflight import ReadinessCheck
        gateways[Venue.ASTER].balance = 500.0
        report = await ReadinessCheck(1000.0, gateways, paper_mode=False).run_all()
        assert not report.ok
        assert report.issues[0].startswith("AS Balance: available $500.00")

    @pytest.mark.asyncio
    async def test_tight_balance_warns(self, gateways):
        from core.preflight import ReadinessCheck
        gateways[Venue.ASTER].balance = 1050.0
        report = await ReadinessCheck(1000.0, gateways, paper_mode=False).run_all()
        assert report.ok
        assert len(report.warnings) == 1

    @pytest.mark.asyncio
    async def test_unreachable_venue(self, gateways):
        from core.preflight import ReadinessCheck
        from venues.base import GatewayError
        gateways[Venue.ASTER].get_balance = AsyncMock(side_effect=GatewayError(Venue.ASTER, "timeout"))
        report = await ReadinessCheck(1000.0, gateways, paper_mode=False).run_all()
        assert not report.ok
        assert "balance query failed" in report.issues[0]

    @pytest.mark.asyncio
    async def test_single_venue(self):
        from core.preflight import ReadinessCheck
        report = await ReadinessCheck(1000.0, {Venue.ASTER: FakeGateway(Venue.ASTER)}, paper_mode=True).run_all()
        assert not report.ok
        assert report.issues[0].startswith("Venues:")

    def test_print_report(self, capsys):
        from core.preflight import ReadinessReport, print_preflight_report
        print_preflight_report(ReadinessReport(False, ["x"], [], [("AS Balance", False, "low")]))
        out = capsys.readouterr().out
        assert "[FAIL] AS Balance: low" in out
        assert "SOME CHECKS FAILED" in out


class TestPaperGateway:

    @pytest.mark.asyncio
    async def test_fills_at_mark_price(self):
        from venues.paper import PaperGateway
        inner = FakeGateway(Venue.HYPERLIQUID)
        paper = PaperGateway(inner, 1000.0, price_source=lambda sym: 50000.0)

        res = await paper.place_order("BTC", OrderSide.BUY, 0.01, price=49000.0)

        assert res.simulated
        assert res.status is OrderStatus.FILLED
        assert res.avg_price == 50000.0
        assert inner.orders == []
        fill = await paper.get_order_fill(res.order_id, "BTC")
        assert fill.filled_qty == 0.01

    @pytest.mark.asyncio
    async def test_fill_reported_once(self):
        from venues.paper import PaperGateway
        paper = PaperGateway(FakeGateway(Venue.ASTER), 1000.0, price_source=lambda sym: 3000.0)
        ids = [(await paper.place_order("ETHUSDT", OrderSide.BUY, 0.1)).order_id for _ in range(3)]

        for order_id in ids:
            assert (await paper.get_order_fill(order_id, "ETHUSDT")).status is OrderStatus.FILLED

        assert paper._fills == {}
        assert (await paper.get_order_fill(ids[0], "ETHUSDT")).status is OrderStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_falls_back_to_order_price(self):
        from venues.paper import PaperGateway
        paper = PaperGateway(FakeGateway(Venue.ASTER), 1000.0, price_source=lambda sym: None)
        res = await paper.place_order("BTCUSDT", OrderSide.SELL, 0.01, price=49000.0, kind=OrderKind.MARKET)
        assert res.avg_price == 49000.0

    @pytest.mark.asyncio
    async def test_no_price_is_rejected(self):
        from venues.paper import PaperGateway
        paper = PaperGateway(FakeGateway(Venue.ASTER), 1000.0)
        res = await paper.place_order("BTCUSDT", OrderSide.SELL, 0.01)
        assert res.success is False

    @pytest.mark.asyncio
    async def test_balance_and_credentials(self):
        from venues.paper import PaperGateway
        inner = FakeGateway(Venue.ASTER)
        inner.missing = ["ASTER_API_KEY"]
        paper = PaperGateway(inner, 750.0)
        assert paper.missing_credentials() == []
        assert (await paper.get_balance()).available == 750.0
