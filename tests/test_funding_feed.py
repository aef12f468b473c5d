# -*- coding: utf-8 -*-
"""
Funding feed tests: normalization, symbol resolution, subscribers and streaming.
"""
import asyncio
import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from core.models import RawFunding, Venue

from conftest import LimitedSleeper, StopLoop


class FakeSocket:
    """Replays `messages`, then drops the connection (or hangs when `silent`)."""

    def __init__(self, messages, silent=False):
        self.messages = list(messages)
        self.silent = silent

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def recv(self):
        if not self.messages:
            if self.silent:
                await asyncio.Event().wait()
            raise OSError("connection reset")
        return self.messages.pop(0)


class TestNormalization:

    def test_hourly_and_annualized(self):
        from core.funding_feed import annualize_pct, normalize_hourly
        assert normalize_hourly(0.0008, 8) == pytest.approx(0.0001)
        assert annualize_pct(0.0001) == pytest.approx(87.6)

    def test_interval_must_be_positive(self):
        from core.funding_feed import normalize_hourly
        with pytest.raises(ValueError):
            normalize_hourly(0.0001, 0)

    @pytest.mark.asyncio
    async def test_same_asset_across_venues(self, feed):
        await feed.ingest(Venue.ASTER, [RawFunding("BTCUSDT", 50000.0, 0.0008, 8)])
        await feed.ingest(Venue.HYPERLIQUID, [RawFunding("BTC", 50010.0, 0.00005, 1)])

        quotes = feed.quotes_for("btc")
        assert set(quotes) == {Venue.ASTER, Venue.HYPERLIQUID}
        assert quotes[Venue.ASTER].normalized_hourly_rate == pytest.approx(0.0001)
        assert quotes[Venue.ASTER].payment_frequency_hours == 8
        assert quotes[Venue.HYPERLIQUID].annualized_rate_pct == pytest.approx(43.8)
        assert feed.assets_on_multiple_venues() == ["BTC"]

    @pytest.mark.asyncio
    async def test_latest_observation_wins(self, feed, clock):
        await feed.ingest(Venue.HYPERLIQUID, [RawFunding("ETH", 3000.0, 0.00001, 1)])
        clock.advance(30)
        await feed.ingest(Venue.HYPERLIQUID, [RawFunding("ETH", 3010.0, 0.00002, 1)])

        quote = feed.get_quote(Venue.HYPERLIQUID, "ETH")
        assert quote.mark_price == 3010.0
        assert quote.observed_at == clock()
        assert feed.last_update[Venue.HYPERLIQUID] == clock()

    @pytest.mark.asyncio
    async def test_scaled_contract_unit_price(self, feed):
        await feed.ingest(Venue.ASTER, [RawFunding("1000PEPEUSDT", 0.012, 0.0001, 8)])
        quote = feed.get_quote(Venue.ASTER, "PEPE")
        assert quote.multiplier == 1000.0
        assert quote.unit_price == pytest.approx(0.000012)

    @pytest.mark.asyncio
    async def test_next_payment_in_seconds(self, feed):
        await feed.ingest(Venue.ASTER, [RawFunding("BTCUSDT", 50000.0, 0.0001, 8, next_funding_ms=1700000000000)])
        assert feed.get_quote(Venue.ASTER, "BTC").next_payment_at == 1700000000.0


class TestUnresolved:

    @pytest.mark.asyncio
    async def test_unresolved_symbols_are_counted_and_dropped(self, feed, caplog):
        accepted = await feed.ingest(Venue.HYPERLIQUID, [
            RawFunding("QQQZZZ", 1.0, 0.0001, 1),
            RawFunding("QQQZZZ", 1.0, 0.0001, 1),
            RawFunding("SOL", 150.0, 0.0001, 1),
        ])
        assert [q.asset for q in accepted] == ["SOL"]
        assert feed.unresolved[Venue.HYPERLIQUID] == 2
        # warned once per symbol
        assert caplog.text.count("unresolved symbol QQQZZZ") == 1

    @pytest.mark.asyncio
    async def test_bad_interval_is_skipped(self, feed):
        accepted = await feed.ingest(Venue.HYPERLIQUID, [RawFunding("SOL", 150.0, 0.0001, 0)])
        assert accepted == []
        assert feed.get_quote(Venue.HYPERLIQUID, "SOL") is None


class TestSubscribers:

    @pytest.mark.asyncio
    async def test_sync_and_async_subscribers(self, feed):
        seen = []
        async_cb = AsyncMock()
        feed.subscribe(lambda q: seen.append(q.asset))
        feed.subscribe(async_cb)

        await feed.ingest(Venue.HYPERLIQUID, [RawFunding("ETH", 3000.0, 0.00001, 1)])

        assert seen == ["ETH"]
        async_cb.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_stop_ingestion(self, feed):
        good = MagicMock()
        feed.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        feed.subscribe(good)

        accepted = await feed.ingest(Venue.HYPERLIQUID, [RawFunding("ETH", 3000.0, 0.00001, 1)])

        assert len(accepted) == 1
        good.assert_called_once()


class TestPollingAndStreaming:

    @pytest.mark.asyncio
    async def test_poll_once(self, feed, gateways):
        gateways[Venue.ASTER].funding = [RawFunding("ETHUSDT", 3000.0, 0.0001, 8),
                                         RawFunding("NOTAREALCOINUSDT", 1.0, 0.1, 8)]
        assert await feed.poll_once(Venue.ASTER) == 1

    @pytest.mark.asyncio
    async def test_stream_messages_are_ingested(self, clock):
        from core.funding_feed import FundingFeed
        from core.symbols import SymbolResolver
        from venues.aster import AsterGateway

        msg = json.dumps({"stream": "btcusdt@markPrice", "data": {
            "e": "markPriceUpdate", "s": "BTCUSDT", "p": "50100.5", "r": "0.00012", "T": 1700000000000}})
        urls = []

        def connect(url, **kwargs):
            urls.append(url)
            return FakeSocket([msg])

        feed = FundingFeed({Venue.ASTER: AsterGateway()}, SymbolResolver(),
                           stream_symbols={Venue.ASTER: ["BTCUSDT"]}, clock=clock, ws_connect=connect,
                           sleep=LimitedSleeper(limit=1))

        with pytest.raises(StopLoop):
            await feed._stream_loop(Venue.ASTER)

        assert urls == ["wss://fstream.asterdex.com/stream?streams=btcusdt@markPrice"]
        quote = feed.get_quote(Venue.ASTER, "BTC")
        assert quote.mark_price == 50100.5
        assert quote.normalized_hourly_rate == pytest.approx(0.000015)

    def test_snapshot_rows(self, feed):
        assert feed.snapshot() == []

    @pytest.mark.asyncio
    async def test_snapshot_after_ingest(self, feed):
        from strategies.storage import FUNDING_LOG_FIELDS
        await feed.ingest(Venue.HYPERLIQUID, [RawFunding("ETH", 3000.0, 0.00001, 1)])
        rows = feed.snapshot()
        assert len(rows) == 1
        assert set(rows[0]) == set(FUNDING_LOG_FIELDS)
        assert feed.mark_price(Venue.HYPERLIQUID, "eth") == 3000.0


class TestFeedRecovery:

    @pytest.mark.asyncio
    async def test_poll_loop_survives_unexpected_error(self, feed, gateways):
        gateways[Venue.HYPERLIQUID].fetch_funding = AsyncMock(side_effect=[
            AttributeError("'list' object has no attribute 'get'"),
            [RawFunding("ETH", 3000.0, 0.00001, 1)],
        ])
        feed._sleep = LimitedSleeper(limit=2)

        with pytest.raises(StopLoop):
            await feed._poll_loop(Venue.HYPERLIQUID)

        assert feed._sleep.calls == [feed.poll_interval_s] * 2
        assert feed.get_quote(Venue.HYPERLIQUID, "ETH").mark_price == 3000.0

    @pytest.mark.asyncio
    async def test_silent_stream_reconnects(self, clock):
        from core.funding_feed import FundingFeed
        from core.symbols import SymbolResolver
        from venues.aster import AsterGateway
        msg = json.dumps({"stream": "ethusdt@markPrice", "data": {
            "e": "markPriceUpdate", "s": "ETHUSDT", "p": "3000", "r": "0.0001", "T": 1700000000000}})
        sockets = []

        def connect(url, **kwargs):
            sockets.append(FakeSocket([msg], silent=True))
            return sockets[-1]

        feed = FundingFeed({Venue.ASTER: AsterGateway()}, SymbolResolver(), stale_timeout_s=0.01,
                           clock=clock, ws_connect=connect, sleep=LimitedSleeper(limit=3))

        with pytest.raises(StopLoop):
            await feed._stream_loop(Venue.ASTER)

        assert len(sockets) == 3
        assert feed.reconnects[Venue.ASTER] == 3
        # each connection succeeded, so backoff restarts every time
        assert feed._sleep.calls == [1.0, 1.0, 1.0]
        assert feed.get_quote(Venue.ASTER, "ETH").mark_price == 3000.0

    @pytest.mark.asyncio
    async def test_failed_connects_back_off_exponentially(self, clock):
        from websockets.exceptions import WebSocketException
        from core.funding_feed import RECONNECT_BACKOFF_MAX_S, FundingFeed
        from core.symbols import SymbolResolver
        from venues.aster import AsterGateway
        attempts = []

        def connect(url, **kwargs):
            attempts.append(url)
            if len(attempts) % 2:
                raise OSError("connection refused")
            raise WebSocketException("handshake rejected")

        feed = FundingFeed({Venue.ASTER: AsterGateway()}, SymbolResolver(),
                           clock=clock, ws_connect=connect, sleep=LimitedSleeper(limit=12))

        with pytest.raises(StopLoop):
            await feed._stream_loop(Venue.ASTER)

        calls = feed._sleep.calls
        assert calls[:3] == pytest.approx([1.0, 1.5, 2.25])
        assert all(b > a for a, b in zip(calls[:9], calls[1:9]))
        assert calls[-3:] == [RECONNECT_BACKOFF_MAX_S] * 3
        assert feed.reconnects[Venue.ASTER] == 12

    @pytest.mark.asyncio
    async def test_stream_survives_unexpected_error(self, clock):
        from core.funding_feed import FundingFeed
        from core.symbols import SymbolResolver
        from venues.aster import AsterGateway

        feed = FundingFeed({Venue.ASTER: AsterGateway()}, SymbolResolver(), clock=clock,
                           ws_connect=lambda url, **kw: FakeSocket(['{"stream": "x", "data": {}}']),
                           sleep=LimitedSleeper(limit=1))
        feed.ingest = AsyncMock(side_effect=KeyError("r"))
        feed.gateways[Venue.ASTER].parse_stream_message = MagicMock(return_value=[RawFunding("BTCUSDT", 1.0, 0.0, 8)])

        with pytest.raises(StopLoop):
            await feed._stream_loop(Venue.ASTER)

        assert feed.reconnects[Venue.ASTER] == 1
        feed.ingest.assert_awaited_once()
