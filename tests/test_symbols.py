# -*- coding: utf-8 -*-
"""
Symbol resolution tests.
"""
import pytest

from core.models import Venue


@pytest.fixture
def resolver():
    from core.symbols import SymbolResolver
    return SymbolResolver()


class TestResolutionOrder:

    def test_exact_registry_symbols(self, resolver):
        for venue, native in ((Venue.ASTER, "BTCUSDT"), (Venue.HYPERLIQUID, "BTC"), (Venue.LIGHTER, "BTC")):
            res = resolver.resolve(native, venue)
            assert res.asset.id == "BTC"
            assert res.method == "exact"
            assert res.multiplier == 1.0

    def test_registered_scaled_contracts(self, resolver):
        aster = resolver.resolve("1000PEPEUSDT", Venue.ASTER)
        hl = resolver.resolve("kPEPE", Venue.HYPERLIQUID)
        assert aster.asset.id == hl.asset.id == "PEPE"
        assert aster.multiplier == hl.multiplier == 1000.0

    def test_stripped_quote_suffix(self, resolver):
        res = resolver.resolve("ETH-USDC", Venue.LIGHTER)
        assert res.asset.id == "ETH"
        assert resolver.to_venue_symbol("ETH", Venue.LIGHTER) == "ETH-USDC"

    def test_alias(self, resolver):
        res = resolver.resolve("MATICUSDT", Venue.ASTER)
        assert res.asset.id == "POL"
        assert res.method == "alias"

    def test_multiplier_prefix(self, resolver):
        res = resolver.resolve("1000SHIBUSDC", Venue.LIGHTER)
        assert res.asset.id == "SHIB"
        assert res.method == "multiplier"
        assert res.multiplier == 1000.0

        res = resolver.resolve("kPEPE", Venue.LIGHTER)
        assert (res.asset.id, res.multiplier) == ("PEPE", 1000.0)

    def test_uppercase_k_is_not_a_multiplier(self, resolver):
        assert resolver.resolve("KAVA", Venue.HYPERLIQUID) is None
        assert resolver.stats["miss"] == 1

    def test_fuzzy_last_resort(self, resolver, caplog):
        res = resolver.resolve("RENDERR", Venue.HYPERLIQUID)
        assert res.asset.id == "RENDER"
        assert res.method == "fuzzy"
        assert "FUZZY" in caplog.text

    def test_fuzzy_threshold(self):
        from core.symbols import SymbolResolver
        strict = SymbolResolver(fuzzy_threshold=0.95)
        assert strict.resolve("RENDERR", Venue.HYPERLIQUID) is None

    def test_override_wins(self):
        from core.symbols import SymbolResolver
        resolver = SymbolResolver(overrides={"lighter": {"XBTC": "btc"}})
        res = resolver.resolve("XBTC", Venue.LIGHTER)
        assert res.asset.id == "BTC"
        assert res.method == "override"

    def test_override_to_unknown_asset_falls_through(self):
        from core.symbols import SymbolResolver
        resolver = SymbolResolver(overrides={Venue.HYPERLIQUID: {"ETH": "NOPE"}})
        assert resolver.resolve("ETH", Venue.HYPERLIQUID).method == "exact"

    def test_empty_symbol(self, resolver):
        assert resolver.resolve("", Venue.ASTER) is None


class TestCache:

    def test_cached_until_invalidated(self, resolver):
        resolver.resolve("ETHUSDT", Venue.ASTER)
        resolver.resolve("ETHUSDT", Venue.ASTER)
        assert resolver.stats["exact"] == 1

        resolver.invalidate()
        resolver.resolve("ETHUSDT", Venue.ASTER)
        assert resolver.stats["exact"] == 2

    def test_to_venue_symbol_defaults(self, resolver):
        assert resolver.to_venue_symbol("SOL", Venue.ASTER) == "SOLUSDT"
        assert resolver.to_venue_symbol("bonk", Venue.HYPERLIQUID) == "kBONK"
        assert resolver.to_venue_symbol("UNKNOWN", Venue.ASTER) is None


class TestHelpers:

    def test_strip_quote(self):
        from core.symbols import strip_quote
        assert strip_quote("btcusdt") == "BTC"
        assert strip_quote("SOL-PERP") == "SOL"
        assert strip_quote("USDT") == "USDT"

    def test_similarity(self):
        from core.symbols import levenshtein, similarity
        assert levenshtein("kitten", "sitting") == 3
        assert similarity("ABC", "ABC") == 1.0
        assert similarity("", "") == 1.0
