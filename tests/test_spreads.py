# -*- coding: utf-8 -*-
"""
Spread convention, ranking and allocation tests.
"""
import pytest

from core.models import FundingQuote, Venue


def quote(venue, hourly, asset="BTC", price=50000.0, multiplier=1.0):
    from core.funding_feed import annualize_pct
    return FundingQuote(asset=asset, venue=venue, symbol=asset, mark_price=price, raw_rate=hourly,
                        normalized_hourly_rate=hourly, annualized_rate_pct=annualize_pct(hourly),
                        payment_frequency_hours=1.0, multiplier=multiplier)


class TestPairSpread:

    @pytest.mark.parametrize("a_rate,b_rate,short,hourly", [
        (0.02, -0.01, Venue.ASTER, 0.01),
        (-0.02, -0.01, Venue.ASTER, 0.01),
        (0.02, 0.01, Venue.ASTER, 0.01),
        (-0.01, 0.02, Venue.HYPERLIQUID, 0.01),
    ])
    def test_short_the_larger_absolute_rate(self, a_rate, b_rate, short, hourly):
        from strategies.spreads import pair_spread
        s = pair_spread("BTC", quote(Venue.ASTER, a_rate), quote(Venue.HYPERLIQUID, b_rate))
        assert s.short_venue is short
        assert s.long_venue is not short
        assert s.hourly_spread == pytest.approx(hourly)
        assert s.hourly_spread >= 0

    def test_annualized(self):
        from strategies.spreads import pair_spread
        s = pair_spread("BTC", quote(Venue.ASTER, 0.000125), quote(Venue.HYPERLIQUID, 0.0))
        assert s.annualized_spread_pct == pytest.approx(109.5)

    def test_unit_prices_carried(self):
        from strategies.spreads import pair_spread
        s = pair_spread("PEPE", quote(Venue.ASTER, 0.0001, "PEPE", 0.012, 1000.0),
                        quote(Venue.HYPERLIQUID, 0.0, "PEPE", 0.0121, 1000.0))
        assert s.short_unit_price == pytest.approx(0.000012)
        assert s.average_unit_price == pytest.approx(0.00001205)


class TestComputeAndRank:

    def test_best_pair_across_three_venues(self):
        from strategies.spreads import compute_spread
        s = compute_spread("BTC", {
            Venue.ASTER: quote(Venue.ASTER, 0.0001),
            Venue.HYPERLIQUID: quote(Venue.HYPERLIQUID, 0.00009),
            Venue.LIGHTER: quote(Venue.LIGHTER, 0.0),
        })
        assert (s.short_venue, s.long_venue) == (Venue.ASTER, Venue.LIGHTER)

    def test_single_venue_has_no_spread(self):
        from strategies.spreads import compute_spread
        assert compute_spread("BTC", {Venue.ASTER: quote(Venue.ASTER, 0.0001)}) is None

    def test_rank_sorted_and_excluded(self):
        from strategies.spreads import rank_spreads
        ranked = rank_spreads({
            "BTC": {Venue.ASTER: quote(Venue.ASTER, 0.0001), Venue.HYPERLIQUID: quote(Venue.HYPERLIQUID, 0.0)},
            "ETH": {Venue.ASTER: quote(Venue.ASTER, 0.0003, "ETH"),
                    Venue.HYPERLIQUID: quote(Venue.HYPERLIQUID, 0.0, "ETH")},
            "SOL": {Venue.ASTER: quote(Venue.ASTER, 0.0005, "SOL"),
                    Venue.HYPERLIQUID: quote(Venue.HYPERLIQUID, 0.0, "SOL")},
            "XRP": {Venue.ASTER: quote(Venue.ASTER, 0.0009, "XRP")},
        }, excluded=["sol"])
        assert [s.asset for s in ranked] == ["ETH", "BTC"]

    def test_current_spread_turns_negative(self):
        from strategies.spreads import current_spread_for
        long_q = quote(Venue.HYPERLIQUID, 0.0002)
        short_q = quote(Venue.ASTER, 0.0001)
        assert current_spread_for(long_q, short_q) == pytest.approx(-87.6)


class TestAllocator:

    def test_leg_notional(self):
        from risk.allocator import leg_notional
        assert leg_notional(1000.0, 60.0) == 600.0

    def test_leg_plan_guardrails(self):
        from risk.allocator import compute_leg_plan
        assert compute_leg_plan(1000.0, 30.0, 10.0).notional_usd == 300.0
        assert compute_leg_plan(10.0, 30.0, 5.0).reason == "below_min_notional"
        assert compute_leg_plan(1000.0, 1.0, 5.0, unit_price=50000.0, min_qty=0.001).reason == "below_min_qty"
        assert compute_leg_plan(0.0, 30.0, 5.0).reason == "no_capital"

    def test_free_slots_and_rank_allocation(self):
        from risk.allocator import allocation_for_rank, free_slots
        allocations = [30.0, 25.0, 20.0, 15.0, 10.0]
        assert free_slots(allocations, [1, 3]) == [2, 4, 5]
        assert allocation_for_rank(allocations, 2) == 25.0
        assert allocation_for_rank(allocations, 6) is None
