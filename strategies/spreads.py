# -*- coding: utf-8 -*-
"""
Funding spread computation and ranking.

Convention (shared by ranking and position assignment):
- short the venue whose hourly rate has the larger absolute value
- long the other venue
- hourly_spread = |short rate| - |long rate|, never negative
- annualized_spread_pct = hourly_spread * 24 * 365 * 100
"""
from __future__ import annotations

import itertools
from typing import Dict, Iterable, List, Mapping, Optional

from core.funding_feed import annualize_pct
from core.models import FundingQuote, Spread, Venue


def pair_spread(asset: str, a: FundingQuote, b: FundingQuote) -> Spread:
    """Spread between two venue quotes of the same asset."""
    if abs(a.normalized_hourly_rate) >= abs(b.normalized_hourly_rate):
        short, long_ = a, b
    else:
        short, long_ = b, a
    hourly = abs(short.normalized_hourly_rate) - abs(long_.normalized_hourly_rate)
    return Spread(
        asset=asset,
        long_venue=long_.venue,
        short_venue=short.venue,
        long_rate=long_.normalized_hourly_rate,
        short_rate=short.normalized_hourly_rate,
        hourly_spread=hourly,
        annualized_spread_pct=annualize_pct(hourly),
        long_symbol=long_.symbol,
        short_symbol=short.symbol,
        long_mark_price=long_.mark_price,
        short_mark_price=short.mark_price,
        long_unit_price=long_.unit_price,
        short_unit_price=short.unit_price,
    )


def compute_spread(asset: str, quotes: Mapping[Venue, FundingQuote]) -> Optional[Spread]:
    """
    Best spread for an asset across every venue pair.
    None when fewer than two venues quote it.
    """
    venues = sorted(quotes, key=lambda v: v.value)
    best: Optional[Spread] = None
    for va, vb in itertools.combinations(venues, 2):
        spread = pair_spread(asset, quotes[va], quotes[vb])
        if best is None or spread.hourly_spread > best.hourly_spread:
            best = spread
    return best


def current_spread_for(long_quote: FundingQuote, short_quote: FundingQuote) -> float:
    """
    Annualized spread (%) of an existing position with fixed legs, same sign
    convention. Negative once the long leg's |rate| exceeds the short leg's.
    """
    hourly = abs(short_quote.normalized_hourly_rate) - abs(long_quote.normalized_hourly_rate)
    return annualize_pct(hourly)


def rank_spreads(
    quotes_by_asset: Mapping[str, Mapping[Venue, FundingQuote]],
    excluded: Iterable[str] = (),
) -> List[Spread]:
    """Spreads for every multi-venue asset, best annualized spread first."""
    skip = {a.upper() for a in excluded}
    spreads: List[Spread] = []
    for asset, quotes in quotes_by_asset.items():
        if asset.upper() in skip or len(quotes) < 2:
            continue
        spread = compute_spread(asset, quotes)
        if spread is not None:
            spreads.append(spread)
    spreads.sort(key=lambda s: (-s.annualized_spread_pct, s.asset))
    return spreads


def spreads_by_asset(spreads: Iterable[Spread]) -> Dict[str, Spread]:
    return {s.asset: s for s in spreads}
