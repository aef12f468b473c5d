# risk/allocator.py - Rank-based capital allocation for hedged positions
from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence


@dataclass
class AllocPlan:
    notional_usd: float
    reason: str


def leg_notional(capital_per_venue: float, allocation_pct: float) -> float:
    """Notional of ONE leg: each venue funds its own leg from its own capital."""
    return float(capital_per_venue) * float(allocation_pct) / 100.0


def compute_leg_plan(capital_per_venue: float,
                     allocation_pct: float,
                     min_notional: float,
                     unit_price: float = 0.0,
                     min_qty: float = 0.0) -> AllocPlan:
    """
    Leg notional for a rank allocation with venue guardrails.
    Returns 0 when the leg cannot meet the venue minimum notional or the
    minimum quantity at the current unit price.
    """
    if capital_per_venue <= 0 or allocation_pct <= 0:
        return AllocPlan(0.0, "no_capital")

    notional = leg_notional(capital_per_venue, allocation_pct)

    if notional < min_notional:
        return AllocPlan(0.0, "below_min_notional")
    if min_qty > 0 and unit_price > 0 and min_qty * unit_price > notional:
        return AllocPlan(0.0, "below_min_qty")
    return AllocPlan(notional, "ok")


def free_slots(allocations: Sequence[float], kept_ranks: Iterable[int]) -> List[int]:
    """Ranks (1-based) not held by kept positions, in order."""
    taken = set(kept_ranks)
    return [r for r in range(1, len(allocations) + 1) if r not in taken]


def allocation_for_rank(allocations: Sequence[float], rank: int) -> Optional[float]:
    if 1 <= rank <= len(allocations):
        return float(allocations[rank - 1])
    return None
