# -*- coding: utf-8 -*-
"""
Symbol Resolver: maps each venue's native instrument name to one canonical asset.

Venues name the same perpetual differently (BTCUSDT on Aster, BTC on Hyperliquid,
BTC-USDC style on Lighter) and some quote a contract scaled by 1000
(1000PEPEUSDT on Aster, kPEPE on Hyperliquid). Resolution order:

    1. configured overrides
    2. exact match (registered venue symbol, or stripped base == canonical id)
    3. known alias list (MATIC -> POL, ...)
    4. multiplier prefix (1000X / kX -> X with multiplier 1000)
    5. fuzzy edit-distance match above a similarity threshold

Fuzzy matches are a last resort and are logged with a distinct FUZZY tag.
Resolutions are cached per (venue, native symbol) until invalidate() is called.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from core.models import Venue

log = logging.getLogger(__name__)

# Longest first so "-USDC" wins over "USD"
QUOTE_SUFFIXES = ("-PERP", "-USDC", "-USDT", "-USD", "USDT", "USDC", "PERP", "USD")

ALIASES: Dict[str, str] = {
    "MATIC": "POL",
    "XBT": "BTC",
    "RNDR": "RENDER",
    "FTM": "S",
    "LUNA2": "LUNA",
}

_PREFIX_MULTIPLIERS: Tuple[Tuple[re.Pattern, float], ...] = (
    (re.compile(r"^1000000(?P<base>[A-Z0-9]+)$"), 1_000_000.0),
    (re.compile(r"^1M(?P<base>[A-Z][A-Z0-9]*)$"), 1_000_000.0),
    (re.compile(r"^1000(?P<base>[A-Z][A-Z0-9]*)$"), 1000.0),
    # Hyperliquid style: lowercase k followed by the uppercase ticker
    (re.compile(r"^k(?P<base>[A-Z][A-Z0-9]*)$"), 1000.0),
)


@dataclass(frozen=True)
class CanonicalAsset:
    """Venue-independent asset identity. Immutable at runtime."""
    id: str
    display_name: str
    venue_symbols: Mapping[Venue, str] = field(default_factory=dict)
    venue_multipliers: Mapping[Venue, float] = field(default_factory=dict)

    def symbol_for(self, venue: Venue) -> Optional[str]:
        return self.venue_symbols.get(venue)

    def multiplier(self, venue: Venue) -> float:
        return float(self.venue_multipliers.get(venue, 1.0))


@dataclass(frozen=True)
class Resolution:
    asset: CanonicalAsset
    multiplier: float
    method: str  # override | exact | alias | multiplier | fuzzy


def _asset(asset_id: str, name: str, *, aster: Optional[str] = None, hyperliquid: Optional[str] = None,
           lighter: Optional[str] = None, multipliers: Optional[Dict[Venue, float]] = None) -> CanonicalAsset:
    return CanonicalAsset(
        id=asset_id,
        display_name=name,
        venue_symbols={
            Venue.ASTER: aster or f"{asset_id}USDT",
            Venue.HYPERLIQUID: hyperliquid or asset_id,
            Venue.LIGHTER: lighter or asset_id,
        },
        venue_multipliers=dict(multipliers or {}),
    )


_K = {Venue.ASTER: 1000.0, Venue.HYPERLIQUID: 1000.0}

DEFAULT_REGISTRY: Tuple[CanonicalAsset, ...] = (
    _asset("BTC", "Bitcoin"),
    _asset("ETH", "Ethereum"),
    _asset("BNB", "BNB"),
    _asset("SOL", "Solana"),
    _asset("XRP", "XRP"),
    _asset("ADA", "Cardano"),
    _asset("DOGE", "Dogecoin"),
    _asset("AVAX", "Avalanche"),
    _asset("DOT", "Polkadot"),
    _asset("LINK", "Chainlink"),
    _asset("POL", "Polygon", aster="POLUSDT", hyperliquid="POL", lighter="POL"),
    _asset("UNI", "Uniswap"),
    _asset("ATOM", "Cosmos"),
    _asset("LTC", "Litecoin"),
    _asset("BCH", "Bitcoin Cash"),
    _asset("NEAR", "NEAR Protocol"),
    _asset("TRX", "TRON"),
    _asset("ARB", "Arbitrum"),
    _asset("OP", "Optimism"),
    _asset("SEI", "Sei"),
    _asset("TIA", "Celestia"),
    _asset("AAVE", "Aave"),
    _asset("CRV", "Curve"),
    _asset("LDO", "Lido"),
    _asset("RENDER", "Render"),
    _asset("WIF", "dogwifhat"),
    _asset("APT", "Aptos"),
    _asset("SUI", "Sui"),
    _asset("INJ", "Injective"),
    _asset("JUP", "Jupiter"),
    _asset("PYTH", "Pyth Network"),
    _asset("FIL", "Filecoin"),
    _asset("HYPE", "Hyperliquid"),
    _asset("ENA", "Ethena"),
    _asset("TAO", "Bittensor"),
    _asset("ASTER", "Aster"),
    _asset("SHIB", "Shiba Inu", aster="1000SHIBUSDT", hyperliquid="kSHIB", multipliers=_K),
    _asset("PEPE", "Pepe", aster="1000PEPEUSDT", hyperliquid="kPEPE", multipliers=_K),
    _asset("FLOKI", "Floki", aster="1000FLOKIUSDT", hyperliquid="kFLOKI", multipliers=_K),
    _asset("BONK", "Bonk", aster="1000BONKUSDT", hyperliquid="kBONK", multipliers=_K),
)


def strip_quote(symbol: str) -> str:
    """Remove a trailing quote/contract suffix: BTCUSDT -> BTC, ETH-USDC -> ETH."""
    s = symbol.strip().upper()
    for suffix in QUOTE_SUFFIXES:
        if s.endswith(suffix) and len(s) > len(suffix):
            return s[: -len(suffix)]
    return s


def split_multiplier(symbol: str) -> Optional[Tuple[str, float]]:
    """Detect a scaled-contract prefix. Case matters for the Hyperliquid 'k' prefix."""
    for pattern, mult in _PREFIX_MULTIPLIERS:
        m = pattern.match(symbol)
        if m:
            return m.group("base"), mult
    return None


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        cur = [i]
        for j, cb in enumerate(b, 1):
            cur.append(min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + (ca != cb)))
        prev = cur
    return prev[-1]


def similarity(a: str, b: str) -> float:
    """Normalized edit-distance similarity in [0, 1]."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest


class SymbolResolver:
    """
    Resolves native venue symbols to CanonicalAsset instances.

    Args:
        registry: Static asset registry (defaults to DEFAULT_REGISTRY)
        overrides: {venue: {native_symbol: asset_id}} manual mappings
        fuzzy_threshold: Minimum similarity for a fuzzy match (0..1)
    """

    def __init__(
        self,
        registry: Iterable[CanonicalAsset] = DEFAULT_REGISTRY,
        overrides: Optional[Mapping[Venue, Mapping[str, str]]] = None,
        fuzzy_threshold: float = 0.8,
    ) -> None:
        self.fuzzy_threshold = float(fuzzy_threshold)
        self._assets: Dict[str, CanonicalAsset] = {}
        self._by_venue_symbol: Dict[Venue, Dict[str, CanonicalAsset]] = {v: {} for v in Venue}
        self._overrides: Dict[Venue, Dict[str, str]] = {v: {} for v in Venue}
        self._cache: Dict[Tuple[Venue, str], Resolution] = {}
        self._learned: Dict[Tuple[str, Venue], str] = {}
        self.stats: Dict[str, int] = {"override": 0, "exact": 0, "alias": 0,
                                      "multiplier": 0, "fuzzy": 0, "miss": 0}
        for asset in registry:
            self.register(asset)
        for venue, mapping in (overrides or {}).items():
            v = Venue.parse(venue)
            for native, asset_id in (mapping or {}).items():
                self._overrides[v][str(native).strip().upper()] = str(asset_id).strip().upper()

    # ==================== Registry ====================

    def register(self, asset: CanonicalAsset) -> None:
        self._assets[asset.id.upper()] = asset
        for venue, sym in asset.venue_symbols.items():
            self._by_venue_symbol[Venue.parse(venue)][sym.upper()] = asset

    def get_asset(self, asset_id: str) -> Optional[CanonicalAsset]:
        return self._assets.get(str(asset_id).upper())

    @property
    def assets(self) -> List[CanonicalAsset]:
        return list(self._assets.values())

    def invalidate(self) -> None:
        """Drop every cached resolution. The only way entries leave the cache."""
        n = len(self._cache)
        self._cache.clear()
        self._learned.clear()
        log.info("[SYMBOLS] Resolution cache invalidated (%d entries)", n)

    # ==================== Resolution ====================

    def resolve(self, native_symbol: str, venue: Venue) -> Optional[Resolution]:
        """Resolve a venue-native symbol, or None when no step matches."""
        venue = Venue.parse(venue)
        native = str(native_symbol or "").strip()
        if not native:
            return None
        key = (venue, native)
        hit = self._cache.get(key)
        if hit is not None:
            return hit

        res = self._resolve_uncached(native, venue)
        if res is None:
            self.stats["miss"] += 1
            return None

        self.stats[res.method] += 1
        if res.method == "fuzzy":
            log.warning("[SYMBOLS] FUZZY match %s:%s -> %s (threshold %.2f)",
                        venue.label, native, res.asset.id, self.fuzzy_threshold)
        else:
            log.debug("[SYMBOLS] %s:%s -> %s (%s, x%g)", venue.label, native, res.asset.id, res.method, res.multiplier)
        self._cache[key] = res
        self._learned[(res.asset.id, venue)] = native
        return res

    def _resolve_uncached(self, native: str, venue: Venue) -> Optional[Resolution]:
        upper = native.upper()

        override = self._overrides[venue].get(upper)
        if override:
            asset = self._assets.get(override)
            if asset is None:
                log.warning("[SYMBOLS] Override %s:%s points to unknown asset %s", venue.label, native, override)
            else:
                return Resolution(asset, asset.multiplier(venue), "override")

        asset = self._by_venue_symbol[venue].get(upper)
        if asset is not None:
            return Resolution(asset, asset.multiplier(venue), "exact")

        base = strip_quote(native)
        found = self._match_base(base)
        if found is not None:
            asset, method = found
            return Resolution(asset, 1.0, method)

        # Preserve case so 'kPEPE' is a multiplier while 'KAVA' is not
        stripped = native.strip()
        for suffix in QUOTE_SUFFIXES:
            if stripped.upper().endswith(suffix) and len(stripped) > len(suffix):
                stripped = stripped[: -len(suffix)]
                break
        split = split_multiplier(stripped)
        if split is not None:
            inner, mult = split
            found = self._match_base(inner.upper())
            if found is not None:
                return Resolution(found[0], mult, "multiplier")

        best: Optional[CanonicalAsset] = None
        best_score = 0.0
        for asset_id, candidate in self._assets.items():
            score = similarity(base, asset_id)
            if score > best_score:
                best, best_score = candidate, score
        if best is not None and best_score >= self.fuzzy_threshold:
            return Resolution(best, 1.0, "fuzzy")
        return None

    def _match_base(self, base: str) -> Optional[Tuple[CanonicalAsset, str]]:
        asset = self._assets.get(base)
        if asset is not None:
            return asset, "exact"
        alias = ALIASES.get(base)
        if alias and alias in self._assets:
            return self._assets[alias], "alias"
        return None

    def to_venue_symbol(self, asset_id: str, venue: Venue) -> Optional[str]:
        """Native symbol for an asset on a venue, or None for unknown assets."""
        venue = Venue.parse(venue)
        asset = self.get_asset(asset_id)
        if asset is None:
            return None
        learned = self._learned.get((asset.id, venue))
        if learned:
            return learned
        return asset.symbol_for(venue)
