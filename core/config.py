# -*- coding: utf-8 -*-
"""
Configuration loading.

One YAML file (see config/funding_arb.example.yaml) plus `.env` credentials.
Everything is parsed once into validated dataclasses; cross-field problems
are collected and raised together as ConfigError.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from core.models import OrderKind, Venue

log = logging.getLogger(__name__)

DEFAULT_ALLOCATIONS = [30.0, 25.0, 20.0, 15.0, 10.0]

# Credential env vars per venue (overridable with the *_env keys of each venue block)
CREDENTIAL_ENV = {
    Venue.ASTER: {"api_key_env": "ASTER_API_KEY", "api_secret_env": "ASTER_API_SECRET"},
    Venue.HYPERLIQUID: {"private_key_env": "HL_PRIVATE_KEY", "account_address_env": "HL_ACCOUNT_ADDRESS"},
    Venue.LIGHTER: {"private_key_env": "LIGHTER_PRIVATE_KEY", "account_index_env": "LIGHTER_ACCOUNT_INDEX",
                    "api_key_index_env": "LIGHTER_API_KEY_INDEX"},
}


class ConfigError(Exception):
    """Invalid configuration. `problems` lists every failed check."""

    def __init__(self, problems: List[str]) -> None:
        self.problems = list(problems)
        super().__init__("Invalid configuration:\n  - " + "\n  - ".join(self.problems))


@dataclass
class StrategyConfig:
    paper_mode: bool = True
    capital_per_venue: float = 1000.0
    target_positions: int = 5
    allocations: List[float] = field(default_factory=lambda: list(DEFAULT_ALLOCATIONS))
    candidate_multiplier: int = 3
    min_apr_pct: float = 10.0
    rebalance_interval_minutes: float = 60.0
    spread_check_interval_s: float = 10.0
    manual_cooldown_s: float = 60.0
    fill_timeout_ms: int = 30000
    fill_poll_interval_s: float = 1.0
    entry_order_kind: OrderKind = OrderKind.LIMIT
    max_price_divergence: float = 0.45
    excluded_assets: List[str] = field(default_factory=list)
    funding_snapshot_interval_s: float = 300.0
    closed_history_limit: int = 50
    rebalance_history_limit: int = 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paper_mode": self.paper_mode,
            "capital_per_venue": self.capital_per_venue,
            "target_positions": self.target_positions,
            "allocations": list(self.allocations),
            "candidate_multiplier": self.candidate_multiplier,
            "min_apr_pct": self.min_apr_pct,
            "rebalance_interval_minutes": self.rebalance_interval_minutes,
            "spread_check_interval_s": self.spread_check_interval_s,
            "manual_cooldown_s": self.manual_cooldown_s,
            "fill_timeout_ms": self.fill_timeout_ms,
            "entry_order_kind": self.entry_order_kind.value.lower(),
            "max_price_divergence": self.max_price_divergence,
            "excluded_assets": list(self.excluded_assets),
        }


@dataclass
class VenueConfig:
    venue: Venue
    enabled: bool = True
    settings: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AppConfig:
    strategy: StrategyConfig
    venues: Dict[Venue, VenueConfig]
    symbol_overrides: Dict[Venue, Dict[str, str]] = field(default_factory=dict)
    fuzzy_threshold: float = 0.8
    poll_interval_s: float = 30.0
    stale_timeout_s: float = 60.0
    precision_refresh_s: float = 3600.0
    state_path: str = "data/funding_arb_state.json"
    funding_log_path: str = "logs/funding_snapshots.csv"
    notifier: Dict[str, Any] = field(default_factory=dict)

    @property
    def enabled_venues(self) -> List[Venue]:
        return [v for v, vc in self.venues.items() if vc.enabled]


def _num(section: Dict[str, Any], key: str, default: Any, cast, problems: List[str]) -> Any:
    raw = section.get(key, default)
    try:
        return cast(raw)
    except (TypeError, ValueError):
        problems.append(f"{key}: expected {cast.__name__}, got {raw!r}")
        return default


def _parse_strategy(s: Dict[str, Any], problems: List[str]) -> StrategyConfig:
    d = StrategyConfig()
    kind_raw = str(s.get("entry_order_kind", "limit")).strip().upper()
    if kind_raw not in (OrderKind.LIMIT.value, OrderKind.MARKET.value):
        problems.append(f"entry_order_kind must be 'limit' or 'market', got {s.get('entry_order_kind')!r}")
        kind_raw = OrderKind.LIMIT.value
    allocations_raw = s.get("allocations", d.allocations)
    try:
        allocations = [float(a) for a in allocations_raw]
    except (TypeError, ValueError):
        problems.append(f"allocations must be a list of numbers, got {allocations_raw!r}")
        allocations = list(d.allocations)
    return StrategyConfig(
        paper_mode=bool(s.get("paper_mode", d.paper_mode)),
        capital_per_venue=_num(s, "capital_per_venue", d.capital_per_venue, float, problems),
        target_positions=_num(s, "target_positions", d.target_positions, int, problems),
        allocations=allocations,
        candidate_multiplier=_num(s, "candidate_multiplier", d.candidate_multiplier, int, problems),
        min_apr_pct=_num(s, "min_apr_pct", d.min_apr_pct, float, problems),
        rebalance_interval_minutes=_num(s, "rebalance_interval_minutes", d.rebalance_interval_minutes, float, problems),
        spread_check_interval_s=_num(s, "spread_check_interval_s", d.spread_check_interval_s, float, problems),
        manual_cooldown_s=_num(s, "manual_cooldown_s", d.manual_cooldown_s, float, problems),
        fill_timeout_ms=_num(s, "fill_timeout_ms", d.fill_timeout_ms, int, problems),
        fill_poll_interval_s=_num(s, "fill_poll_interval_s", d.fill_poll_interval_s, float, problems),
        entry_order_kind=OrderKind(kind_raw),
        max_price_divergence=_num(s, "max_price_divergence", d.max_price_divergence, float, problems),
        excluded_assets=[str(a).upper() for a in (s.get("excluded_assets") or [])],
        funding_snapshot_interval_s=_num(s, "funding_snapshot_interval_s", d.funding_snapshot_interval_s, float, problems),
        closed_history_limit=_num(s, "closed_history_limit", d.closed_history_limit, int, problems),
        rebalance_history_limit=_num(s, "rebalance_history_limit", d.rebalance_history_limit, int, problems),
    )


def validate_strategy(st: StrategyConfig) -> List[str]:
    """Cross-field checks. Returns the list of problems (empty when valid)."""
    problems: List[str] = []
    if st.target_positions < 1:
        problems.append(f"target_positions must be >= 1, got {st.target_positions}")
    if len(st.allocations) != st.target_positions:
        problems.append(f"allocations has {len(st.allocations)} entries, must equal target_positions={st.target_positions}")
    if any(a < 0 for a in st.allocations):
        problems.append("allocations must be non-negative")
    if abs(sum(st.allocations) - 100.0) > 1e-6:
        problems.append(f"allocations must sum to 100, got {sum(st.allocations):g}")
    if st.capital_per_venue <= 0:
        problems.append(f"capital_per_venue must be > 0, got {st.capital_per_venue}")
    if st.candidate_multiplier < 1:
        problems.append(f"candidate_multiplier must be >= 1, got {st.candidate_multiplier}")
    for name in ("rebalance_interval_minutes", "spread_check_interval_s", "funding_snapshot_interval_s"):
        if getattr(st, name) <= 0:
            problems.append(f"{name} must be > 0")
    if st.manual_cooldown_s < 0 or st.fill_timeout_ms < 0 or st.fill_poll_interval_s < 0:
        problems.append("manual_cooldown_s, fill_timeout_ms and fill_poll_interval_s must be >= 0")
    if not 0 < st.max_price_divergence < 1:
        problems.append(f"max_price_divergence must be in (0, 1), got {st.max_price_divergence}")
    return problems


def build_config(raw: Dict[str, Any]) -> AppConfig:
    """Parse and validate a config mapping (the YAML document)."""
    if not isinstance(raw, dict):
        raise ConfigError(["config root must be a mapping"])
    problems: List[str] = []
    strategy = _parse_strategy(raw.get("strategy") or {}, problems)
    problems.extend(validate_strategy(strategy))

    venues: Dict[Venue, VenueConfig] = {}
    for name, section in (raw.get("venues") or {}).items():
        try:
            venue = Venue.parse(name)
        except ValueError as e:
            problems.append(str(e))
            continue
        section = dict(section or {})
        enabled = bool(section.pop("enabled", True))
        settings = {**CREDENTIAL_ENV[venue], **section}
        venues[venue] = VenueConfig(venue, enabled, settings)
    enabled = [v for v, vc in venues.items() if vc.enabled]
    if len(enabled) < 2:
        problems.append(f"at least 2 venues must be enabled, got {len(enabled)}")

    symbols = raw.get("symbols") or {}
    overrides: Dict[Venue, Dict[str, str]] = {}
    for name, mapping in (symbols.get("overrides") or {}).items():
        try:
            overrides[Venue.parse(name)] = {str(k): str(v) for k, v in (mapping or {}).items()}
        except ValueError as e:
            problems.append(f"symbols.overrides: {e}")

    feed = raw.get("feed") or {}
    storage = raw.get("storage") or {}
    cfg = AppConfig(
        strategy=strategy,
        venues=venues,
        symbol_overrides=overrides,
        fuzzy_threshold=_num(symbols, "fuzzy_threshold", 0.8, float, problems),
        poll_interval_s=_num(feed, "poll_interval_s", 30.0, float, problems),
        stale_timeout_s=_num(feed, "stale_timeout_s", 60.0, float, problems),
        precision_refresh_s=_num(feed, "precision_refresh_s", 3600.0, float, problems),
        state_path=str(storage.get("state_path", "data/funding_arb_state.json")),
        funding_log_path=str(storage.get("funding_log_path", "logs/funding_snapshots.csv")),
        notifier=dict(raw.get("notifier") or {}),
    )
    if cfg.poll_interval_s <= 0 or cfg.stale_timeout_s <= 0:
        problems.append("feed intervals must be > 0")
    if problems:
        raise ConfigError(problems)
    return cfg


def load_config(path: str, env_file: Optional[str] = ".env") -> AppConfig:
    """Load `.env` (if present) then parse and validate the YAML config file."""
    if env_file and os.path.exists(env_file):
        load_dotenv(env_file)
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError([f"cannot read {path}: {e}"]) from e
    except yaml.YAMLError as e:
        raise ConfigError([f"invalid YAML in {path}: {e}"]) from e
    cfg = build_config(raw)
    log.info(f"[CONFIG] Loaded {path}: {len(cfg.enabled_venues)} venues, "
             f"capital/venue=${cfg.strategy.capital_per_venue:,.0f}, paper={cfg.strategy.paper_mode}")
    return cfg
