# -*- coding: utf-8 -*-
"""
Runner for the funding arbitrage engine.

- Loads config/funding_arb.yaml and `.env` credentials.
- Builds one gateway per enabled venue (wrapped in PaperGateway in paper mode),
  the symbol resolver, the precision manager, the funding feed, the state store
  and the notifier, then hands them to FundingArbitrageEngine.
- SIGINT/SIGTERM trigger a graceful stop (positions stay open unless
  --close-on-exit is given).

Launch:
  python -m run.funding_arb --config config/funding_arb.yaml --paper
  python -m run.funding_arb --once          # one rebalance then exit
  python -m run.funding_arb --status        # print the saved state snapshot
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Dict, List, Optional

from core.config import AppConfig, ConfigError, load_config
from core.funding_feed import FundingFeed
from core.models import Venue
from core.notifier import ArbNotifier, build_notifier
from core.precision import PrecisionManager
from core.symbols import SymbolResolver
from strategies.funding_arbitrage import FundingArbitrageEngine
from strategies.storage import StateStore
from venues import GatewayBase, GatewayError, PaperGateway, build_gateway

log = logging.getLogger("run.funding_arb")


def _setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not root.handlers:
        h = logging.StreamHandler(sys.stdout)
        h.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)5s | %(name)s | %(message)s",
                "%H:%M:%S",
            )
        )
        root.addHandler(h)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Cross-venue funding rate arbitrage")
    ap.add_argument("--config", default="config/funding_arb.yaml")
    mode = ap.add_mutually_exclusive_group()
    mode.add_argument("--paper", dest="paper", action="store_true", default=None, help="simulate orders")
    mode.add_argument("--live", dest="paper", action="store_false", help="place real orders")
    ap.add_argument("--once", action="store_true", help="run one rebalance cycle then exit")
    ap.add_argument("--status", action="store_true", help="print the saved status snapshot and exit")
    ap.add_argument("--close-on-exit", action="store_true", help="close all positions on shutdown")
    ap.add_argument("--log-level", default="INFO")
    return ap.parse_args(argv)


def build_engine(cfg: AppConfig) -> FundingArbitrageEngine:
    """Wire every service from the validated config."""
    st = cfg.strategy
    resolver = SymbolResolver(overrides=cfg.symbol_overrides, fuzzy_threshold=cfg.fuzzy_threshold)
    precision = PrecisionManager(refresh_interval_s=cfg.precision_refresh_s)

    gateways: Dict[Venue, GatewayBase] = {}
    for venue in cfg.enabled_venues:
        gateway = build_gateway(venue, cfg.venues[venue].settings)
        if st.paper_mode:
            # Paper fills at the feed's latest mark for the native symbol
            gateway = PaperGateway(gateway, st.capital_per_venue,
                                   price_source=lambda sym, v=venue: feed.mark_price(v, sym))
        gateways[venue] = gateway
    feed = FundingFeed(gateways, resolver, poll_interval_s=cfg.poll_interval_s, stale_timeout_s=cfg.stale_timeout_s)

    for venue, gw in gateways.items():
        precision.register_source(venue, gw.fetch_precision_rules)

    store = StateStore(cfg.state_path, cfg.funding_log_path)
    notifier = ArbNotifier(build_notifier(cfg.notifier))
    return FundingArbitrageEngine(st, gateways, feed, precision, store, notifier)


async def _start_gateways(engine: FundingArbitrageEngine) -> None:
    for venue, gw in engine.gateways.items():
        await gw.start()
        log.info(f"[RUN] {venue.label} gateway ready ({type(gw).__name__})")


async def _close_gateways(engine: FundingArbitrageEngine) -> None:
    for gw in engine.gateways.values():
        try:
            await gw.close()
        except GatewayError as e:
            log.warning(f"[RUN] {gw.label} close failed: {e}")


async def run_once(engine: FundingArbitrageEngine) -> None:
    engine._load_state()
    await engine.precision.refresh()
    for venue in engine.gateways:
        try:
            n = await engine.feed.poll_once(venue)
            log.info(f"[RUN] {venue.label}: {n} funding quotes")
        except GatewayError as e:
            log.warning(f"[RUN] {venue.label} funding snapshot failed: {e}")
    event = await engine.rebalance(trigger="manual")
    engine.store.append_funding_snapshot(engine.feed.snapshot())
    print(json.dumps(event.to_dict(), indent=2))


async def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    _setup_logging(args.log_level)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        log.error(str(e))
        return 2
    if args.paper is not None:
        cfg.strategy.paper_mode = args.paper

    engine = build_engine(cfg)

    if args.status:
        engine._load_state()
        print(json.dumps(engine.get_status(), indent=2, default=str))
        return 0

    await _start_gateways(engine)
    try:
        if args.once:
            await run_once(engine)
            return 0

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (getattr(signal, "SIGINT", None), getattr(signal, "SIGTERM", None)):
            if sig is None:
                continue
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass

        await engine.start()
        await stop.wait()
        log.info("[RUN] Shutdown requested")
        await engine.stop(close_positions=args.close_on_exit, reason="signal")
        return 0
    finally:
        await _close_gateways(engine)


def cli() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
