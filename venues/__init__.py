# -*- coding: utf-8 -*-
"""
Exchange gateways for the funding arbitrage engine.

Supported venues:
- Aster (AS) - Binance Futures-compatible protocol, HMAC signed
- Hyperliquid (HL) - EIP-712 signed L1 actions
- Lighter (LT) - zk rollup, orders via the lighter SDK SignerClient

All gateways inherit from GatewayBase and are looked up through GATEWAYS.
"""
from typing import Any, Dict, Optional, Type

from core.models import Venue
from venues.aster import AsterGateway
from venues.base import GatewayBase, GatewayError
from venues.hyperliquid import HyperliquidGateway
from venues.lighter import LighterGateway
from venues.paper import PaperGateway

GATEWAYS: Dict[Venue, Type[GatewayBase]] = {
    Venue.ASTER: AsterGateway,
    Venue.HYPERLIQUID: HyperliquidGateway,
    Venue.LIGHTER: LighterGateway,
}


def build_gateway(venue: Venue, cfg: Optional[Dict[str, Any]] = None) -> GatewayBase:
    return GATEWAYS[Venue.parse(venue)](cfg)


__all__ = [
    "GATEWAYS",
    "GatewayBase",
    "GatewayError",
    "AsterGateway",
    "HyperliquidGateway",
    "LighterGateway",
    "PaperGateway",
    "build_gateway",
]
