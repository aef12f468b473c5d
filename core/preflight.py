# -*- coding: utf-8 -*-
"""
Readiness checks run before every rebalance cycle.

Validates that the engine can trade safely:
- API credentials present (skipped in paper mode)
- Venues reachable for balance queries
- Available balance >= capital_per_venue on every enabled venue
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from core.models import Venue
from venues.base import GatewayBase, GatewayError

log = logging.getLogger(__name__)

# Below this multiple of capital_per_venue the balance passes with a warning
BALANCE_WARNING_RATIO = 1.1


@dataclass
class ReadinessReport:
    ok: bool
    issues: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    results: List[Tuple[str, bool, str]] = field(default_factory=list)


class ReadinessCheck:
    """
    Readiness checklist runner.

    Usage:
        check = ReadinessCheck(capital_per_venue, gateways, paper_mode)
        report = await check.run_all()
        if not report.ok:
            for issue in report.issues:
                print(issue)
    """

    def __init__(self, capital_per_venue: float, gateways: Dict[Venue, GatewayBase], paper_mode: bool):
        self.capital_per_venue = float(capital_per_venue)
        self.gateways = gateways
        self.paper_mode = paper_mode
        self.results: List[Tuple[str, bool, str]] = []
        self.issues: List[str] = []
        self.warnings: List[str] = []

    async def run_all(self) -> ReadinessReport:
        """
        Run every check. Never raises: venue failures become issues.

        Returns:
            ReadinessReport with ok=True only when no issue was found.
        """
        self.results, self.issues, self.warnings = [], [], []

        if len(self.gateways) < 2:
            self._add_result("Venues", False, f"need at least 2 venues, got {len(self.gateways)}")

        # 1. Credentials
        if self.paper_mode:
            self._add_result("Trading Mode", True, "PAPER MODE - No real orders")
        else:
            self._check_credentials()

        # 2. Balances
        await self._check_balances()

        report = ReadinessReport(ok=not self.issues, issues=list(self.issues),
                                 warnings=list(self.warnings), results=list(self.results))
        return report

    def _add_result(self, check: str, passed: bool, message: str):
        """Add a check result."""
        self.results.append((check, passed, message))
        if passed:
            log.info(f"[PREFLIGHT] [OK] {check}: {message}")
        else:
            self.issues.append(f"{check}: {message}")
            log.warning(f"[PREFLIGHT] [FAIL] {check}: {message}")

    def _add_warning(self, check: str, message: str):
        self.warnings.append(f"{check}: {message}")
        log.warning(f"[PREFLIGHT] [WARN] {check}: {message}")

    def _check_credentials(self):
        """Verify API credentials are present in environment."""
        for venue, gw in self.gateways.items():
            missing = gw.missing_credentials()
            name = f"{venue.label} Credentials"
            if missing:
                self._add_result(name, False, f"Missing: {', '.join(missing)}")
            else:
                self._add_result(name, True, "present")

    async def _check_balances(self):
        """Check each venue can fund its leg of every position."""
        need = self.capital_per_venue
        for venue, gw in self.gateways.items():
            name = f"{venue.label} Balance"
            try:
                bal = await gw.get_balance()
            except GatewayError as e:
                self._add_result(name, False, f"balance query failed: {e}")
                continue
            if bal.available < need:
                self._add_result(name, False, f"available ${bal.available:.2f} < required ${need:.2f}")
                continue
            self._add_result(name, True, f"${bal.available:.2f}")
            if bal.available < need * BALANCE_WARNING_RATIO:
                self._add_warning(name, f"available ${bal.available:.2f} is within 10% of required ${need:.2f}")


def print_preflight_report(report: ReadinessReport):
    """Print a formatted readiness report."""
    print("\n" + "=" * 60)
    print("  READINESS CHECKLIST")
    print("=" * 60)

    for check, passed, message in report.results:
        status = "[OK]  " if passed else "[FAIL]"
        print(f"  {status} {check}: {message}")
    for w in report.warnings:
        print(f"  [WARN] {w}")

    print("=" * 60)
    if report.ok:
        print("  ALL CHECKS PASSED - Ready to trade")
    else:
        print("  SOME CHECKS FAILED - Rebalance will be aborted")
    print("=" * 60 + "\n")
