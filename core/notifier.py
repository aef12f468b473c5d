from __future__ import annotations
import aiohttp
import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

log = logging.getLogger(__name__)


class Notifier:
    """
    - kind: "discord" (webhook), "ntfy" or "none".
    - Secrets:
        * Discord: webhook URL via ENV (default: DISCORD_WEBHOOK_URL).
          -> notifier.discord_webhook_env changes the variable name.
        * ntfy: topic/token in clear OK (no critical action).

    - API:
        await notify(title, message, urgent=False)   # never raises
    """

    DEFAULT_USER_AGENT = "funding-arb/1.0"
    DISCORD_MAX = 1900

    def __init__(self, cfg: Optional[Dict[str, Any]] = None) -> None:
        n = cfg or {}
        self.kind = str(n.get("kind") or "none").strip().lower()

        # ----- Discord -----
        self.discord_webhook_env = str(n.get("discord_webhook_env") or "DISCORD_WEBHOOK_URL").strip()
        self._discord_webhook_url = os.environ.get(self.discord_webhook_env, "").strip()
        self.username = str(n.get("username") or "funding-arb").strip()

        # ----- ntfy -----
        self.ntfy_server = str(n.get("ntfy_server") or "https://ntfy.sh").rstrip("/")
        self.ntfy_topic = str(n.get("ntfy_topic") or "").strip()
        self.ntfy_token = str(n.get("ntfy_token") or "").strip()

        self.sent: int = 0
        self.failed: int = 0

    @property
    def enabled(self) -> bool:
        if self.kind == "discord":
            return bool(self._discord_webhook_url)
        if self.kind == "ntfy":
            return bool(self.ntfy_topic)
        return False

    # --------------- Public ---------------

    async def notify(self, title: str, message: str, urgent: bool = False) -> None:
        """Async send. Delivery failures are logged and counted, never raised."""
        if not message or not self.enabled:
            return
        try:
            if self.kind == "discord":
                await self._send_discord(title or "Funding Arb", message, urgent)
            elif self.kind == "ntfy":
                await self._send_ntfy(title or "Funding Arb", message, urgent)
            self.sent += 1
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.failed += 1
            log.debug(f"[NOTIFY] {self.kind} delivery failed: {e}")

    # --------------- Discord ---------------

    async def _send_discord(self, title: str, message: str, urgent: bool) -> None:
        prefix = "@here " if urgent else ""
        content = f"{prefix}**{title}**\n{message}"
        chunks = [content[i:i + self.DISCORD_MAX] for i in range(0, len(content), self.DISCORD_MAX)]

        timeout = aiohttp.ClientTimeout(total=8)
        headers = {"User-Agent": self.DEFAULT_USER_AGENT, "Content-Type": "application/json"}
        async with aiohttp.ClientSession(timeout=timeout, headers=headers) as sess:
            for part in chunks:
                payload = {"content": part, "username": self.username}
                async with sess.post(self._discord_webhook_url, json=payload) as r:
                    if r.status >= 400:
                        log.debug(f"[NOTIFY] discord returned HTTP {r.status}")
                        return

    # --------------- ntfy ---------------

    async def _send_ntfy(self, title: str, message: str, urgent: bool) -> None:
        url = f"{self.ntfy_server}/{self.ntfy_topic}"
        headers = {
            "User-Agent": self.DEFAULT_USER_AGENT,
            "Title": title,
            "Priority": "urgent" if urgent else "default",
            "Content-Type": "text/plain; charset=utf-8",
        }
        if self.ntfy_token:
            headers["Authorization"] = f"Bearer {self.ntfy_token}"
        timeout = aiohttp.ClientTimeout(total=7)
        async with aiohttp.ClientSession(timeout=timeout) as sess:
            async with sess.post(url, data=message.encode("utf-8"), headers=headers) as r:
                if r.status >= 400:
                    log.debug(f"[NOTIFY] ntfy returned HTTP {r.status}")


class NullNotifier(Notifier):
    """kind "none": every notification is dropped."""

    def __init__(self) -> None:
        super().__init__({"kind": "none"})


def build_notifier(cfg: Optional[Dict[str, Any]]) -> Notifier:
    kind = str((cfg or {}).get("kind") or "none").strip().lower()
    if kind == "none":
        return NullNotifier()
    if kind not in ("discord", "ntfy"):
        log.warning(f"[NOTIFY] Unknown notifier kind {kind!r}, notifications disabled")
        return NullNotifier()
    return Notifier(cfg)


class ArbNotifier:
    """Formats engine events and hands them to a Notifier."""

    def __init__(self, notifier: Optional[Notifier] = None) -> None:
        self.notifier = notifier or NullNotifier()

    async def _send(self, title: str, lines: List[str], urgent: bool = False) -> None:
        await self.notifier.notify(title, "\n".join(lines), urgent=urgent)

    async def strategy_started(self, total_capital: float, paper: bool) -> None:
        mode = "PAPER" if paper else "LIVE"
        await self._send(f"Funding arb started ({mode})", [f"Total capital: ${total_capital:,.2f}"])

    async def strategy_stopped(self, reason: str) -> None:
        await self._send("Funding arb stopped", [f"Reason: {reason}"])

    async def position_opened(self, position) -> None:
        await self._send(f"Opened {position.asset}", [
            f"Rank #{position.rank} ({position.allocation_pct:g}%)",
            f"LONG {position.long_venue.label} {position.long_size:g} @ {position.long_entry_price:g}",
            f"SHORT {position.short_venue.label} {position.short_size:g} @ {position.short_entry_price:g}",
            f"Spread: {position.entry_spread:.2f}% APR",
        ])

    async def position_closed(self, position) -> None:
        lines = [
            f"Reason: {position.exit_reason}",
            f"Funding earned: ${position.funding_earned:.4f}",
            f"PnL: ${position.pnl:.4f}",
        ]
        if position.close_errors:
            lines.append("Errors: " + "; ".join(position.close_errors))
        await self._send(f"Closed {position.asset}", lines, urgent=bool(position.close_errors))

    async def rebalance_summary(self, event) -> None:
        if event.aborted_reason:
            lines = [f"Aborted: {event.aborted_reason}"]
        else:
            lines = [
                f"Entered: {', '.join(event.entered) or '-'}",
                f"Exited: {', '.join(event.exited) or '-'}",
                f"Spreads considered: {event.spreads_considered}",
            ]
        await self._send(f"Rebalance ({event.trigger})", lines)

    async def negative_spread(self, position) -> None:
        await self._send(f"Negative spread on {position.asset}", [
            f"Current spread: {position.current_spread:.2f}% APR, closing",
        ])

    async def unhedged_position(self, asset: str, venue, side, qty: float, detail: str) -> None:
        await self._send(f"UNHEDGED {asset}", [
            f"{getattr(side, 'value', side)} {qty:g} on {getattr(venue, 'label', venue)} is not hedged",
            detail,
            "Manual intervention required",
        ], urgent=True)

    async def readiness_failed(self, issues: List[str]) -> None:
        await self._send("Rebalance aborted: not ready", [f"- {i}" for i in issues], urgent=True)
