"""PumpPortal WebSocket client for real-time Pump.fun token discovery and trade pushes."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from pump_trader.config import Settings
from pump_trader.core.bonding_curve import spot_price
from pump_trader.core.models import Candidate
from pump_trader.utils.time import utc_ts


@dataclass(frozen=True)
class TradeUpdate:
    """Trade push for a subscribed mint, carrying post-trade reserves."""
    mint: str
    price: float
    sol_reserve: float
    token_reserve: float
    is_buy: bool
    sol_amount: float
    ts: float


@dataclass
class TradeStats:
    volume_sol: float = 0.0
    buys: int = 0
    sells: int = 0

    @property
    def buy_ratio(self) -> float | None:
        total = self.buys + self.sells
        return self.buys / total if total else None


class PumpPortalClient:
    """WebSocket client for PumpPortal.fun real-time data.

    Streams new Pump.fun token creations and trades for subscribed mints into
    a shared channel. No API key required - free public WebSocket.
    """

    RECONNECT_DELAY_SEC = 2.0

    def __init__(self, settings: Settings, channel: asyncio.Queue) -> None:
        self.settings = settings
        self.logger = logging.getLogger("pump_trader.pumpportal")
        self.channel = channel
        self._running = False
        self._ws = None
        # mint -> (price, sol_reserve, ts) from the latest trade push
        self._prices: dict[str, tuple[float, float, float]] = {}
        self._stats: dict[str, TradeStats] = {}
        self._subscribed_mints: set[str] = set()

    async def start(self) -> None:
        """Connect, subscribe and pump messages into the channel until stopped."""
        self._running = True
        self.logger.info("PumpPortal WebSocket starting...")

        while self._running:
            try:
                async with websockets.connect(self.settings.PUMPPORTAL_WS_URL) as ws:
                    self._ws = ws
                    self.logger.info("PumpPortal WebSocket connected")

                    # Subscriptions do not survive a reconnect
                    if self._subscribed_mints:
                        mints = list(self._subscribed_mints)
                        await ws.send(json.dumps({"method": "subscribeTokenTrade", "keys": mints}))
                        self.logger.info("Resubscribed to trades for %d tokens", len(mints))

                    await ws.send(json.dumps({"method": "subscribeNewToken"}))
                    self.logger.info("✅ PumpPortal: Subscribed to new tokens stream")

                    async for message in ws:
                        self.handle_message(message)

            except ConnectionClosed as e:
                self.logger.warning("PumpPortal WebSocket closed: %s", e)
            except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as e:
                self.logger.error("PumpPortal connection error: %s", e)
            finally:
                self._ws = None

            if self._running:
                self.logger.info("PumpPortal reconnecting in %.1fs...", self.RECONNECT_DELAY_SEC)
                await asyncio.sleep(self.RECONNECT_DELAY_SEC)

    def handle_message(self, message: str | bytes) -> None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            return
        if not isinstance(data, dict):
            return
        tx_type = data.get("txType")
        if tx_type == "create":
            candidate = self.parse_new_token(data)
            if candidate:
                self.logger.info(
                    "🆕 NEW TOKEN: %s (%s) mint=%s liq=%.2f",
                    candidate.symbol,
                    candidate.name,
                    candidate.mint[:12],
                    candidate.sol_reserve,
                )
                self._publish(candidate)
        elif tx_type in ("buy", "sell"):
            update = self.parse_trade(data)
            if update:
                self._publish(update)

    def _publish(self, item: Any) -> None:
        try:
            self.channel.put_nowait(item)
        except asyncio.QueueFull:
            # Drop the oldest message; a fresh snapshot covers the gap
            try:
                self.channel.get_nowait()
            except asyncio.QueueEmpty:
                pass
            self.channel.put_nowait(item)

    def parse_new_token(self, data: dict) -> Candidate | None:
        """Parse a creation message into a Candidate snapshot."""
        mint = data.get("mint")
        if not mint:
            return None
        try:
            sol_reserve = float(data.get("vSolInBondingCurve") or 0.0)
            token_reserve = float(data.get("vTokensInBondingCurve") or 0.0)
            initial_buy_sol = float(data.get("solAmount") or 0.0)
        except (TypeError, ValueError):
            return None

        return Candidate(
            mint=str(mint),
            symbol=str(data.get("symbol", "")),
            sol_reserve=sol_reserve,
            token_reserve=token_reserve,
            first_seen_at=utc_ts(),
            name=str(data.get("name", "")),
            uri=str(data.get("uri", "")),
            creator=str(data.get("traderPublicKey", "")),
            initial_buy_sol=initial_buy_sol,
        )

    def parse_trade(self, data: dict) -> TradeUpdate | None:
        """Parse a trade push, caching its price and volume."""
        mint = data.get("mint")
        if not mint:
            return None
        try:
            sol_reserve = float(data.get("vSolInBondingCurve") or 0.0)
            token_reserve = float(data.get("vTokensInBondingCurve") or 0.0)
            sol_amount = float(data.get("solAmount") or 0.0)
        except (TypeError, ValueError):
            return None
        price = spot_price(sol_reserve, token_reserve)
        if price <= 0:
            return None
        now = utc_ts()
        is_buy = data.get("txType") == "buy"

        self._prices[mint] = (price, sol_reserve, now)
        stats = self._stats.setdefault(mint, TradeStats())
        stats.volume_sol += sol_amount
        if is_buy:
            stats.buys += 1
        else:
            stats.sells += 1

        return TradeUpdate(
            mint=str(mint),
            price=price,
            sol_reserve=sol_reserve,
            token_reserve=token_reserve,
            is_buy=is_buy,
            sol_amount=sol_amount,
            ts=now,
        )

    async def subscribe_trades(self, mints: list[str]) -> None:
        new = [m for m in mints if m not in self._subscribed_mints]
        if not new:
            return
        self._subscribed_mints.update(new)
        await self._send({"method": "subscribeTokenTrade", "keys": new})

    async def unsubscribe_trades(self, mints: list[str]) -> None:
        for mint in mints:
            self._prices.pop(mint, None)
            self._stats.pop(mint, None)
        gone = [m for m in mints if m in self._subscribed_mints]
        if not gone:
            return
        self._subscribed_mints.difference_update(gone)
        await self._send({"method": "unsubscribeTokenTrade", "keys": gone})

    async def _send(self, payload: dict) -> None:
        if self._ws is None:
            # Sent on the next (re)connect
            self.logger.debug("PumpPortal WS not connected, queued %s", payload["method"])
            return
        try:
            await self._ws.send(json.dumps(payload))
        except ConnectionClosed as e:
            self.logger.warning("PumpPortal send failed (%s), will resubscribe on reconnect", e)

    def get_quote(self, mint: str, max_age_sec: float | None = None) -> tuple[float, float] | None:
        """Latest pushed (price, sol_reserve) for a mint, optionally rejecting stale values."""
        cached = self._prices.get(mint)
        if not cached:
            return None
        price, sol_reserve, ts = cached
        if max_age_sec is not None and utc_ts() - ts > max_age_sec:
            return None
        return price, sol_reserve

    def get_stats(self, mint: str) -> TradeStats | None:
        return self._stats.get(mint)

    async def stop(self) -> None:
        """Stop the WebSocket connection."""
        self._running = False
        if self._ws:
            await self._ws.close()
            self._ws = None
        self.logger.info("PumpPortal WebSocket stopped")
