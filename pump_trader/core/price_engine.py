"""
Price Update Engine

Refreshes every open position once per heartbeat:
- reserves snapshot from the gateway (bounded concurrent batches)
- falls back to the streamed trade price and curve liquidity, then to the last known price
- all field updates for the tick are written to the store in one step
- a liquidity drop beyond the rug threshold flags the position for a forced sell
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from pump_trader.config import Settings
from pump_trader.core.circuit_breaker import DataSourceGuard
from pump_trader.core.models import Position, ReserveSnapshot
from pump_trader.core.position_store import PositionStore
from pump_trader.exceptions import DataSourceException, DataSourceTimeout


class ReserveSource(Protocol):
    async def get_reserves(self, mint: str) -> ReserveSnapshot: ...


class SecondaryPriceSource(Protocol):
    def get_quote(self, mint: str, max_age_sec: float | None = None) -> tuple[float, float] | None: ...


@dataclass(frozen=True)
class Quote:
    price: float
    liquidity: float | None
    fresh: bool
    source: str


class PriceEngine:
    SECONDARY_MAX_AGE_SEC = 30.0

    def __init__(
        self,
        settings: Settings,
        gateway: ReserveSource,
        store: PositionStore,
        guard: DataSourceGuard,
        secondary: SecondaryPriceSource | None = None,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.store = store
        self.guard = guard
        self.secondary = secondary
        self.logger = logging.getLogger("pump_trader.prices")

    async def refresh(self, now: float) -> list[str]:
        """Update all open positions. Returns mints whose liquidity collapsed this tick."""
        positions = self.store.open_positions()
        if not positions:
            return []

        quotes: dict[str, Quote] = {}
        batch_size = max(1, self.settings.PRICE_BATCH_SIZE)
        for start in range(0, len(positions), batch_size):
            batch = positions[start:start + batch_size]
            results = await asyncio.gather(*(self._quote(p, now) for p in batch))
            for position, quote in zip(batch, results):
                if quote is not None:
                    quotes[position.mint] = quote

        updates: dict[str, dict[str, Any]] = {}
        rugged: list[str] = []
        for position in positions:
            quote = quotes.get(position.mint)
            if quote is None:
                continue
            fields = self.compute_update(position, quote, now)
            if fields.get("rug_detected") and not position.rug_detected:
                rugged.append(position.mint)
            updates[position.mint] = fields

        self.store.put_all(updates)
        return rugged

    async def _quote(self, position: Position, now: float) -> Quote | None:
        mint = position.mint
        if self.guard.allow(mint, now):
            try:
                snapshot = await asyncio.wait_for(
                    self.gateway.get_reserves(mint),
                    timeout=self.settings.REQUEST_TIMEOUT_SEC,
                )
            except asyncio.TimeoutError:
                self.guard.record_error(mint, DataSourceTimeout("Reserves timed out", mint=mint[:12]), now)
                self.logger.debug("Reserves timed out for %s", position.symbol)
            except DataSourceException as e:
                self.guard.record_error(mint, e, now)
                self.logger.debug("Reserves failed for %s: %s", position.symbol, e)
            else:
                self.guard.record_success(now)
                if snapshot.price > 0:
                    return Quote(snapshot.price, snapshot.liquidity, True, "reserves")

        if self.secondary is not None:
            streamed = self.secondary.get_quote(mint, self.SECONDARY_MAX_AGE_SEC)
            if streamed and streamed[0] > 0:
                price, liquidity = streamed
                return Quote(price, liquidity if liquidity > 0 else None, True, "stream")

        if position.current_price > 0:
            self.logger.debug("Using last known price for %s", position.symbol)
            return Quote(position.current_price, None, False, "last")
        return None

    def compute_update(self, position: Position, quote: Quote, now: float) -> dict[str, Any]:
        """Field changes for one position; the position itself is not touched."""
        price = quote.price
        fields: dict[str, Any] = {"current_price": price}

        entry = position.entry_price
        if entry <= 0:
            # First usable quote becomes the cost basis
            entry = price
            fields["entry_price"] = price
            self.logger.info("Entry price for %s set from first quote: %.8f", position.symbol, price)

        fields["peak_price"] = max(position.peak_price, entry, price)
        if price != position.current_price:
            fields["last_price_change_at"] = now
        if quote.fresh:
            fields["last_quote_at"] = now

        if quote.liquidity is not None:
            previous = position.last_liquidity
            fields["last_liquidity"] = quote.liquidity
            if previous > self.settings.RUG_MIN_PREV_LIQUIDITY_SOL:
                drop_pct = (previous - quote.liquidity) / previous * 100.0
                if drop_pct > self.settings.RUG_LIQUIDITY_DROP_PCT:
                    fields["rug_detected"] = True
                    self.logger.warning(
                        "🚨 RUG: %s liquidity %.2f -> %.2f SOL (-%.1f%%)",
                        position.symbol,
                        previous,
                        quote.liquidity,
                        drop_pct,
                    )
        return fields
