from __future__ import annotations

import logging
from dataclasses import dataclass

from pump_trader.config import Settings
from pump_trader.core.position_store import PositionStore


@dataclass
class SizingDecision:
    allowed: bool
    size_sol: float
    reason: str


class PositionSizer:
    """Decides whether a new position may open and how much SOL it gets."""

    MIN_MULTIPLIER = 0.5
    MAX_MULTIPLIER = 2.0
    FLOOR_OF_BASE = 0.3
    CEILING_OF_BASE = 2.0

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.logger = logging.getLogger("pump_trader.sizing")
        self.last_buy_at = 0.0

    def compute_size(self, score: float, open_count: int) -> float:
        """Scale the base trade amount by score and shrink it under portfolio heat."""
        base = self.settings.TRADE_AMOUNT_SOL
        multiplier = score / self.settings.SCORE_BASELINE
        multiplier = max(self.MIN_MULTIPLIER, min(self.MAX_MULTIPLIER, multiplier))
        size = base * multiplier
        if open_count >= 3:
            size *= 0.7
        elif open_count >= 2:
            size *= 0.85
        return max(base * self.FLOOR_OF_BASE, min(base * self.CEILING_OF_BASE, size))

    def check_admission(self, mint: str, store: PositionStore, now: float, pending: int = 0) -> SizingDecision:
        """Refuse duplicate mints, full books and buys inside the cooldown.

        `pending` counts buys already in flight that are not in the store yet.
        """
        if mint in store:
            return SizingDecision(False, 0.0, "ALREADY_HELD")
        active = store.active_count() + pending
        if active >= self.settings.MAX_POSITIONS:
            return SizingDecision(False, 0.0, "MAX_POSITIONS")
        since = now - self.last_buy_at
        if since < self.settings.MIN_SECONDS_BETWEEN_BUYS:
            return SizingDecision(False, 0.0, "COOLDOWN")
        return SizingDecision(True, 0.0, "OK")

    def decide(self, mint: str, score: float, store: PositionStore, now: float, pending: int = 0) -> SizingDecision:
        gate = self.check_admission(mint, store, now, pending)
        if not gate.allowed:
            self.logger.debug("Sizing refused %s: %s", mint[:12], gate.reason)
            return gate
        size = self.compute_size(score, store.active_count() + pending)
        return SizingDecision(True, size, "OK")

    def record_buy(self, now: float) -> None:
        self.last_buy_at = now
