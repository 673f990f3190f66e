"""Pump.fun bonding curve math."""
from __future__ import annotations

from pump_trader.constants import (
    CURVE_FINAL_TOKEN_RESERVE,
    CURVE_SELLABLE_TOKENS,
    INITIAL_VIRTUAL_SOL,
    PRICE_SCALE,
)


def curve_progress(token_reserve: float) -> float:
    """Percent of the curve sold through, 0 at launch and 100 at graduation."""
    progress = 100.0 - ((token_reserve - CURVE_FINAL_TOKEN_RESERVE) * 100.0 / CURVE_SELLABLE_TOKENS)
    return max(0.0, min(100.0, progress))


def spot_price(sol_reserve: float, token_reserve: float) -> float:
    """SOL per token, scaled by PRICE_SCALE. Zero when reserves are unusable."""
    if token_reserve <= 0 or sol_reserve <= 0:
        return 0.0
    return sol_reserve / token_reserve * PRICE_SCALE


def liquidity_growth(sol_reserve: float) -> float:
    """SOL added to the curve since launch (negative once it has been drained)."""
    return sol_reserve - INITIAL_VIRTUAL_SOL


def growth_rate_per_min(sol_reserve: float, age_sec: float) -> float:
    """Average liquidity growth in SOL/minute since launch."""
    if age_sec <= 0:
        return 0.0
    return liquidity_growth(sol_reserve) / age_sec * 60.0
