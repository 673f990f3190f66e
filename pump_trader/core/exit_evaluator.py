"""
Exit Strategy Evaluator

Rules run in fixed priority order; the first match wins for the tick:
1. min hold gate
2. max hold (time exit)
3. momentum exit
4. rug / liquidity drain
5. profit protection pullback
6. adaptive trailing stop, then the plan's explicit trailing stop
7. stop loss
8. staged take-profit tiers
9. plain take-profit when no second tier is configured
"""
from __future__ import annotations

from pump_trader.config import AdmissionMode, Settings
from pump_trader.core.models import (
    TIER_REMAINING,
    TIER_TP1,
    TIER_TP2,
    ExitAction,
    ExitPlan,
    ExitReason,
    Position,
)

FULL = 100.0

# (peak gain threshold, trailing distance) from tightest to loosest
ADAPTIVE_TRAILING_TIERS = ((50.0, 8.0), (30.0, 10.0), (15.0, 12.0))
ADAPTIVE_TRAILING_DEFAULT = 15.0
ADAPTIVE_TRAILING_MIN_PEAK = 10.0

EXPLICIT_TRAILING_MIN_PEAK = 20.0
EXPLICIT_TRAILING_DEFAULT = 10.0

# (peak gain reached, current gain fallen back to)
PROFIT_PROTECTION_LEVELS = ((10.0, 5.0), (20.0, 10.0))


def adaptive_trailing_distance(peak_gain_pct: float) -> float:
    """Drawdown from peak tolerated before exiting; tightens as the peak gain grows."""
    for threshold, distance in ADAPTIVE_TRAILING_TIERS:
        if peak_gain_pct >= threshold:
            return distance
    return ADAPTIVE_TRAILING_DEFAULT


def tier_sell_percent(position: Position, tier: str) -> float:
    """Percent of current holdings to sell so that the tier's cumulative target is met."""
    target_remaining = TIER_REMAINING[tier]
    held = position.remaining_fraction
    if held <= target_remaining:
        return 0.0
    return (1.0 - target_remaining / held) * 100.0


class ExitEvaluator:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def evaluate(self, position: Position, now: float) -> ExitAction | None:
        plan = position.exit_plan
        held_for = now - position.opened_at

        if held_for < plan.min_hold_seconds:
            return None

        if plan.max_hold_seconds > 0 and held_for >= plan.max_hold_seconds:
            return ExitAction(FULL, ExitReason.TIME_EXIT)

        if position.entry_price <= 0:
            # Nothing below is meaningful without a cost basis
            return ExitAction(FULL, ExitReason.RUG) if position.rug_detected else None

        pnl = position.pnl_percent
        peak_gain = position.peak_gain_percent

        if plan.momentum_exit_enabled and pnl > 0:
            recent_move = now - position.last_price_change_at < self.settings.MOMENTUM_EXIT_WINDOW_SEC
            if recent_move and pnl >= plan.take_profit_pct * 0.5:
                return ExitAction(FULL, ExitReason.MOMENTUM)

        if position.rug_detected:
            return ExitAction(FULL, ExitReason.RUG)

        if pnl > 0:
            for peak_level, fallback_level in PROFIT_PROTECTION_LEVELS:
                if peak_gain >= peak_level and pnl <= fallback_level:
                    return ExitAction(FULL, ExitReason.PROFIT_PROTECT)

        drawdown = position.drawdown_percent
        if peak_gain >= ADAPTIVE_TRAILING_MIN_PEAK and drawdown >= adaptive_trailing_distance(peak_gain):
            return ExitAction(FULL, ExitReason.TRAILING_STOP)
        if plan.trailing_stop_enabled and peak_gain >= EXPLICIT_TRAILING_MIN_PEAK:
            if drawdown >= (plan.trailing_stop_pct or EXPLICIT_TRAILING_DEFAULT):
                return ExitAction(FULL, ExitReason.TRAILING_STOP)

        if pnl <= -abs(plan.stop_loss_pct):
            return ExitAction(FULL, ExitReason.STOP_LOSS)

        done = position.partial_exits_done
        if pnl >= plan.take_profit_pct and TIER_TP1 not in done:
            percent = tier_sell_percent(position, TIER_TP1)
            if percent > 0:
                return ExitAction(percent, ExitReason.TAKE_PROFIT, TIER_TP1)
        if plan.take_profit_pct2 and pnl >= plan.take_profit_pct2 and TIER_TP2 not in done:
            percent = tier_sell_percent(position, TIER_TP2)
            if percent > 0:
                return ExitAction(percent, ExitReason.TAKE_PROFIT_2, TIER_TP2)

        if not plan.take_profit_pct2 and pnl >= plan.take_profit_pct:
            return ExitAction(FULL, ExitReason.TAKE_PROFIT)

        return None


def build_exit_plan(mode: AdmissionMode, settings: Settings) -> ExitPlan:
    """Exit plan attached at open time; stricter admission holds longer for bigger targets."""
    tp = settings.TAKE_PROFIT_PCT
    sl = settings.STOP_LOSS_PCT
    if mode == AdmissionMode.STRICT:
        return ExitPlan(
            take_profit_pct=tp,
            take_profit_pct2=tp * 2.5,
            stop_loss_pct=sl,
            max_hold_seconds=600,
            min_hold_seconds=3,
            trailing_stop_enabled=True,
            trailing_stop_pct=10.0,
            momentum_exit_enabled=False,
        )
    if mode == AdmissionMode.LENIENT:
        return ExitPlan(
            take_profit_pct=tp,
            take_profit_pct2=None,
            stop_loss_pct=sl,
            max_hold_seconds=120,
            min_hold_seconds=2,
            trailing_stop_enabled=False,
            momentum_exit_enabled=True,
        )
    return ExitPlan(
        take_profit_pct=tp,
        take_profit_pct2=tp * 2,
        stop_loss_pct=sl,
        max_hold_seconds=300,
        min_hold_seconds=2,
        trailing_stop_enabled=True,
        trailing_stop_pct=12.0,
        momentum_exit_enabled=True,
    )
