"""
Trade Lifecycle Manager

Owns position state transitions:

    OPEN -> SELLING -> CLOSED
              |
              +-> OPEN (partial fill, or failed sell to retry)

Every transition is persisted. A mint is mutated by at most one operation at a
time; an operation that finds the mint busy is skipped, not queued.
"""
from __future__ import annotations

import logging
from typing import Callable

from pump_trader.config import Settings
from pump_trader.constants import PRICE_SCALE
from pump_trader.core.models import (
    AdmissionVerdict,
    Candidate,
    ExitAction,
    ExitPlan,
    ExitReason,
    PortfolioStats,
    Position,
    PositionStatus,
    TradeFill,
)
from pump_trader.core.persistence import EngineState, StateRepository
from pump_trader.core.position_store import PositionStore
from pump_trader.core.trade_executor import PaperExecutor, TradeExecutor
from pump_trader.core.vault import ProfitVault
from pump_trader.exceptions import (
    DataSourceException,
    ExecutionException,
    NoBalanceError,
    StateException,
    WalletException,
)
from pump_trader.utils.time import utc_ts

FULL_CLOSE_FRACTION = 0.99
BALANCE_DRIFT_TOLERANCE = 0.01


class TradeLifecycleManager:
    def __init__(
        self,
        settings: Settings,
        store: PositionStore,
        executor: TradeExecutor,
        vault: ProfitVault,
        repository: StateRepository | None = None,
        stats: PortfolioStats | None = None,
        on_close: Callable[[str], None] | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.executor = executor
        self.vault = vault
        self.repository = repository
        self.stats = stats or PortfolioStats()
        self.on_close = on_close
        self.logger = logging.getLogger("pump_trader.lifecycle")
        self._in_flight: set[str] = set()

    # ============================================
    # LOCKING
    # ============================================

    def _acquire(self, mint: str) -> bool:
        if mint in self._in_flight:
            return False
        self._in_flight.add(mint)
        return True

    def _release(self, mint: str) -> None:
        self._in_flight.discard(mint)

    def is_busy(self, mint: str) -> bool:
        return mint in self._in_flight

    # ============================================
    # OPEN
    # ============================================

    async def open_position(
        self,
        candidate: Candidate,
        verdict: AdmissionVerdict,
        size_sol: float,
        plan: ExitPlan,
        ref_price: float,
        liquidity: float,
        now: float | None = None,
    ) -> Position | None:
        mint = candidate.mint
        if mint in self.store:
            self.logger.info("Skip BUY %s: position already exists", candidate.symbol)
            return None
        if not self._acquire(mint):
            self.logger.info("Skip BUY %s: operation in flight", candidate.symbol)
            return None
        try:
            try:
                fill = await self.executor.buy(mint, size_sol, ref_price)
            except (ExecutionException, WalletException, DataSourceException) as e:
                self.logger.error("❌ BUY FAILED %s: %s", candidate.symbol, e)
                return None

            now = utc_ts() if now is None else now
            entry_price = fill.price if fill.price > 0 else ref_price
            position = Position(
                mint=mint,
                symbol=candidate.symbol,
                entry_price=entry_price if entry_price > 0 else 0.0,
                token_amount=fill.token_amount,
                sol_committed=fill.sol_amount,
                opened_at=now,
                exit_plan=plan,
                last_quote_at=now,
                last_liquidity=liquidity,
                last_price_change_at=now,
                admission_score=verdict.score,
            )
            self.store.put(position)
            self.logger.info(
                "🚀 BUY %s %.4f SOL -> %.0f tokens @ %.8f (score %.0f, %s)%s",
                candidate.symbol,
                fill.sol_amount,
                fill.token_amount,
                position.entry_price,
                verdict.score,
                verdict.risk_tier.value,
                " [PAPER]" if self.executor.paper else "",
            )
            self.persist()
            return position
        finally:
            self._release(mint)

    # ============================================
    # SELL
    # ============================================

    async def sell(self, mint: str, action: ExitAction, now: float | None = None) -> bool:
        """Execute an exit decision. Returns True if a fill was applied or the position closed."""
        position = self.store.get(mint)
        if position is None or position.status != PositionStatus.OPEN:
            return False
        if not self._acquire(mint):
            self.logger.debug("Skip SELL %s: operation in flight", position.symbol)
            return False
        try:
            if not self.store.compare_and_swap(mint, PositionStatus.OPEN, PositionStatus.SELLING):
                return False
            now = utc_ts() if now is None else now
            full = action.is_full
            tokens = position.token_amount if full else position.token_amount * action.percent / 100.0
            self.logger.info(
                "💰 SELL %s %.0f%% (%s) pnl=%.1f%%",
                position.symbol,
                100.0 if full else action.percent,
                action.reason.value,
                position.pnl_percent,
            )
            try:
                fill = await self.executor.sell(
                    mint,
                    tokens,
                    position.current_price,
                    now - position.last_quote_at,
                    full,
                )
            except NoBalanceError as e:
                return self._handle_no_balance(position, now, str(e))
            except (ExecutionException, WalletException, DataSourceException) as e:
                self.logger.error("❌ SELL FAILED %s: %s (back to OPEN)", position.symbol, e)
                self.store.compare_and_swap(mint, PositionStatus.SELLING, PositionStatus.OPEN)
                self.persist()
                return False

            self._apply_sell_fill(position, fill, action, now)
            return True
        finally:
            self._release(mint)

    def _apply_sell_fill(self, position: Position, fill: TradeFill, action: ExitAction, now: float) -> None:
        held = position.token_amount
        sold = min(fill.token_amount, held) if held > 0 else 0.0
        fraction = sold / held if held > 0 else 1.0
        cost_basis = position.sol_committed * fraction
        net_profit = fill.sol_amount - cost_basis

        position.realized_sol += fill.sol_amount
        self._protect(net_profit)

        if action.is_full or fraction >= FULL_CLOSE_FRACTION:
            self._finalize_close(position, action.reason.value, now)
            return

        position.token_amount = held - sold
        position.sol_committed -= cost_basis
        if action.tier:
            position.partial_exits_done.add(action.tier)
        position.zero_balance_since = None
        self.store.compare_and_swap(position.mint, PositionStatus.SELLING, PositionStatus.OPEN)
        self.logger.info(
            "💰 PARTIAL EXIT %s sold %.0f%% for %.4f SOL (net %+.4f), %.0f tokens left",
            position.symbol,
            fraction * 100,
            fill.sol_amount,
            net_profit,
            position.token_amount,
        )
        self.persist()

    def _handle_no_balance(self, position: Position, now: float, detail: str) -> bool:
        if position.zero_balance_since is None:
            position.zero_balance_since = now
        waited = now - position.zero_balance_since
        if waited >= self.settings.NO_BALANCE_GRACE_SEC:
            self.logger.warning("🚨 %s has no balance for %.0fs, closing as loss", position.symbol, waited)
            self._finalize_close(position, ExitReason.NO_BALANCE.value, now)
            return True
        self.logger.warning("⚠️ %s: %s, waiting for settlement (%.0fs)", position.symbol, detail, waited)
        self.store.compare_and_swap(position.mint, PositionStatus.SELLING, PositionStatus.OPEN)
        self.persist()
        return False

    def _protect(self, net_profit: float) -> None:
        moved = self.vault.protect(net_profit)
        if moved > 0 and isinstance(self.executor, PaperExecutor):
            self.executor.debit(moved)

    def _finalize_close(self, position: Position, reason: str, now: float) -> Position:
        """The only path into history; stats are updated here and nowhere else."""
        pnl_sol = position.realized_sol - position.original_sol_committed
        basis = position.original_sol_committed
        position.realized_pnl_percent = pnl_sol / basis * 100.0 if basis > 0 else 0.0
        position.closed_at = now
        position.exit_reason = reason
        archived = self.store.close(position.mint)

        self.stats.realized_pnl += pnl_sol
        if pnl_sol > 0:
            self.stats.wins += 1
        else:
            self.stats.losses += 1

        self.logger.info(
            "%s CLOSED %s (%s) pnl=%+.4f SOL (%+.1f%%) | total=%+.4f W/L %d/%d",
            "✅" if pnl_sol > 0 else "🔻",
            position.symbol,
            reason,
            pnl_sol,
            position.realized_pnl_percent,
            self.stats.realized_pnl,
            self.stats.wins,
            self.stats.losses,
        )
        self.persist()
        if self.on_close:
            self.on_close(position.mint)
        return archived

    # ============================================
    # POLICIES
    # ============================================

    def stale_positions(self, now: float) -> list[str]:
        """Open positions whose last fresh quote is older than the stale threshold."""
        limit = self.settings.STALE_QUOTE_CLOSE_SEC
        return [
            p.mint
            for p in self.store.open_positions()
            if p.last_quote_at and now - p.last_quote_at > limit and not self.is_busy(p.mint)
        ]

    async def enforce_policies(self, now: float) -> int:
        """Close positions whose quotes went stale. Returns how many were closed."""
        closed = 0
        for mint in self.stale_positions(now):
            position = self.store.get(mint)
            if position is None:
                continue
            self.logger.warning(
                "⏳ %s quotes stale for %.0fs, closing as precaution",
                position.symbol,
                now - position.last_quote_at,
            )
            if await self.sell(mint, ExitAction(100.0, ExitReason.STALE_QUOTES), now) and mint not in self.store:
                closed += 1
        return closed

    async def sync(self, now: float | None = None) -> None:
        """Reconcile tracked token amounts with on-chain balances (live only).

        Each mint stays locked from its balance read until its update is
        written, so a sell cannot land in between and be overwritten.
        """
        if self.executor.paper:
            return
        now = utc_ts() if now is None else now
        changed = False
        for mint in [p.mint for p in self.store.open_positions()]:
            if not self._acquire(mint):
                continue
            try:
                balance = await self.executor.token_balance(mint)
                position = self.store.get(mint)
                if balance is None or position is None or position.status != PositionStatus.OPEN:
                    continue
                changed |= self._reconcile(position, balance, now)
            finally:
                self._release(mint)
        if changed:
            self.persist()

    def _reconcile(self, position: Position, balance: float, now: float) -> bool:
        mint = position.mint
        if balance <= 0:
            since = position.zero_balance_since or now
            if now - since >= self.settings.NO_BALANCE_GRACE_SEC and now - position.opened_at >= self.settings.NO_BALANCE_GRACE_SEC:
                if self.store.compare_and_swap(mint, PositionStatus.OPEN, PositionStatus.SELLING):
                    self.logger.warning("🚨 %s balance is zero, closing as loss", position.symbol)
                    self._finalize_close(position, ExitReason.NO_BALANCE.value, now)
                return False
            if position.zero_balance_since is None:
                self.store.put_all({mint: {"zero_balance_since": now}})
                return True
            return False

        fields: dict = {}
        if position.zero_balance_since is not None:
            fields["zero_balance_since"] = None
        drift = abs(balance - position.token_amount) / max(position.token_amount, 1e-9)
        if drift > BALANCE_DRIFT_TOLERANCE:
            fields["token_amount"] = balance
            if not position.partial_exits_done and position.realized_sol == 0:
                # Nothing sold yet: the confirmed balance is the true fill
                fields["original_token_amount"] = balance
                fields["entry_price"] = position.sol_committed / balance * PRICE_SCALE
            self.logger.info("🔄 SYNC %s tokens %.0f -> %.0f", position.symbol, position.token_amount, balance)
        if fields:
            self.store.put_all({mint: fields})
        return bool(fields)

    # ============================================
    # OPERATOR ACTIONS
    # ============================================

    async def manual_sell(self, mint: str, percent: float = 100.0) -> bool:
        return await self.sell(mint, ExitAction(percent, ExitReason.MANUAL))

    def withdraw_vault(self, amount: float) -> float:
        moved = self.vault.withdraw(amount)
        if isinstance(self.executor, PaperExecutor):
            self.executor.credit(moved)
        self.persist()
        return moved

    def wipe_vault(self) -> float:
        moved = self.vault.wipe()
        if isinstance(self.executor, PaperExecutor):
            self.executor.credit(moved)
        self.persist()
        return moved

    def reset(self) -> None:
        if self._in_flight:
            raise StateException("Cannot reset while operations are in flight", mints=sorted(self._in_flight))
        self.store.clear()
        self.stats = PortfolioStats()
        self.logger.info("State reset: positions, history and stats cleared")
        self.persist()

    # ============================================
    # PERSISTENCE
    # ============================================

    def snapshot(self) -> EngineState:
        return EngineState(
            positions=self.store.all(),
            history=self.store.history(),
            stats=self.stats,
            vault=self.vault.state,
            paper_balance=self.executor.cash_sol if isinstance(self.executor, PaperExecutor) else None,
        )

    def persist(self) -> None:
        if self.repository is None:
            return
        try:
            self.repository.save(self.snapshot())
        except StateException as e:
            self.logger.error("State save failed: %s", e)

    def restore(self) -> None:
        if self.repository is None:
            return
        state = self.repository.load()
        for position in state.positions:
            if position.status == PositionStatus.SELLING:
                # Sell outcome unknown after restart; sync settles it
                position.status = PositionStatus.OPEN
        self.store.load(state.positions, state.history)
        self.stats = state.stats
        # Enabled flag and percent stay as configured; only the balance carries over
        self.vault.state.protected_balance = state.vault.protected_balance
        if state.paper_balance is not None and isinstance(self.executor, PaperExecutor):
            self.executor.cash_sol = state.paper_balance
