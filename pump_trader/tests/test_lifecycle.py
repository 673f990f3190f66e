import asyncio

import pytest

from pump_trader.core.lifecycle import TradeLifecycleManager
from pump_trader.core.models import (
    TIER_TP1,
    AdmissionVerdict,
    ExitAction,
    ExitReason,
    PositionStatus,
    RiskTier,
    TradeFill,
    VaultState,
)
from pump_trader.core.persistence import StateRepository
from pump_trader.core.position_store import PositionStore
from pump_trader.core.trade_executor import PaperExecutor
from pump_trader.core.vault import ProfitVault
from pump_trader.exceptions import ExecutionException, NoBalanceError, StateException

from .factories import NOW, make_candidate, make_plan, make_position

VERDICT = AdmissionVerdict(score=60.0, risk_tier=RiskTier.MEDIUM, passed=True)


class ScriptedExecutor:
    """Live-like executor whose outcomes are set by the test."""

    paper = False

    def __init__(self):
        self.sell_error = None
        self.sell_revenue = 1.0
        self.balance_by_mint = {}
        self.balance_gates = {}
        self.gate = None
        self.sells = 0

    async def buy(self, mint, sol_amount, ref_price):
        return TradeFill(mint, "BUY", sol_amount, sol_amount / ref_price * 1e6, ref_price, NOW)

    async def sell(self, mint, token_amount, ref_price, quote_age_sec, full_exit):
        self.sells += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.sell_error is not None:
            raise self.sell_error
        return TradeFill(mint, "SELL", self.sell_revenue, token_amount, ref_price, NOW)

    async def token_balance(self, mint):
        if mint in self.balance_gates:
            await self.balance_gates[mint].wait()
        return self.balance_by_mint.get(mint)

    async def balance(self):
        return 10.0


def make_manager(settings, executor=None, repository=None, on_close=None):
    return TradeLifecycleManager(
        settings,
        PositionStore(),
        executor or PaperExecutor(settings),
        ProfitVault(VaultState(protection_percent=20.0)),
        repository=repository,
        on_close=on_close,
    )


def open_paper_position(manager, price=0.04):
    return asyncio.run(
        manager.open_position(make_candidate(mint="A"), VERDICT, 0.1, make_plan(), price, 33.0, NOW)
    )


class TestOpen:
    def test_paper_buy_opens_position(self, settings):
        manager = make_manager(settings)
        position = open_paper_position(manager)

        assert position.status == PositionStatus.OPEN
        assert position.entry_price == pytest.approx(0.04 * 1.015)
        assert position.sol_committed == pytest.approx(0.1)
        assert position.token_amount == pytest.approx((0.1 * 0.99 - 0.00204) / (0.0406 / 1e6))
        assert position.original_token_amount == position.token_amount
        assert manager.executor.cash_sol == pytest.approx(settings.PAPER_STARTING_BALANCE_SOL - 0.1)
        assert "A" in manager.store

    def test_second_open_for_same_mint_refused(self, settings):
        manager = make_manager(settings)
        open_paper_position(manager)
        assert open_paper_position(manager) is None

    def test_failed_buy_leaves_no_position(self, settings):
        manager = make_manager(settings, executor=PaperExecutor(settings, starting_balance=0.1))
        assert open_paper_position(manager) is None
        assert len(manager.store) == 0


class TestSell:
    def test_full_close_updates_stats_and_vault(self, settings):
        closed = []
        manager = make_manager(settings, on_close=closed.append)
        position = open_paper_position(manager)
        position.current_price = position.entry_price * 2

        assert asyncio.run(manager.sell("A", ExitAction(100.0, ExitReason.TAKE_PROFIT), NOW + 10))

        assert "A" not in manager.store
        history = manager.store.history()
        assert len(history) == 1
        assert history[0].status == PositionStatus.CLOSED
        assert history[0].exit_reason == "TAKE_PROFIT"
        revenue = (0.1 * 0.99 - 0.00204) * 2 * 0.97 + 0.00204
        assert manager.stats.realized_pnl == pytest.approx(revenue - 0.1)
        assert manager.stats.wins == 1
        assert manager.vault.balance == pytest.approx((revenue - 0.1) * 0.2)
        assert closed == ["A"]

    def test_partial_sell_shrinks_position(self, settings):
        manager = make_manager(settings)
        position = open_paper_position(manager)
        tokens = position.token_amount
        position.current_price = position.entry_price * 2

        asyncio.run(manager.sell("A", ExitAction(50.0, ExitReason.TAKE_PROFIT, TIER_TP1), NOW + 10))

        position = manager.store.get("A")
        assert position.status == PositionStatus.OPEN
        assert position.token_amount == pytest.approx(tokens / 2)
        assert position.sol_committed == pytest.approx(0.05)
        assert position.original_sol_committed == pytest.approx(0.1)
        assert TIER_TP1 in position.partial_exits_done
        assert position.realized_sol > 0
        assert manager.stats.wins == 0
        assert manager.store.history() == []

    def test_stats_counted_once_across_partial_and_final_sell(self, settings):
        manager = make_manager(settings)
        position = open_paper_position(manager)
        position.current_price = position.entry_price * 2

        asyncio.run(manager.sell("A", ExitAction(50.0, ExitReason.TAKE_PROFIT, TIER_TP1), NOW + 10))
        asyncio.run(manager.sell("A", ExitAction(100.0, ExitReason.TRAILING_STOP), NOW + 20))

        assert manager.stats.wins + manager.stats.losses == 1
        assert len(manager.store.history()) == 1

    def test_failed_sell_reverts_to_open(self, settings):
        executor = ScriptedExecutor()
        executor.sell_error = ExecutionException("submit failed")
        manager = make_manager(settings, executor=executor)
        manager.store.put(make_position(mint="A"))

        assert not asyncio.run(manager.sell("A", ExitAction(100.0, ExitReason.STOP_LOSS), NOW))

        assert manager.store.get("A").status == PositionStatus.OPEN
        assert manager.stats.losses == 0

    def test_no_balance_waits_then_closes_as_loss(self, settings):
        executor = ScriptedExecutor()
        executor.sell_error = NoBalanceError("No tokens in wallet")
        manager = make_manager(settings, executor=executor)
        manager.store.put(make_position(mint="A"))

        assert not asyncio.run(manager.sell("A", ExitAction(100.0, ExitReason.STOP_LOSS), NOW))
        position = manager.store.get("A")
        assert position.status == PositionStatus.OPEN
        assert position.zero_balance_since == NOW

        later = NOW + settings.NO_BALANCE_GRACE_SEC
        assert asyncio.run(manager.sell("A", ExitAction(100.0, ExitReason.STOP_LOSS), later))
        assert "A" not in manager.store
        assert manager.store.history()[0].exit_reason == ExitReason.NO_BALANCE.value
        assert manager.stats.losses == 1
        assert manager.stats.realized_pnl == pytest.approx(-1.0)

    def test_concurrent_operation_on_same_mint_is_skipped(self, settings):
        executor = ScriptedExecutor()
        manager = make_manager(settings, executor=executor)
        manager.store.put(make_position(mint="A"))

        async def scenario():
            executor.gate = asyncio.Event()
            first = asyncio.create_task(manager.sell("A", ExitAction(100.0, ExitReason.MANUAL), NOW))
            await asyncio.sleep(0)
            assert manager.is_busy("A")
            second = await manager.sell("A", ExitAction(100.0, ExitReason.STOP_LOSS), NOW)
            executor.gate.set()
            return await first, second

        first, second = asyncio.run(scenario())
        assert first is True
        assert second is False
        assert executor.sells == 1
        assert manager.stats.wins + manager.stats.losses == 1

    def test_sell_of_unknown_mint_is_noop(self, settings):
        manager = make_manager(settings)
        assert not asyncio.run(manager.sell("missing", ExitAction(100.0, ExitReason.MANUAL), NOW))


class TestPolicies:
    def test_stale_quotes_close_position(self, settings):
        manager = make_manager(settings)
        position = open_paper_position(manager)
        position.last_quote_at = NOW - 200

        assert manager.stale_positions(NOW) == ["A"]
        assert asyncio.run(manager.enforce_policies(NOW)) == 1

        closed = manager.store.history()[0]
        assert closed.exit_reason == ExitReason.STALE_QUOTES.value
        assert manager.stats.losses == 1

    def test_fresh_positions_are_not_stale(self, settings):
        manager = make_manager(settings)
        open_paper_position(manager)
        assert manager.stale_positions(NOW + 10) == []

    def test_sync_reconciles_entry_from_confirmed_balance(self, settings):
        executor = ScriptedExecutor()
        executor.balance_by_mint["A"] = 900_000.0
        manager = make_manager(settings, executor=executor)
        manager.store.put(make_position(mint="A"))

        asyncio.run(manager.sync(NOW))

        position = manager.store.get("A")
        assert position.token_amount == 900_000.0
        assert position.original_token_amount == 900_000.0
        assert position.entry_price == pytest.approx(1.0 / 900_000.0 * 1e6)

    def test_sell_landing_mid_sync_is_not_overwritten(self, settings):
        executor = ScriptedExecutor()
        executor.balance_by_mint.update({"A": 1_100_000.0, "B": 1_000_000.0})
        executor.balance_gates["B"] = asyncio.Event()
        manager = make_manager(settings, executor=executor)
        manager.store.put(make_position(mint="A"))
        manager.store.put(make_position(mint="B", symbol="BETA"))

        async def scenario():
            syncing = asyncio.create_task(manager.sync(NOW))
            while not manager.is_busy("B"):
                await asyncio.sleep(0)
            # A was reconciled already; its take-profit fills while B is still being read
            sold = await manager.sell("A", ExitAction(50.0, ExitReason.TAKE_PROFIT, TIER_TP1), NOW + 1)
            executor.balance_gates["B"].set()
            await syncing
            return sold

        assert asyncio.run(scenario())

        position = manager.store.get("A")
        assert position.token_amount == pytest.approx(550_000.0)
        assert position.original_token_amount == pytest.approx(1_100_000.0)
        assert TIER_TP1 in position.partial_exits_done

    def test_sync_skips_mint_with_sell_in_flight(self, settings):
        executor = ScriptedExecutor()
        executor.balance_by_mint["A"] = 2_000_000.0
        manager = make_manager(settings, executor=executor)
        manager.store.put(make_position(mint="A"))
        manager._acquire("A")

        asyncio.run(manager.sync(NOW))

        assert manager.store.get("A").token_amount == 1_000_000.0

    def test_sync_closes_after_zero_balance_grace(self, settings):
        executor = ScriptedExecutor()
        executor.balance_by_mint["A"] = 0.0
        manager = make_manager(settings, executor=executor)
        manager.store.put(make_position(mint="A", opened_at=NOW - 600))

        asyncio.run(manager.sync(NOW))
        assert manager.store.get("A").zero_balance_since == NOW

        asyncio.run(manager.sync(NOW + settings.NO_BALANCE_GRACE_SEC))
        assert "A" not in manager.store
        assert manager.stats.losses == 1

    def test_sync_is_noop_for_paper(self, settings):
        manager = make_manager(settings)
        position = open_paper_position(manager)
        amount = position.token_amount
        asyncio.run(manager.sync(NOW))
        assert manager.store.get("A").token_amount == amount


class TestOperatorActions:
    def test_vault_withdraw_credits_paper_balance(self, settings):
        manager = make_manager(settings)
        manager.vault.state.protected_balance = 0.5
        cash = manager.executor.cash_sol

        manager.withdraw_vault(0.2)

        assert manager.vault.balance == pytest.approx(0.3)
        assert manager.executor.cash_sol == pytest.approx(cash + 0.2)

    def test_vault_wipe_credits_paper_balance(self, settings):
        manager = make_manager(settings)
        manager.vault.state.protected_balance = 0.5
        cash = manager.executor.cash_sol

        assert manager.wipe_vault() == pytest.approx(0.5)
        assert manager.executor.cash_sol == pytest.approx(cash + 0.5)

    def test_reset_clears_positions_and_stats(self, settings):
        manager = make_manager(settings)
        open_paper_position(manager)
        manager.stats.wins = 3

        manager.reset()

        assert len(manager.store) == 0
        assert manager.stats.wins == 0

    def test_reset_refused_while_busy(self, settings):
        manager = make_manager(settings)
        manager._acquire("A")
        with pytest.raises(StateException):
            manager.reset()


class TestRestore:
    def test_state_survives_restart(self, settings):
        repository = StateRepository(settings.STATE_PATH)
        manager = make_manager(settings, repository=repository)
        open_paper_position(manager)
        cash = manager.executor.cash_sol

        restored = make_manager(settings, repository=repository)
        restored.restore()

        assert "A" in restored.store
        assert restored.executor.cash_sol == pytest.approx(cash)

    def test_selling_positions_reopen_on_restore(self, settings):
        repository = StateRepository(settings.STATE_PATH)
        manager = make_manager(settings, repository=repository)
        manager.store.put(make_position(mint="A", status=PositionStatus.SELLING))
        manager.persist()

        restored = make_manager(settings, repository=repository)
        restored.restore()

        assert restored.store.get("A").status == PositionStatus.OPEN

    def test_restore_keeps_configured_protection(self, settings):
        repository = StateRepository(settings.STATE_PATH)
        manager = make_manager(settings, repository=repository)
        manager.vault.state.protected_balance = 0.4
        manager.persist()

        restored = make_manager(settings, repository=repository)
        restored.vault.set_enabled(False)
        restored.vault.set_percent(40.0)
        restored.restore()

        assert restored.vault.balance == pytest.approx(0.4)
        assert not restored.vault.state.protection_enabled
        assert restored.vault.state.protection_percent == 40.0
