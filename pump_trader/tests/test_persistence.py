import json

import pytest

from pump_trader.core.models import TIER_TP1, PortfolioStats, PositionStatus, VaultState
from pump_trader.core.persistence import EngineState, StateRepository
from pump_trader.exceptions import StateException

from .factories import make_plan, make_position


class TestStateRepository:
    def test_missing_file_gives_empty_state(self, tmp_path):
        state = StateRepository(tmp_path / "none.json").load()
        assert state.positions == []
        assert state.paper_balance is None

    def test_snapshot_restores_positions_and_balances(self, tmp_path):
        repository = StateRepository(tmp_path / "state.json")
        position = make_position(mint="A", plan=make_plan(take_profit_pct2=None, trailing_stop_pct=9.0))
        position.partial_exits_done.add(TIER_TP1)
        closed = make_position(mint="B", status=PositionStatus.CLOSED, exit_reason="STOP_LOSS")
        repository.save(
            EngineState(
                positions=[position],
                history=[closed],
                stats=PortfolioStats(realized_pnl=0.5, wins=2, losses=1),
                vault=VaultState(protected_balance=0.1, protection_percent=30.0),
                paper_balance=9.5,
            )
        )

        state = repository.load()

        restored = state.positions[0]
        assert restored.mint == "A"
        assert restored.partial_exits_done == {TIER_TP1}
        assert restored.exit_plan == position.exit_plan
        assert restored.original_token_amount == position.original_token_amount
        assert state.history[0].exit_reason == "STOP_LOSS"
        assert state.stats.wins == 2
        assert state.vault.protection_percent == 30.0
        assert state.paper_balance == 9.5

    def test_write_is_atomic(self, tmp_path):
        path = tmp_path / "state.json"
        StateRepository(path).save(EngineState())
        assert path.exists()
        assert not (tmp_path / "state.json.tmp").exists()
        assert json.loads(path.read_text())["version"] == 1

    def test_malformed_positions_skipped(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"positions": [{"mint": "X"}], "history": []}))
        state = StateRepository(path).load()
        assert state.positions == []

    def test_unreadable_file_raises(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        with pytest.raises(StateException):
            StateRepository(path).load()
