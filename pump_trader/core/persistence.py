from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from pump_trader.core.models import PortfolioStats, Position, VaultState
from pump_trader.exceptions import StateException

STATE_VERSION = 1


@dataclass
class EngineState:
    positions: list[Position] = field(default_factory=list)
    history: list[Position] = field(default_factory=list)
    stats: PortfolioStats = field(default_factory=PortfolioStats)
    vault: VaultState = field(default_factory=VaultState)
    paper_balance: float | None = None


class StateRepository:
    """Durable JSON snapshot of the whole engine state, rewritten after every transition."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.logger = logging.getLogger("pump_trader.state")

    def save(self, state: EngineState) -> None:
        payload = {
            "version": STATE_VERSION,
            "positions": [p.to_dict() for p in state.positions],
            "history": [p.to_dict() for p in state.history],
            "stats": state.stats.to_dict(),
            "vault": state.vault.to_dict(),
            "paper_balance": state.paper_balance,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StateException("Failed to write state", path=str(self.path)) from e

    def load(self) -> EngineState:
        """Load the last snapshot. Returns an empty state if none exists."""
        if not self.path.exists():
            self.logger.info("No state snapshot found, starting fresh")
            return EngineState()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StateException("Unreadable state snapshot", path=str(self.path)) from e

        positions = []
        for item in data.get("positions", []):
            try:
                positions.append(Position.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning("Skipping malformed position %s: %s", item.get("mint", "?"), e)
        history = []
        for item in data.get("history", []):
            try:
                history.append(Position.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning("Skipping malformed history entry %s: %s", item.get("mint", "?"), e)

        state = EngineState(
            positions=positions,
            history=history,
            stats=PortfolioStats.from_dict(data.get("stats", {})),
            vault=VaultState.from_dict(data.get("vault", {})),
            paper_balance=data.get("paper_balance"),
        )
        self.logger.info("Restored %d positions, %d closed trades", len(positions), len(history))
        return state
