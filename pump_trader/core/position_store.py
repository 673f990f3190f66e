"""In-memory position set with atomic batch updates."""
from __future__ import annotations

import copy
from collections import deque
from typing import Any, Callable, Iterable

from pump_trader.core.models import Position, PositionStatus
from pump_trader.exceptions import StateException


class PositionStore:
    """
    Authoritative set of active positions plus the closed-position history.

    All writes happen on the event loop thread, so a batch write through
    `put_all` is observed either entirely or not at all by readers.
    """

    def __init__(self, history_limit: int = 100) -> None:
        self._positions: dict[str, Position] = {}
        self._history: deque[Position] = deque(maxlen=history_limit)

    def get(self, mint: str) -> Position | None:
        return self._positions.get(mint)

    def __contains__(self, mint: str) -> bool:
        return mint in self._positions

    def __len__(self) -> int:
        return len(self._positions)

    def all(self) -> list[Position]:
        return list(self._positions.values())

    def open_positions(self) -> list[Position]:
        return [p for p in self._positions.values() if p.status == PositionStatus.OPEN]

    def active_count(self) -> int:
        return sum(1 for p in self._positions.values() if p.is_active)

    def put(self, position: Position) -> None:
        if position.status == PositionStatus.CLOSED:
            raise StateException("Closed positions belong in history", mint=position.mint)
        self._positions[position.mint] = position

    def put_all(self, updates: dict[str, dict[str, Any]]) -> None:
        """Apply field updates for many mints in one step.

        Mints that vanished since the updates were computed are ignored.
        """
        for mint, fields in updates.items():
            position = self._positions.get(mint)
            if position is None:
                continue
            for name, value in fields.items():
                setattr(position, name, value)

    def compare_and_swap(
        self,
        mint: str,
        expected: PositionStatus,
        new: PositionStatus,
        mutate: Callable[[Position], None] | None = None,
    ) -> bool:
        """Move a position from `expected` to `new` status; False if it was not in `expected`."""
        position = self._positions.get(mint)
        if position is None or position.status != expected:
            return False
        position.status = new
        if mutate:
            mutate(position)
        return True

    def close(self, mint: str) -> Position:
        """Move a position into history. Returns the archived copy."""
        position = self._positions.pop(mint, None)
        if position is None:
            raise StateException("No such position", mint=mint)
        position.status = PositionStatus.CLOSED
        archived = copy.deepcopy(position)
        self._history.appendleft(archived)
        return archived

    def history(self) -> list[Position]:
        return list(self._history)

    def load(self, positions: Iterable[Position], history: Iterable[Position]) -> None:
        self._positions = {p.mint: p for p in positions if p.status != PositionStatus.CLOSED}
        self._history.clear()
        self._history.extend(history)

    def clear(self) -> None:
        self._positions.clear()
        self._history.clear()
