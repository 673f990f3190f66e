"""Profit protection vault."""
from __future__ import annotations

import logging

from pump_trader.core.models import VaultState
from pump_trader.exceptions import ValidationException

MAX_PROTECTION_PERCENT = 50.0


class ProfitVault:
    """Skims a share of realized profit into a balance the engine never trades."""

    def __init__(self, state: VaultState | None = None) -> None:
        self.state = state or VaultState()
        self.logger = logging.getLogger("pump_trader.vault")

    @property
    def balance(self) -> float:
        return self.state.protected_balance

    def protect(self, net_profit: float) -> float:
        """Move the configured share of a positive profit into the vault. Returns the amount moved."""
        if net_profit <= 0 or not self.state.protection_enabled or self.state.protection_percent <= 0:
            return 0.0
        amount = net_profit * self.state.protection_percent / 100.0
        self.state.protected_balance += amount
        self.logger.info(
            "🏦 VAULT +%.4f SOL (%.0f%% of %.4f profit) | vault=%.4f",
            amount,
            self.state.protection_percent,
            net_profit,
            self.state.protected_balance,
        )
        return amount

    def withdraw(self, amount: float) -> float:
        if amount <= 0:
            self.logger.warning("Vault withdraw rejected: amount %.4f must be positive", amount)
            raise ValidationException("Withdraw amount must be positive", amount=amount)
        if amount > self.state.protected_balance + 1e-12:
            self.logger.warning(
                "Vault withdraw rejected: %.4f requested, %.4f held", amount, self.state.protected_balance
            )
            raise ValidationException(
                "Cannot withdraw more than the vault holds",
                amount=amount,
                balance=self.state.protected_balance,
            )
        self.state.protected_balance = max(0.0, self.state.protected_balance - amount)
        self.logger.info("🏦 VAULT withdraw %.4f SOL | vault=%.4f", amount, self.state.protected_balance)
        return amount

    def wipe(self) -> float:
        """Empty the vault back to trading balance. Returns the amount released."""
        amount = self.state.protected_balance
        self.state.protected_balance = 0.0
        self.logger.info("🏦 VAULT wiped, released %.4f SOL", amount)
        return amount

    def set_enabled(self, enabled: bool) -> None:
        self.state.protection_enabled = enabled

    def set_percent(self, percent: float) -> None:
        if not 0 <= percent <= MAX_PROTECTION_PERCENT:
            self.logger.warning("Vault percent rejected: %.1f outside 0..%.0f", percent, MAX_PROTECTION_PERCENT)
            raise ValidationException("Protection percent must be within 0..50", percent=percent)
        self.state.protection_percent = percent
