"""Config package"""
from __future__ import annotations

import os
from dataclasses import dataclass, fields
from functools import lru_cache

from dotenv import load_dotenv

from ..exceptions import ConfigurationException
from .admission_config import (
    AdmissionBounds,
    AdmissionConfig,
    AdmissionMode,
    load_admission_config,
)

# Load environment variables
load_dotenv()

ADMISSION_MODES = ("strict", "standard", "lenient")


@dataclass
class Settings:
    # ============================================
    # CREDENTIALS & ENDPOINTS
    # ============================================
    PRIVATE_KEY: str = ""
    RPC_URL: str = "https://api.mainnet-beta.solana.com"
    PUBLIC_RPC_URL: str = "https://api.mainnet-beta.solana.com"
    PUMPPORTAL_WS_URL: str = "wss://pumpportal.fun/api/data"
    PUMPPORTAL_TRADE_URL: str = "https://pumpportal.fun/api/trade-local"

    # ============================================
    # PAPER TRADING
    # ============================================
    PAPER_TRADING_MODE: bool = True
    PAPER_STARTING_BALANCE_SOL: float = 10.0
    PAPER_ENTRY_MARKUP_PCT: float = 1.5
    PAPER_EXIT_FRICTION_PCT: float = 3.0

    # ============================================
    # STRATEGY
    # ============================================
    TRADE_AMOUNT_SOL: float = 0.05
    TAKE_PROFIT_PCT: float = 50.0
    STOP_LOSS_PCT: float = 15.0
    MAX_POSITIONS: int = 3
    MIN_SECONDS_BETWEEN_BUYS: float = 2.0
    ADMISSION_MODE: str = "standard"
    ADMISSION_CONFIG_PATH: str = ""
    ADMISSION_DELAY_SEC: float = 0.0
    SCORE_BASELINE: float = 50.0

    # ============================================
    # PRICE ENGINE
    # ============================================
    HEARTBEAT_SEC: float = 2.0
    PRICE_BATCH_SIZE: int = 5
    REQUEST_TIMEOUT_SEC: float = 5.0
    RUG_LIQUIDITY_DROP_PCT: float = 20.0
    RUG_MIN_PREV_LIQUIDITY_SOL: float = 5.0
    STALE_QUOTE_CLOSE_SEC: float = 120.0
    NO_BALANCE_GRACE_SEC: float = 60.0
    MOMENTUM_EXIT_WINDOW_SEC: float = 3.0

    # ============================================
    # RATE LIMITS / CIRCUIT BREAKER
    # ============================================
    RATE_LIMIT_COOLDOWN_SEC: float = 5.0
    FORBIDDEN_COOLDOWN_SEC: float = 10.0
    BREAKER_WINDOW_SEC: float = 30.0
    BREAKER_ERROR_THRESHOLD: int = 10
    BREAKER_OPEN_SEC: float = 20.0

    # ============================================
    # RUG PRE-FILTER
    # ============================================
    COPYCAT_WINDOW_SEC: float = 300.0
    COPYCAT_WINDOW_LENIENT_SEC: float = 60.0
    PREFILTER_MIN_LIQUIDITY_SOL: float = 1.0
    PREFILTER_CRASH_SOL: float = -2.0
    SNIPER_MAX_AGE_SEC: float = 30.0
    SNIPER_MAX_GROWTH_SOL: float = 20.0

    # ============================================
    # EXECUTION
    # ============================================
    BUY_SLIPPAGE_PCT: int = 25
    SELL_SLIPPAGE_PCT: int = 25
    RETRY_SLIPPAGE_PCT: int = 50
    RETRY_PRIORITY_FEE_SOL: float = 0.003
    CONFIRM_TIMEOUT_SEC: float = 45.0
    CONFIRM_POLL_SEC: float = 1.0

    # ============================================
    # PROFIT PROTECTION
    # ============================================
    PROTECTION_ENABLED: bool = True
    PROTECTION_PERCENT: float = 20.0

    # ============================================
    # STATE / LOGGING
    # ============================================
    STATE_PATH: str = "data/state.json"
    HISTORY_LIMIT: int = 100
    LOG_DIR: str = "logs"
    LOG_LEVEL: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables named like the fields."""
        values = {}
        for f in fields(cls):
            raw = os.getenv(f.name)
            if raw is None or raw == "":
                continue
            default = f.default
            try:
                if isinstance(default, bool):
                    values[f.name] = raw.strip().lower() in ("1", "true", "yes", "on")
                elif isinstance(default, int):
                    values[f.name] = int(raw)
                elif isinstance(default, float):
                    values[f.name] = float(raw)
                else:
                    values[f.name] = raw
            except ValueError as e:
                raise ConfigurationException("Invalid environment value", name=f.name, value=raw) from e
        # Legacy variable name used by older deployments
        if "PRIVATE_KEY" not in values and os.getenv("SOLANA_PRIVATE_KEY"):
            values["PRIVATE_KEY"] = os.getenv("SOLANA_PRIVATE_KEY", "")
        return cls(**values)

    def validate(self) -> "Settings":
        if self.ADMISSION_MODE not in ADMISSION_MODES:
            raise ConfigurationException("Unknown admission mode", mode=self.ADMISSION_MODE)
        if not 0 <= self.PROTECTION_PERCENT <= 50:
            raise ConfigurationException("Protection percent must be within 0..50", value=self.PROTECTION_PERCENT)
        if self.PRICE_BATCH_SIZE < 1:
            raise ConfigurationException("Price batch size must be >= 1", value=self.PRICE_BATCH_SIZE)
        if self.TRADE_AMOUNT_SOL <= 0:
            raise ConfigurationException("Trade amount must be positive", value=self.TRADE_AMOUNT_SOL)
        if self.MAX_POSITIONS < 1:
            raise ConfigurationException("Max positions must be >= 1", value=self.MAX_POSITIONS)
        if self.STOP_LOSS_PCT <= 0 or self.TAKE_PROFIT_PCT <= 0:
            raise ConfigurationException(
                "Take profit and stop loss must be positive",
                take_profit=self.TAKE_PROFIT_PCT,
                stop_loss=self.STOP_LOSS_PCT,
            )
        if not self.PAPER_TRADING_MODE and not self.PRIVATE_KEY:
            raise ConfigurationException("PRIVATE_KEY is required for live trading")
        return self

    @property
    def admission_mode(self) -> AdmissionMode:
        return AdmissionMode(self.ADMISSION_MODE)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env().validate()


__all__ = [
    "ADMISSION_MODES",
    "AdmissionBounds",
    "AdmissionConfig",
    "AdmissionMode",
    "Settings",
    "get_settings",
    "load_admission_config",
]
