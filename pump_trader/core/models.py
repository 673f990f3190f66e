from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from pump_trader.constants import PRICE_SCALE


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    SELLING = "SELLING"
    CLOSED = "CLOSED"


class RiskTier(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ExitReason(str, Enum):
    TIME_EXIT = "TIME_EXIT"
    MOMENTUM = "MOMENTUM"
    RUG = "RUG"
    PROFIT_PROTECT = "PROFIT_PROTECT"
    TRAILING_STOP = "TRAILING_STOP"
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    TAKE_PROFIT_2 = "TAKE_PROFIT_2"
    STALE_QUOTES = "STALE_QUOTES"
    NO_BALANCE = "NO_BALANCE"
    MANUAL = "MANUAL"


# Staged take-profit tier markers and the fraction of the original size
# that remains once each tier has been sold.
TIER_TP1 = "tp50"
TIER_TP2 = "tp80"
TIER_REMAINING = {TIER_TP1: 0.5, TIER_TP2: 0.2}


@dataclass(frozen=True)
class Candidate:
    mint: str
    symbol: str
    sol_reserve: float
    token_reserve: float
    first_seen_at: float
    name: str = ""
    uri: str = ""
    creator: str = ""
    # Creator's own buy carried in the creation message
    initial_buy_sol: float = 0.0

    def age_sec(self, now: float) -> float:
        return max(0.0, now - self.first_seen_at)


@dataclass(frozen=True)
class ReserveSnapshot:
    sol_reserve: float
    token_reserve: float
    fetched_at: float

    @property
    def price(self) -> float:
        if self.token_reserve <= 0:
            return 0.0
        return self.sol_reserve / self.token_reserve * PRICE_SCALE

    @property
    def liquidity(self) -> float:
        return self.sol_reserve


@dataclass
class TokenInsights:
    """On-chain signals beyond the reserves. None means the source had no answer."""
    freeze_authority_active: bool | None = None
    mint_authority_active: bool | None = None
    holder_count: int | None = None
    deployer_pct: float | None = None
    top10_pct: float | None = None
    volume_sol: float | None = None
    buy_ratio: float | None = None
    has_metadata: bool = False


@dataclass(frozen=True)
class ExitPlan:
    take_profit_pct: float
    stop_loss_pct: float
    max_hold_seconds: float
    min_hold_seconds: float
    take_profit_pct2: float | None = None
    trailing_stop_enabled: bool = False
    trailing_stop_pct: float | None = None
    momentum_exit_enabled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExitPlan":
        return cls(**data)


@dataclass
class AdmissionVerdict:
    score: float
    risk_tier: RiskTier
    passed: bool
    reject_reasons: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    strengths: list[str] = field(default_factory=list)
    progress: float = 0.0
    degraded: bool = False


@dataclass(frozen=True)
class ExitAction:
    """Sell `percent` of the tokens currently held."""
    percent: float
    reason: ExitReason
    tier: str | None = None

    @property
    def is_full(self) -> bool:
        return self.percent >= 99.0


@dataclass
class Position:
    mint: str
    symbol: str
    entry_price: float
    token_amount: float
    sol_committed: float
    opened_at: float
    exit_plan: ExitPlan
    status: PositionStatus = PositionStatus.OPEN
    current_price: float = 0.0
    peak_price: float = 0.0
    last_quote_at: float = 0.0
    last_liquidity: float = 0.0
    partial_exits_done: set[str] = field(default_factory=set)
    realized_pnl_percent: float | None = None

    original_token_amount: float = 0.0
    original_sol_committed: float = 0.0
    last_price_change_at: float = 0.0
    rug_detected: bool = False
    zero_balance_since: float | None = None
    realized_sol: float = 0.0
    admission_score: float = 0.0
    closed_at: float | None = None
    exit_reason: str | None = None

    def __post_init__(self) -> None:
        if not self.original_token_amount:
            self.original_token_amount = self.token_amount
        if not self.original_sol_committed:
            self.original_sol_committed = self.sol_committed
        if self.entry_price > 0:
            if not self.current_price:
                self.current_price = self.entry_price
            self.peak_price = max(self.peak_price, self.entry_price)

    @property
    def is_active(self) -> bool:
        return self.status in (PositionStatus.OPEN, PositionStatus.SELLING)

    @property
    def pnl_percent(self) -> float:
        if self.entry_price <= 0:
            return 0.0
        return (self.current_price - self.entry_price) / self.entry_price * 100.0

    @property
    def peak_gain_percent(self) -> float:
        if self.entry_price <= 0:
            return 0.0
        return (self.peak_price - self.entry_price) / self.entry_price * 100.0

    @property
    def drawdown_percent(self) -> float:
        if self.peak_price <= 0:
            return 0.0
        return (self.peak_price - self.current_price) / self.peak_price * 100.0

    @property
    def remaining_fraction(self) -> float:
        if self.original_token_amount <= 0:
            return 0.0
        return self.token_amount / self.original_token_amount

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["partial_exits_done"] = sorted(self.partial_exits_done)
        data["exit_plan"] = self.exit_plan.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Position":
        data = dict(data)
        data["status"] = PositionStatus(data.get("status", PositionStatus.OPEN.value))
        data["partial_exits_done"] = set(data.get("partial_exits_done", []))
        data["exit_plan"] = ExitPlan.from_dict(data["exit_plan"])
        return cls(**data)


@dataclass
class PortfolioStats:
    realized_pnl: float = 0.0
    wins: int = 0
    losses: int = 0

    @property
    def win_rate(self) -> float:
        total = self.wins + self.losses
        return self.wins / total * 100.0 if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PortfolioStats":
        return cls(**data)


@dataclass
class VaultState:
    protected_balance: float = 0.0
    protection_enabled: bool = True
    protection_percent: float = 20.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VaultState":
        return cls(**data)


@dataclass
class TradeFill:
    mint: str
    side: str
    sol_amount: float
    token_amount: float
    price: float
    ts: float
    signature: str | None = None
    reason: str = ""
