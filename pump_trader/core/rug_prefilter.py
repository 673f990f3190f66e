"""Cheap rug pre-filter run on every new token before any RPC call."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from pump_trader.config import AdmissionMode, Settings
from pump_trader.core.bonding_curve import liquidity_growth
from pump_trader.core.models import Candidate

SUSPICIOUS_SYMBOLS = frozenset({
    "real", "test", "token", "coin", "new", "copy", "fake", "scam", "rug",
    "honeypot", "pump", "dump", "official", "verified", "legit", "100x",
    "1000x", "safe", "trust",
})

_NON_ALNUM = re.compile(r"[^a-z0-9]")


@dataclass
class PrefilterResult:
    passed: bool
    reason: str | None = None
    confidence: int = 0
    warnings: list[str] = field(default_factory=list)


class RugPreFilter:
    """Rejects obvious scams from the creation event alone.

    Keeps a short memory of recently seen symbols to catch copycat launches.
    In lenient mode most lexical and stagnation checks only warn.
    """

    STAGNANT_GRACE_SEC = 5.0
    STAGNANT_EARLY_GROWTH = 0.1
    STAGNANT_LATE_AFTER_SEC = 30.0
    STAGNANT_LATE_GROWTH = 0.5
    STAGNANT_WINDOW_SEC = 120.0

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.logger = logging.getLogger("pump_trader.prefilter")
        # symbol -> (seen_at, mint)
        self._recent_symbols: dict[str, tuple[float, str]] = {}

    def check(self, candidate: Candidate, mode: AdmissionMode, now: float) -> PrefilterResult:
        lenient = mode == AdmissionMode.LENIENT
        warnings: list[str] = []
        symbol = (candidate.symbol or "").strip().lower()
        age = candidate.age_sec(now)
        liquidity = candidate.sol_reserve
        growth = liquidity_growth(liquidity)

        self._prune(now)

        if symbol:
            reject = self._check_copycat(symbol, candidate, now, lenient, warnings)
            self._recent_symbols[symbol] = (now, candidate.mint)
            if reject:
                return reject

            if symbol in SUSPICIOUS_SYMBOLS:
                if not lenient:
                    return PrefilterResult(False, f"SUSPICIOUS_NAME: {candidate.symbol}", 90, warnings)
                warnings.append(f"Suspicious name pattern: {candidate.symbol}")

        if age < self.STAGNANT_WINDOW_SEC:
            if age > self.STAGNANT_GRACE_SEC and growth < self.STAGNANT_EARLY_GROWTH:
                if not lenient:
                    return PrefilterResult(False, f"NO_GROWTH: {age:.0f}s old with {growth:.2f} SOL growth", 85, warnings)
                warnings.append(f"Very new token ({age:.0f}s) with no liquidity growth")
            elif age > self.STAGNANT_LATE_AFTER_SEC and growth < self.STAGNANT_LATE_GROWTH:
                if not lenient:
                    return PrefilterResult(False, f"STAGNANT: {age:.0f}s old with {growth:.2f} SOL growth", 85, warnings)
                warnings.append(f"Stagnant: {growth:.2f} SOL growth in {age:.0f}s")

        if growth < self.settings.PREFILTER_CRASH_SOL:
            return PrefilterResult(False, f"ALREADY_CRASHED: liquidity down {abs(growth):.2f} SOL", 100, warnings)

        if liquidity < self.settings.PREFILTER_MIN_LIQUIDITY_SOL:
            return PrefilterResult(False, f"HONEYPOT_RISK: liquidity {liquidity:.2f} SOL", 100, warnings)

        if age < self.settings.SNIPER_MAX_AGE_SEC and growth > self.settings.SNIPER_MAX_GROWTH_SOL:
            if not lenient:
                return PrefilterResult(False, f"SNIPER_TRAP: +{growth:.1f} SOL in {age:.0f}s", 80, warnings)
            warnings.append(f"Sniper pattern: +{growth:.1f} SOL in {age:.0f}s")

        if symbol:
            warnings.extend(self._name_quality(candidate.symbol, symbol, lenient))

        return PrefilterResult(True, None, 0, warnings)

    def _check_copycat(
        self,
        symbol: str,
        candidate: Candidate,
        now: float,
        lenient: bool,
        warnings: list[str],
    ) -> PrefilterResult | None:
        last = self._recent_symbols.get(symbol)
        if not last or last[1] == candidate.mint:
            return None
        since = now - last[0]
        if since >= self.settings.COPYCAT_WINDOW_SEC:
            return None
        if lenient and since >= self.settings.COPYCAT_WINDOW_LENIENT_SEC:
            warnings.append(f"Duplicate symbol {candidate.symbol} seen {since:.0f}s ago")
            return None
        return PrefilterResult(False, f"COPYCAT: {candidate.symbol} seen {since:.0f}s ago", 95, warnings)

    @staticmethod
    def _name_quality(raw: str, symbol: str, lenient: bool) -> list[str]:
        warnings = []
        if len(symbol) <= 2 and not lenient:
            warnings.append(f"Very short name: {raw}")
        if symbol.isdigit() and not lenient:
            warnings.append(f"Name is only numbers: {raw}")
        if len(symbol) > 3 and len(_NON_ALNUM.findall(symbol)) / len(symbol) > 0.5:
            warnings.append(f"Excessive special characters in name: {raw}")
        return warnings

    def _prune(self, now: float) -> None:
        window = self.settings.COPYCAT_WINDOW_SEC
        expired = [s for s, (ts, _) in self._recent_symbols.items() if now - ts > window]
        for s in expired:
            del self._recent_symbols[s]

    def clear(self) -> None:
        self._recent_symbols.clear()
