"""
Circuit breaking for market data requests.

Two layers:
- per-mint cooldown after a rate-limit or forbidden answer for that mint
- a global breaker that opens when errors spike across all mints

While the breaker is open, callers skip primary fetches and use fallback data.
"""
from __future__ import annotations

import logging
import time
from collections import deque

from pump_trader.config import Settings
from pump_trader.exceptions import DataSourceException, ForbiddenError, RateLimitedError

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """
    Sliding-window circuit breaker.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures inside the window, requests blocked
    - HALF_OPEN: Open time elapsed, one trial request allowed
    """

    def __init__(
        self,
        error_threshold: int = 10,
        window_sec: float = 30.0,
        open_sec: float = 20.0,
        name: str = "default",
    ):
        self.error_threshold = error_threshold
        self.window_sec = window_sec
        self.open_sec = open_sec
        self.name = name

        self.failures: deque[float] = deque()
        self.opened_at = 0.0
        self.state = "CLOSED"

    def record_success(self, now: float | None = None) -> None:
        if self.state != "CLOSED":
            logger.info("Circuit breaker '%s' CLOSED", self.name)
        self.state = "CLOSED"
        self.failures.clear()

    def record_failure(self, now: float | None = None) -> None:
        now = time.time() if now is None else now
        self.failures.append(now)
        self._trim(now)

        if self.state == "HALF_OPEN" or (self.state == "CLOSED" and len(self.failures) >= self.error_threshold):
            self.state = "OPEN"
            self.opened_at = now
            logger.warning(
                "⚡ Circuit breaker '%s' OPENED after %d failures in %.0fs",
                self.name,
                len(self.failures),
                self.window_sec,
            )

    def can_execute(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        if self.state == "CLOSED":
            return True
        if self.state == "OPEN":
            if now - self.opened_at >= self.open_sec:
                self.state = "HALF_OPEN"
                logger.info("Circuit breaker '%s' entering HALF_OPEN state", self.name)
                return True
            return False
        return True

    def _trim(self, now: float) -> None:
        cutoff = now - self.window_sec
        while self.failures and self.failures[0] < cutoff:
            self.failures.popleft()

    def get_status(self) -> dict:
        return {
            "name": self.name,
            "state": self.state,
            "failures": len(self.failures),
            "threshold": self.error_threshold,
        }


class DataSourceGuard:
    """Per-mint cooldowns plus a global breaker for one data source."""

    def __init__(self, settings: Settings, name: str = "RPC") -> None:
        self.settings = settings
        self.breaker = CircuitBreaker(
            error_threshold=settings.BREAKER_ERROR_THRESHOLD,
            window_sec=settings.BREAKER_WINDOW_SEC,
            open_sec=settings.BREAKER_OPEN_SEC,
            name=name,
        )
        self._cooldown_until: dict[str, float] = {}

    def allow(self, mint: str, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        until = self._cooldown_until.get(mint)
        if until is not None:
            if now < until:
                return False
            del self._cooldown_until[mint]
        return self.breaker.can_execute(now)

    def record_error(self, mint: str, error: DataSourceException, now: float | None = None) -> None:
        now = time.time() if now is None else now
        self._prune(now)
        if isinstance(error, RateLimitedError):
            self._cooldown_until[mint] = now + self.settings.RATE_LIMIT_COOLDOWN_SEC
        elif isinstance(error, ForbiddenError):
            self._cooldown_until[mint] = now + self.settings.FORBIDDEN_COOLDOWN_SEC
        self.breaker.record_failure(now)

    def record_success(self, now: float | None = None) -> None:
        self.breaker.record_success(now)

    def cooling_mints(self, now: float | None = None) -> list[str]:
        now = time.time() if now is None else now
        return [m for m, until in self._cooldown_until.items() if until > now]

    def _prune(self, now: float) -> None:
        # Mints that are never queried again would otherwise stay forever
        expired = [m for m, until in self._cooldown_until.items() if until <= now]
        for mint in expired:
            del self._cooldown_until[mint]
