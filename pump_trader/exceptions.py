"""
Custom exception classes for the trading engine.

Provides typed exceptions for better error handling and debugging.
"""

class BotException(Exception):
    """Base exception for all bot-related errors."""
    
    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context
    
    def __str__(self):
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{ctx_str}]"
        return self.message


class DataSourceException(BotException):
    """Raised when a market data request fails. Always transient."""
    pass


class RateLimitedError(DataSourceException):
    """Upstream answered 429."""
    pass


class ForbiddenError(DataSourceException):
    """Upstream answered 403."""
    pass


class NotFoundError(DataSourceException):
    """Requested account does not exist (yet)."""
    pass


class DataSourceTimeout(DataSourceException):
    """Request did not complete within its timeout."""
    pass


class ExecutionException(BotException):
    """Raised when building, submitting or confirming an order fails."""
    pass


class ConsistencyException(BotException):
    """Raised when on-chain state disagrees with a tracked position."""
    pass


class NoBalanceError(ConsistencyException):
    """Wallet holds no tokens for a position that expects some."""
    pass


class ValidationException(BotException):
    """Raised when a requested operation has invalid arguments."""
    pass


class ConfigurationException(BotException):
    """Raised when configuration is invalid."""
    pass


class WalletException(BotException):
    """Raised when wallet operations fail."""
    pass


class StateException(BotException):
    """Raised when state management operations fail."""
    pass
