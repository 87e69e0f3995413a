"""Shared exception types for the monitoring core."""

from typing import List, Optional


class ConfigurationError(RuntimeError):
    """Raised when configuration is missing or invalid. Fatal at startup."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [])


class ProviderError(RuntimeError):
    """Raised when an upstream price or sentiment source cannot answer for a symbol."""

    def __init__(self, symbol: str, operation: str, cause: str, original: Optional[Exception] = None):
        super().__init__(f"{operation} failed for {symbol}: {cause}")
        self.symbol = symbol
        self.operation = operation
        self.cause = cause
        self.original = original


class CacheError(RuntimeError):
    """Raised when the cache backend fails. Never to be treated as a cache miss."""

    def __init__(self, operation: str, key: str, original: Optional[Exception] = None):
        super().__init__(f"cache {operation} failed for {key}: {original}")
        self.operation = operation
        self.key = key
        self.original = original


class LedgerError(RuntimeError):
    """Raised when a trade record cannot be appended to the ledger."""

    def __init__(self, symbol: str, original: Optional[Exception] = None):
        super().__init__(f"ledger append failed for {symbol}: {original}")
        self.symbol = symbol
        self.original = original


class NotificationError(RuntimeError):
    """Raised by a notification transport when a message cannot be delivered."""

    def __init__(self, channel: str, cause: str):
        super().__init__(f"{channel} delivery failed: {cause}")
        self.channel = channel
        self.cause = cause


class CycleCancelled(RuntimeError):
    """Raised when shutdown is requested while a cycle is still fetching data."""
