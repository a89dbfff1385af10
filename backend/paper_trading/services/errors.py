from __future__ import annotations


class PaperTradingError(Exception):
    """Base class for errors raised by the paper trading core."""


class ValidationError(PaperTradingError, ValueError):
    """Raised when order or instrument input is malformed. Never mutates state."""


class InsufficientBalanceError(PaperTradingError):
    """Raised when a BUY fill would cost more than the available cash."""

    def __init__(self, available: float, required: float):
        super().__init__(
            f"Insufficient balance: {required:.2f} required, {available:.2f} available"
        )
        self.available = available
        self.required = required


class QuoteUnavailableError(PaperTradingError):
    """Raised when neither a fresh nor a cached quote exists for a key."""

    def __init__(self, key: str, reason: str | None = None):
        message = f"Quote unavailable for {key}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.key = key
        self.reason = reason


class NotFoundError(PaperTradingError):
    """Raised when a portfolio or order that must exist is absent."""
