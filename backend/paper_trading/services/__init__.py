from .errors import (
    InsufficientBalanceError,
    NotFoundError,
    PaperTradingError,
    QuoteUnavailableError,
    ValidationError,
)
from .instruments import Instrument, build_instrument
from .market_clock import ExpiryWindow, MarketClock, MarketPhase
from .quote_cache import QuoteCache

__all__ = [
    "InsufficientBalanceError",
    "NotFoundError",
    "PaperTradingError",
    "QuoteUnavailableError",
    "ValidationError",
    "Instrument",
    "build_instrument",
    "ExpiryWindow",
    "MarketClock",
    "MarketPhase",
    "QuoteCache",
]
