from .market import (
    ExpiryRecord,
    HistoricalBarRecord,
    HistoryResponse,
    MarketConfigResponse,
    MarketStatusResponse,
    OptionChainResponse,
    QuoteRecord,
    StrikesResponse,
)
from .paper_trade import (
    DetailedPnLResponse,
    OrderRecord,
    PaginatedOrders,
    PlaceOrderRequest,
    PlaceOrderResponse,
    PortfolioResponse,
    PositionRecord,
    ResetPortfolioRequest,
)

__all__ = [
    "ExpiryRecord",
    "HistoricalBarRecord",
    "HistoryResponse",
    "MarketConfigResponse",
    "MarketStatusResponse",
    "OptionChainResponse",
    "QuoteRecord",
    "StrikesResponse",
    "DetailedPnLResponse",
    "OrderRecord",
    "PaginatedOrders",
    "PlaceOrderRequest",
    "PlaceOrderResponse",
    "PortfolioResponse",
    "PositionRecord",
    "ResetPortfolioRequest",
]
