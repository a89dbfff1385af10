from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class PlaceOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field("default", validation_alias=AliasChoices("session_id", "sessionId"))
    symbol: str = Field("NIFTY", description="Underlying symbol")
    type: Optional[str] = Field(None, description="CE, PE or INDEX; defaults to INDEX")
    strike: Optional[float | str] = None
    expiry: Optional[str] = Field(None, description="Expiry date, YYYY-MM-DD")
    side: str = Field(..., description="BUY or SELL")
    quantity: float = Field(..., description="Number of lots")
    order_type: str = Field("MARKET", validation_alias=AliasChoices("order_type", "orderType"))
    limit_price: Optional[float] = Field(None, validation_alias=AliasChoices("limit_price", "limitPrice"))
    order_id: Optional[str] = Field(
        None,
        max_length=64,
        validation_alias=AliasChoices("order_id", "orderId"),
        description="Caller-supplied id; resubmitting it returns the original fill",
    )
    tags: List[str] = Field(default_factory=list)

    @field_validator("side", "order_type")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.strip().upper()


class ResetPortfolioRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field("default", validation_alias=AliasChoices("session_id", "sessionId"))


class OrderRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    session_id: str
    symbol: str
    option_type: str
    strike: Optional[int] = None
    expiry: Optional[date] = None
    side: Literal["BUY", "SELL"]
    quantity: int
    order_kind: str
    limit_price: Optional[float] = None
    quote_price: Optional[float] = None
    execution_price: float
    lot_size: int
    total_value: float
    status: str
    tags: Optional[List[str]] = None
    created_at: datetime


class PaginatedOrders(BaseModel):
    items: List[OrderRecord]
    total: int
    limit: int
    offset: int
    has_more: bool


class PositionRecord(BaseModel):
    instrument_key: str
    symbol: str
    type: str
    strike: Optional[int] = None
    expiry: Optional[str] = None
    quantity: int
    avg_price: float
    current_price: Optional[float] = None
    lot_size: int
    pnl: float
    pnl_percent: float
    opened_at: Optional[str] = None
    greeks: Optional[Dict[str, float]] = None


class PortfolioSummary(BaseModel):
    total_positions: int
    profitable_positions: int
    losing_positions: int
    max_profit: float
    max_loss: float


class PortfolioResponse(BaseModel):
    session_id: str
    cash_balance: float
    total_value: float
    total_pnl: float
    day_pnl: float
    lot_size: int
    positions: List[PositionRecord]
    summary: PortfolioSummary
    last_updated: Optional[datetime] = None


class PlaceOrderResponse(BaseModel):
    order: OrderRecord
    cash_balance: float
    total_positions: int


class RiskMetricsRecord(BaseModel):
    total_exposure: float
    leverage_ratio: float
    concentration_risk: float
    max_position_size: float
    diversification_score: float
    risk_level: Literal["LOW", "MEDIUM", "HIGH"]


class DetailedPnLResponse(BaseModel):
    portfolio: Dict[str, Any]
    pnl_summary: Dict[str, Any]
    risk_metrics: RiskMetricsRecord
    positions: List[PositionRecord]
    market_data: Dict[str, Any]
    session_stats: Dict[str, int | float]
    performance: Dict[str, float]
