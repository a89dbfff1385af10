from __future__ import annotations

from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict


class QuoteRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    symbol: str
    instrument_key: str
    ltp: float
    open: float
    high: float
    low: float
    close: float
    volume: int
    change: float
    change_percent: float
    open_interest: Optional[int] = None
    implied_volatility: Optional[float] = None
    strike: Optional[int] = None
    option_type: str
    expiry: Optional[date] = None
    timestamp: datetime


class HistoricalBarRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int
    interval: str


class HistoryResponse(BaseModel):
    date: date
    interval: str
    source: Literal["database", "api"]
    count: int
    data: List[HistoricalBarRecord]


class RangeResponse(BaseModel):
    start_date: date
    end_date: date
    interval: str
    count: int
    data: List[HistoricalBarRecord]


class OptionChainResponse(BaseModel):
    expiry: Optional[date] = None
    count: int
    data: List[QuoteRecord]


class OptionHistoryRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    timestamp: datetime
    ltp: float
    open: float
    high: float
    low: float
    close: float
    volume: int
    open_interest: Optional[int] = None
    implied_volatility: Optional[float] = None


class OptionHistoryResponse(BaseModel):
    instrument_key: str
    strike: int
    option_type: Literal["CE", "PE"]
    expiry: date
    date: date
    interval: str
    count: int
    data: List[OptionHistoryRecord]


class ExpiryRecord(BaseModel):
    date: date
    formatted: str
    days_to_expiry: int
    is_today: bool = False
    is_expired: bool = False
    week: Optional[int] = None


class ExpiryListResponse(BaseModel):
    count: int
    data: List[ExpiryRecord]


class StrikeRecord(BaseModel):
    strike: int
    moneyness: Literal["ITM", "ATM", "OTM"]
    distance: float


class StrikesResponse(BaseModel):
    current_price: float
    atm: int
    strikes: List[StrikeRecord]


class NextEventRecord(BaseModel):
    event: str
    next_event_at: datetime
    seconds_until: float
    formatted: str


class MarketStatusResponse(BaseModel):
    status: Literal["CLOSED", "PRE_MARKET", "OPEN", "POST_MARKET"]
    reason: str
    expiry_window: Literal["NORMAL", "PRE_EXPIRY", "EXPIRY_SESSION"]
    expiry_message: str
    is_expiry_day: bool
    exchange_time: datetime
    timezone: str
    next_event: Optional[NextEventRecord] = None


class ExpiryStatusResponse(BaseModel):
    is_expiry_day: bool
    is_expiry_session: bool
    is_pre_expiry_session: bool
    status: Literal["NORMAL", "PRE_EXPIRY", "EXPIRY_SESSION"]
    message: str
    exchange_time: datetime
    timezone: str


class NextExpiryResponse(BaseModel):
    current: ExpiryRecord
    next: ExpiryRecord


class ExpiryScheduleResponse(BaseModel):
    year: int
    month: int
    expiries: List[ExpiryRecord]
    current_expiry: Optional[ExpiryRecord] = None
    total_expiries: int


class MarketConfigResponse(BaseModel):
    index_symbol: str
    lot_size: int
    strike_step: int
    initial_balance: float
    max_order_lots: int
    weekly_expiry_weekday: int
    exchange_timezone: str
    historical_intervals: List[str]
