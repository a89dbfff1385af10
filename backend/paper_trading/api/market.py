from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from ..schemas.market import (
    ExpiryListResponse,
    ExpiryRecord,
    ExpiryScheduleResponse,
    ExpiryStatusResponse,
    HistoricalBarRecord,
    HistoryResponse,
    MarketConfigResponse,
    MarketStatusResponse,
    NextExpiryResponse,
    OptionChainResponse,
    OptionHistoryRecord,
    OptionHistoryResponse,
    QuoteRecord,
    RangeResponse,
    StrikeRecord,
    StrikesResponse,
)
from ..services.errors import PaperTradingError, ValidationError
from ..services.instruments import build_instrument, parse_expiry
from ..services.market_clock import ExpiryWindow, MarketClock
from ..services.market_data_client import HISTORICAL_INTERVALS
from ..services.market_recorder import LIVE_OPTION_INTERVAL, MarketDataRecorder
from ..services.quote_service import QuoteService
from .deps import get_db_session, get_market_clock, get_quote_service
from .paper_trade import raise_http_error

logger = logging.getLogger(__name__)

nifty_router = APIRouter(prefix="/nifty", tags=["market-data"])
options_router = APIRouter(prefix="/options", tags=["market-data"])
expiry_router = APIRouter(prefix="/expiry", tags=["expiry"])
config_router = APIRouter(prefix="/market", tags=["market-data"])

OPTION_HISTORY_INTERVALS = (LIVE_OPTION_INTERVAL, *HISTORICAL_INTERVALS)


def _parse_day(value: str, field: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {field} format. Use YYYY-MM-DD") from None


def _expiry_record(expiry: date, today: date) -> ExpiryRecord:
    return ExpiryRecord(
        date=expiry,
        formatted=expiry.strftime("%A, %d %B %Y"),
        days_to_expiry=max((expiry - today).days, 0),
        is_today=expiry == today,
        is_expired=expiry < today,
        week=(expiry.day - 1) // 7 + 1,
    )


@nifty_router.get("/live", response_model=QuoteRecord)
async def get_live_index(quotes: QuoteService = Depends(get_quote_service)):
    try:
        return await quotes.get_index_quote()
    except PaperTradingError as exc:
        raise_http_error(exc)


@nifty_router.get("/history", response_model=HistoryResponse)
async def get_index_history(
    date_value: str = Query(..., alias="date"),
    interval: str = Query("day"),
    quotes: QuoteService = Depends(get_quote_service),
    session: AsyncSession = Depends(get_db_session),
):
    day = _parse_day(date_value, "date")
    if interval not in HISTORICAL_INTERVALS:
        raise HTTPException(status_code=400, detail=f"Invalid interval. Valid values: {', '.join(HISTORICAL_INTERVALS)}")

    recorder = MarketDataRecorder(session)
    stored = await recorder.load_history(day, interval)
    if stored:
        return HistoryResponse(
            date=day,
            interval=interval,
            source="database",
            count=len(stored),
            data=[HistoricalBarRecord.model_validate(row) for row in stored],
        )

    try:
        bars = await quotes.get_historical_quotes(day, interval)
    except PaperTradingError as exc:
        raise_http_error(exc)
    if bars:
        await recorder.record_bars(bars)
    return HistoryResponse(
        date=day,
        interval=interval,
        source="api",
        count=len(bars),
        data=[HistoricalBarRecord.model_validate(bar) for bar in bars],
    )


@nifty_router.get("/range", response_model=RangeResponse)
async def get_index_range(
    start_date: str = Query(...),
    end_date: str = Query(...),
    interval: str = Query("day"),
    session: AsyncSession = Depends(get_db_session),
):
    start = _parse_day(start_date, "start_date")
    end = _parse_day(end_date, "end_date")
    if start > end:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")
    rows = await MarketDataRecorder(session).load_range(start, end, interval)
    return RangeResponse(
        start_date=start,
        end_date=end,
        interval=interval,
        count=len(rows),
        data=[HistoricalBarRecord.model_validate(row) for row in rows],
    )


@nifty_router.get("/status", response_model=MarketStatusResponse)
async def get_market_status(
    clock: MarketClock = Depends(get_market_clock),
    settings: Settings = Depends(get_settings),
):
    snapshot = clock.status()
    return {
        **snapshot,
        "status": snapshot["status"].value,
        "expiry_window": snapshot["expiry_window"].value,
        "timezone": settings.exchange_timezone_name,
    }


@options_router.get("/live", response_model=QuoteRecord)
async def get_live_option(
    strike: str = Query(...),
    type: str = Query(...),
    expiry: str = Query(...),
    quotes: QuoteService = Depends(get_quote_service),
    settings: Settings = Depends(get_settings),
):
    try:
        instrument = build_instrument(
            symbol=settings.index_symbol,
            option_type=type,
            strike=strike,
            expiry=expiry,
            strike_step=settings.strike_step,
        )
        if not instrument.is_option:
            raise ValidationError("type must be either CE or PE")
        return await quotes.get_option_quote(instrument)
    except PaperTradingError as exc:
        raise_http_error(exc)


@options_router.get("/chain", response_model=OptionChainResponse)
async def get_option_chain(
    expiry: Optional[str] = Query(None),
    quotes: QuoteService = Depends(get_quote_service),
):
    try:
        wanted = parse_expiry(expiry) if expiry else None
        chain = await quotes.get_option_chain()
    except PaperTradingError as exc:
        raise_http_error(exc)
    if wanted is not None:
        chain = [quote for quote in chain if quote.expiry == wanted]
    chain = sorted(chain, key=lambda quote: (quote.expiry or date.min, quote.strike or 0, quote.option_type))
    return OptionChainResponse(
        expiry=wanted,
        count=len(chain),
        data=[QuoteRecord.model_validate(quote) for quote in chain],
    )


@options_router.get("/history", response_model=OptionHistoryResponse)
async def get_option_history(
    strike: str = Query(...),
    type: str = Query(...),
    expiry: str = Query(...),
    date_value: str = Query(..., alias="date"),
    interval: str = Query(LIVE_OPTION_INTERVAL),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
):
    day = _parse_day(date_value, "date")
    if interval not in OPTION_HISTORY_INTERVALS:
        raise HTTPException(
            status_code=400, detail=f"Invalid interval. Valid values: {', '.join(OPTION_HISTORY_INTERVALS)}"
        )
    try:
        instrument = build_instrument(
            symbol=settings.index_symbol,
            option_type=type,
            strike=strike,
            expiry=expiry,
            strike_step=settings.strike_step,
        )
        if not instrument.is_option:
            raise ValidationError("type must be either CE or PE")
    except PaperTradingError as exc:
        raise_http_error(exc)

    rows = await MarketDataRecorder(session, settings).load_option_history(
        instrument.strike, instrument.option_type, instrument.expiry, day, interval
    )
    return OptionHistoryResponse(
        instrument_key=instrument.key,
        strike=instrument.strike,
        option_type=instrument.option_type,
        expiry=instrument.expiry,
        date=day,
        interval=interval,
        count=len(rows),
        data=[OptionHistoryRecord.model_validate(row) for row in rows],
    )


@options_router.get("/expiries", response_model=ExpiryListResponse)
async def get_available_expiries(
    count: int = Query(6, ge=1, le=26),
    clock: MarketClock = Depends(get_market_clock),
):
    today = clock.today()
    expiries = [_expiry_record(expiry, today) for expiry in clock.upcoming_expiries(count)]
    return ExpiryListResponse(count=len(expiries), data=expiries)


@options_router.get("/strikes", response_model=StrikesResponse)
async def get_available_strikes(
    range_: int = Query(10, alias="range", ge=1, le=50),
    quotes: QuoteService = Depends(get_quote_service),
    settings: Settings = Depends(get_settings),
):
    try:
        spot = (await quotes.get_index_quote()).ltp
    except PaperTradingError as exc:
        raise_http_error(exc)
    step = settings.strike_step
    atm = int(spot // step) * step
    strikes = []
    for offset in range(-range_, range_ + 1):
        strike = atm + offset * step
        if strike <= 0:
            continue
        moneyness = "ATM" if strike == atm else ("ITM" if strike < atm else "OTM")
        strikes.append(StrikeRecord(strike=strike, moneyness=moneyness, distance=round(abs(strike - spot), 2)))
    return StrikesResponse(current_price=spot, atm=atm, strikes=strikes)


@expiry_router.get("/status", response_model=ExpiryStatusResponse)
async def get_expiry_status(
    clock: MarketClock = Depends(get_market_clock),
    settings: Settings = Depends(get_settings),
):
    snapshot = clock.status()
    window = snapshot["expiry_window"]
    return ExpiryStatusResponse(
        is_expiry_day=snapshot["is_expiry_day"],
        is_expiry_session=window is ExpiryWindow.EXPIRY_SESSION,
        is_pre_expiry_session=window is ExpiryWindow.PRE_EXPIRY,
        status=window.value,
        message=snapshot["expiry_message"],
        exchange_time=snapshot["exchange_time"],
        timezone=settings.exchange_timezone_name,
    )


@expiry_router.get("/next", response_model=NextExpiryResponse)
async def get_next_expiry(clock: MarketClock = Depends(get_market_clock)):
    today = clock.today()
    current, following = clock.upcoming_expiries(2)
    return NextExpiryResponse(current=_expiry_record(current, today), next=_expiry_record(following, today))


@expiry_router.get("/schedule", response_model=ExpiryScheduleResponse)
async def get_expiry_schedule(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    month: Optional[int] = Query(None, ge=1, le=12),
    clock: MarketClock = Depends(get_market_clock),
):
    today = clock.today()
    target_year = year or today.year
    target_month = month or today.month
    expiries = [_expiry_record(expiry, today) for expiry in clock.expiries_in_month(target_year, target_month)]
    current = next((record for record in expiries if not record.is_expired), expiries[-1] if expiries else None)
    return ExpiryScheduleResponse(
        year=target_year,
        month=target_month,
        expiries=expiries,
        current_expiry=current,
        total_expiries=len(expiries),
    )


@config_router.get("/config", response_model=MarketConfigResponse)
async def get_market_config(settings: Settings = Depends(get_settings)):
    return MarketConfigResponse(
        index_symbol=settings.index_symbol,
        lot_size=settings.lot_size,
        strike_step=settings.strike_step,
        initial_balance=settings.initial_balance,
        max_order_lots=settings.max_order_lots,
        weekly_expiry_weekday=settings.weekly_expiry_weekday,
        exchange_timezone=settings.exchange_timezone_name,
        historical_intervals=list(HISTORICAL_INTERVALS),
    )
