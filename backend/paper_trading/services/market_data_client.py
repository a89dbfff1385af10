from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List

import httpx

from ..core.config import get_settings
from .instruments import INDEX_TYPE, Instrument, parse_expiry
from .errors import ValidationError

logger = logging.getLogger("market_data.client")

UTC = timezone.utc

HISTORICAL_INTERVALS = {
    "1min": "1m",
    "5min": "5m",
    "15min": "15m",
    "30min": "30m",
    "1h": "1h",
    "day": "1d",
}

_BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
    "Accept": "application/json",
}


@dataclass(frozen=True)
class Quote:
    symbol: str
    instrument_key: str
    ltp: float
    open: float
    high: float
    low: float
    close: float
    volume: int
    timestamp: datetime
    change: float = 0.0
    change_percent: float = 0.0
    open_interest: int | None = None
    implied_volatility: float | None = None
    strike: int | None = None
    option_type: str = INDEX_TYPE
    expiry: date | None = None


@dataclass(frozen=True)
class HistoricalBar:
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int
    interval: str
    date: str


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if numeric != numeric:
        return default
    return numeric


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def parse_index_quote(payload: Dict[str, Any], symbol: str) -> Quote:
    if not isinstance(payload, dict) or payload.get("lastPrice") in (None, ""):
        raise ValueError("Index quote payload is missing lastPrice")
    return Quote(
        symbol=symbol,
        instrument_key=Instrument(symbol=symbol).key,
        ltp=_to_float(payload.get("lastPrice")),
        open=_to_float(payload.get("open")),
        high=_to_float(payload.get("dayHigh")),
        low=_to_float(payload.get("dayLow")),
        close=_to_float(payload.get("previousClose")),
        change=_to_float(payload.get("change")),
        change_percent=_to_float(payload.get("pChange")),
        volume=_to_int(payload.get("totalTradedVolume")),
        timestamp=datetime.now(UTC),
    )


def parse_option_chain(payload: Dict[str, Any], symbol: str) -> List[Quote]:
    """Flatten an NSE option-chain response into one quote per CE/PE leg."""

    if not isinstance(payload, dict):
        raise ValueError("Invalid option chain data format")
    container = payload.get("filtered") or payload.get("records") or payload
    rows = container.get("data") if isinstance(container, dict) else None
    if not isinstance(rows, list):
        raise ValueError("Invalid option chain data format")

    fetched_at = datetime.now(UTC)
    quotes: List[Quote] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        strike = _to_int(row.get("strikePrice"), default=-1)
        try:
            expiry = parse_expiry(row.get("expiryDate"))
        except ValidationError:
            continue
        if strike <= 0:
            continue
        for option_type in ("CE", "PE"):
            leg = row.get(option_type)
            if not isinstance(leg, dict):
                continue
            instrument = Instrument(symbol=symbol, option_type=option_type, strike=strike, expiry=expiry)
            quotes.append(
                Quote(
                    symbol=symbol,
                    instrument_key=instrument.key,
                    ltp=_to_float(leg.get("lastPrice")),
                    open=_to_float(leg.get("openPrice")),
                    high=_to_float(leg.get("dayHigh")),
                    low=_to_float(leg.get("dayLow")),
                    close=_to_float(leg.get("prevClose")),
                    change=_to_float(leg.get("change")),
                    change_percent=_to_float(leg.get("pChange")),
                    volume=_to_int(leg.get("totalTradedVolume")),
                    open_interest=_to_int(leg.get("openInterest")),
                    implied_volatility=_to_float(leg.get("impliedVolatility")),
                    timestamp=fetched_at,
                    strike=strike,
                    option_type=option_type,
                    expiry=expiry,
                )
            )
    return quotes


def parse_chart(payload: Dict[str, Any], day: date, interval: str) -> List[HistoricalBar]:
    results = (payload.get("chart") or {}).get("result") or []
    result = results[0] if results else None
    if not result or not result.get("timestamp"):
        raise ValueError("No data available for the specified date")
    quotes = (result.get("indicators") or {}).get("quote") or []
    ohlcv = quotes[0] if quotes else None
    if not ohlcv:
        raise ValueError("Invalid data format from Yahoo Finance")

    def _series(name: str, index: int) -> float:
        values = ohlcv.get(name) or []
        return _to_float(values[index]) if index < len(values) and values[index] is not None else 0.0

    bars: List[HistoricalBar] = []
    for index, stamp in enumerate(result["timestamp"]):
        open_price = _series("open", index)
        if open_price <= 0:
            continue
        bars.append(
            HistoricalBar(
                timestamp=datetime.fromtimestamp(int(stamp), tz=UTC),
                open=open_price,
                high=_series("high", index),
                low=_series("low", index),
                close=_series("close", index),
                volume=int(_series("volume", index)),
                interval=interval,
                date=day.isoformat(),
            )
        )
    return bars


class MarketDataClient:
    """Thin async wrapper around the NSE quote API and the Yahoo chart API."""

    def __init__(
        self,
        *,
        nse_base_url: str | None = None,
        yahoo_base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.nse_base_url = (nse_base_url or settings.nse_api_base_url).rstrip("/")
        self.yahoo_base_url = (yahoo_base_url or settings.yahoo_finance_base_url).rstrip("/")
        self.index_symbol = settings.index_symbol
        self.yahoo_symbol = settings.yahoo_index_symbol
        self._client = httpx.AsyncClient(
            timeout=timeout or settings.quote_fetch_timeout_seconds,
            headers=_BROWSER_HEADERS,
            transport=transport,
        )
        self._chain_timeout = settings.option_chain_timeout_seconds
        self._debug_verbose = settings.market_data_debug_verbose
        self._max_body_bytes = settings.market_data_max_body_bytes

    async def close(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        url: str,
        params: Dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        call_id = uuid.uuid4().hex
        log_extra: Dict[str, Any] = {
            "upstream_call_id": call_id,
            "upstream_method": method.upper(),
            "upstream_url": url,
        }
        if params:
            log_extra["upstream_params"] = self._truncate_text(json.dumps(params, default=str))

        logger.debug("Market data request start", extra=log_extra)
        start = time.perf_counter()
        try:
            kwargs: Dict[str, Any] = {"params": params}
            if timeout is not None:
                kwargs["timeout"] = timeout
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            latency_ms = (time.perf_counter() - start) * 1000
            logger.error(
                "Market data request failed",
                extra={
                    **log_extra,
                    "upstream_latency_ms": round(latency_ms, 2),
                    "upstream_status": exc.response.status_code,
                    "upstream_response_body": self._truncate_text(exc.response.text),
                },
            )
            raise
        except httpx.HTTPError as exc:
            latency_ms = (time.perf_counter() - start) * 1000
            logger.warning(
                "Market data request error",
                extra={**log_extra, "upstream_latency_ms": round(latency_ms, 2), "upstream_error": exc.__class__.__name__},
            )
            raise

        latency_ms = (time.perf_counter() - start) * 1000
        data = response.json()
        success_extra = {**log_extra, "upstream_latency_ms": round(latency_ms, 2), "upstream_status": response.status_code}
        if self._debug_verbose:
            success_extra["upstream_response_body"] = self._truncate_text(json.dumps(data, default=str))
        logger.debug("Market data request success", extra=success_extra)
        return data

    async def get_index_quote(self) -> Quote:
        payload = await self.request("GET", f"{self.nse_base_url}/quote/NIFTY 50")
        return parse_index_quote(payload, self.index_symbol)

    async def get_option_chain(self) -> List[Quote]:
        payload = await self.request("GET", f"{self.nse_base_url}/option-chain-nifty", timeout=self._chain_timeout)
        return parse_option_chain(payload, self.index_symbol)

    async def get_index_history(self, day: date, interval: str = "day") -> List[HistoricalBar]:
        if interval not in HISTORICAL_INTERVALS:
            raise ValidationError(f"Invalid interval. Valid values: {', '.join(HISTORICAL_INTERVALS)}")
        start = datetime.combine(day, datetime.min.time(), tzinfo=UTC)
        end = start + timedelta(days=1)
        payload = await self.request(
            "GET",
            f"{self.yahoo_base_url}/v8/finance/chart/{self.yahoo_symbol}",
            params={
                "period1": int(start.timestamp()),
                "period2": int(end.timestamp()),
                "interval": HISTORICAL_INTERVALS[interval],
                "includePrePost": "false",
            },
        )
        return parse_chart(payload, day, interval)

    def _truncate_text(self, value: str) -> str:
        if len(value) <= self._max_body_bytes:
            return value
        return value[: self._max_body_bytes] + "... [truncated]"
