from __future__ import annotations

import logging
from datetime import date
from typing import List

from ..core.config import Settings, get_settings
from .instruments import Instrument
from .errors import ValidationError
from .market_data_client import HISTORICAL_INTERVALS, HistoricalBar, MarketDataClient, Quote
from .quote_cache import QuoteCache

logger = logging.getLogger(__name__)

OPTION_CHAIN_KEY = "option_chain"


class QuoteService:
    """Live and historical market data served through a :class:`QuoteCache`."""

    def __init__(
        self,
        client: MarketDataClient | None = None,
        cache: QuoteCache | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.client = client or MarketDataClient()
        self.cache = cache or QuoteCache(default_timeout=self.settings.quote_fetch_timeout_seconds)

    async def close(self) -> None:
        await self.client.close()

    def clear_cache(self) -> None:
        self.cache.clear()

    async def get_index_quote(self) -> Quote:
        key = Instrument(symbol=self.settings.index_symbol).key
        return await self.cache.get(key, self.client.get_index_quote, self.settings.live_quote_ttl_seconds)

    async def get_option_chain(self) -> List[Quote]:
        return await self.cache.get(
            OPTION_CHAIN_KEY,
            self.client.get_option_chain,
            self.settings.option_chain_ttl_seconds,
            timeout=self.settings.option_chain_timeout_seconds,
        )

    async def get_option_quote(self, instrument: Instrument) -> Quote:
        async def _lookup() -> Quote:
            chain = await self.get_option_chain()
            for quote in chain:
                if quote.instrument_key == instrument.key:
                    return quote
            raise LookupError(f"Option not found: {instrument.describe()}")

        return await self.cache.get(instrument.key, _lookup, self.settings.live_quote_ttl_seconds)

    async def get_live_quote(self, instrument: Instrument) -> Quote:
        if instrument.is_option:
            return await self.get_option_quote(instrument)
        return await self.get_index_quote()

    async def get_historical_quotes(self, day: date, interval: str = "day") -> List[HistoricalBar]:
        if interval not in HISTORICAL_INTERVALS:
            raise ValidationError(f"Invalid interval. Valid values: {', '.join(HISTORICAL_INTERVALS)}")
        key = f"history|{day.isoformat()}|{interval}"

        async def _fetch() -> List[HistoricalBar]:
            return await self.client.get_index_history(day, interval)

        return await self.cache.get(key, _fetch, self.settings.historical_ttl_seconds)
