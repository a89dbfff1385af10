import os
from collections.abc import AsyncGenerator
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Dict, List

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Point the shared engine at a throwaway database before anything imports it
PROJECT_ROOT = Path(__file__).resolve().parents[2]
DATA_DIR = PROJECT_ROOT / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{DATA_DIR / 'paper_trading_test.db'}")
os.environ.setdefault("POLLER_ENABLED", "false")

from paper_trading.core.database import Base
from paper_trading.services.errors import QuoteUnavailableError
from paper_trading.services.instruments import Instrument
from paper_trading.services.market_data_client import HistoricalBar, Quote
from paper_trading.services.paper_trading_service import SessionLockRegistry

NIFTY_KEY = Instrument(symbol="NIFTY").key


def make_quote(instrument: Instrument, ltp: float, **overrides) -> Quote:
    fields = dict(
        symbol=instrument.symbol,
        instrument_key=instrument.key,
        ltp=ltp,
        open=ltp,
        high=ltp,
        low=ltp,
        close=ltp,
        volume=1000,
        timestamp=datetime(2025, 1, 6, 4, 0, tzinfo=timezone.utc),
        strike=instrument.strike,
        option_type=instrument.option_type,
        expiry=instrument.expiry,
    )
    fields.update(overrides)
    return Quote(**fields)


class StubQuoteService:
    """In-memory stand-in for QuoteService keyed by instrument key."""

    def __init__(self, prices: Dict[str, float] | None = None):
        self.prices: Dict[str, float] = dict(prices or {})
        self.bars: Dict[tuple, List[HistoricalBar]] = {}
        self.calls: List[str] = []
        self.cleared = 0
        self.closed = False

    def set_price(self, instrument: Instrument, ltp: float) -> None:
        self.prices[instrument.key] = ltp

    def drop_price(self, instrument: Instrument) -> None:
        self.prices.pop(instrument.key, None)

    async def get_live_quote(self, instrument: Instrument) -> Quote:
        self.calls.append(instrument.key)
        if instrument.key not in self.prices:
            raise QuoteUnavailableError(instrument.key, "no stub price")
        return make_quote(instrument, self.prices[instrument.key])

    async def get_option_quote(self, instrument: Instrument) -> Quote:
        return await self.get_live_quote(instrument)

    async def get_index_quote(self) -> Quote:
        return await self.get_live_quote(Instrument(symbol="NIFTY"))

    async def get_option_chain(self) -> List[Quote]:
        chain = []
        for key, ltp in self.prices.items():
            symbol, strike, option_type, expiry = key.split("|")
            if option_type not in ("CE", "PE"):
                continue
            instrument = Instrument(symbol=symbol, option_type=option_type, strike=int(strike), expiry=date.fromisoformat(expiry))
            chain.append(make_quote(instrument, ltp))
        return chain

    async def get_historical_quotes(self, day: date, interval: str = "day") -> List[HistoricalBar]:
        self.calls.append(f"history|{day.isoformat()}|{interval}")
        return list(self.bars.get((day, interval), []))

    def clear_cache(self) -> None:
        self.cleared += 1

    async def close(self) -> None:
        self.closed = True


@pytest_asyncio.fixture()
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'paper_trading.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def quotes() -> StubQuoteService:
    return StubQuoteService({NIFTY_KEY: 22000.0})


@pytest.fixture()
def session_locks() -> SessionLockRegistry:
    return SessionLockRegistry()
