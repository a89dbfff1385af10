from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from ..core.database import get_session
from ..services.market_clock import MarketClock
from ..services.paper_trading_service import PaperTradingService, SessionLockRegistry, default_session_locks
from ..services.quote_service import QuoteService


async def get_db_session(session=Depends(get_session)):
    return session


def get_quote_service(request: Request) -> QuoteService:
    quotes: QuoteService | None = getattr(request.app.state, "quote_service", None)
    if quotes is None:
        quotes = QuoteService()
        request.app.state.quote_service = quotes
    return quotes


def get_market_clock(settings: Settings = Depends(get_settings)) -> MarketClock:
    return MarketClock.from_settings(settings)


def get_session_locks(request: Request) -> SessionLockRegistry:
    locks: SessionLockRegistry | None = getattr(request.app.state, "session_locks", None)
    return locks if locks is not None else default_session_locks


async def get_paper_trading_service(
    session: AsyncSession = Depends(get_db_session),
    quotes: QuoteService = Depends(get_quote_service),
    clock: MarketClock = Depends(get_market_clock),
    locks: SessionLockRegistry = Depends(get_session_locks),
    settings: Settings = Depends(get_settings),
) -> PaperTradingService:
    return PaperTradingService(session, quotes, settings, clock=clock, locks=locks)
