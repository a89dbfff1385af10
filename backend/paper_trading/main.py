from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from .api import market, paper_trade
from .core.config import get_settings
from .core.database import Base, async_session, engine
from .middleware.request_logging import CorrelationIdMiddleware
from .services.logging_utils import configure_logging
from .services.market_clock import MarketClock
from .services.market_poller import MarketDataPoller
from .services.paper_trading_service import default_session_locks
from .services.quote_service import QuoteService

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level, log_path=settings.log_path)

    client_logger = logging.getLogger("market_data.client")
    client_logger.setLevel(logging.DEBUG if settings.market_data_debug_verbose else logging.INFO)
    application = FastAPI(title=settings.app_name)
    application.state.quote_service = None
    application.state.market_poller = None
    application.state.session_locks = default_session_locks

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )
    if settings.debug_http_logging:
        logging.getLogger("paper_trading.http").setLevel(logging.DEBUG)
        logger.info("HTTP request/response debug logging enabled")
    application.add_middleware(CorrelationIdMiddleware, log_bodies=settings.debug_http_logging)

    application.include_router(market.nifty_router, prefix=settings.api_prefix)
    application.include_router(market.options_router, prefix=settings.api_prefix)
    application.include_router(market.expiry_router, prefix=settings.api_prefix)
    application.include_router(market.config_router, prefix=settings.api_prefix)
    application.include_router(paper_trade.router, prefix=settings.api_prefix)

    @application.get("/health")
    async def health() -> dict:
        clock = MarketClock.from_settings(settings)
        poller: MarketDataPoller | None = application.state.market_poller
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "market_status": clock.phase().value,
            "poller": poller.status() if poller is not None else {"running": False},
        }

    @application.on_event("startup")
    async def startup_event() -> None:  # noqa: D401
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ensured")

        quotes = application.state.quote_service or QuoteService(settings=settings)
        application.state.quote_service = quotes

        poller = MarketDataPoller(async_session, quotes, settings, locks=application.state.session_locks)
        await poller.start()
        application.state.market_poller = poller

    @application.on_event("shutdown")
    async def shutdown_event() -> None:  # noqa: D401
        poller: MarketDataPoller | None = getattr(application.state, "market_poller", None)
        if poller is not None:
            await poller.stop()
        quotes: QuoteService | None = getattr(application.state, "quote_service", None)
        if quotes is not None:
            await quotes.close()

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("paper_trading.main:app", host="0.0.0.0", port=8001, reload=True)
