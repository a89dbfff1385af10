from collections.abc import AsyncGenerator
import logging
import time

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .config import get_settings

logger = logging.getLogger("paper_trading.database")


class Base(DeclarativeBase):
    """Base class for ORM models."""


settings = get_settings()
engine = create_async_engine(settings.database_url, echo=False, future=True)
async_session: async_sessionmaker[AsyncSession] = async_sessionmaker(
    engine, expire_on_commit=False
)


def install_query_timing(target_engine, threshold_ms: float) -> None:
    """Log statements whose execution exceeds ``threshold_ms``."""

    @event.listens_for(target_engine.sync_engine, "before_cursor_execute")
    def _record_query_start(conn, cursor, statement, parameters, context, executemany):  # noqa: D401
        context._query_start_time = time.perf_counter()

    @event.listens_for(target_engine.sync_engine, "after_cursor_execute")
    def _log_slow_query(conn, cursor, statement, parameters, context, executemany):  # noqa: D401
        start = getattr(context, "_query_start_time", None)
        if start is None:
            return
        duration_ms = (time.perf_counter() - start) * 1000
        if duration_ms >= threshold_ms:
            logger.warning(
                "Slow database query",
                extra={
                    "event": "db_slow_query",
                    "duration_ms": round(duration_ms, 2),
                    "statement": statement[:500],
                },
            )


install_query_timing(engine, settings.db_slow_query_ms)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a scoped database session for FastAPI dependencies."""

    async with async_session() as session:
        yield session
