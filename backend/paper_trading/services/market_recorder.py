from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, List, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from ..models.market_data import IndexSnapshot, OptionSnapshot
from .market_clock import MarketClock
from .market_data_client import HistoricalBar, Quote

logger = logging.getLogger("paper_trading.market_recorder")

LIVE_INDEX_INTERVAL = "1min"
LIVE_OPTION_INTERVAL = "2min"


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.replace(tzinfo=None)


def _minute(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(second=0, microsecond=0)


class MarketDataRecorder:
    """Persists polled quotes and fetched bars; duplicate rows are skipped, never raised."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()

    async def record_index_quote(self, quote: Quote, *, trading_date: date, interval: str = LIVE_INDEX_INTERVAL) -> int:
        snapshot = IndexSnapshot(
            symbol=quote.symbol,
            interval=interval,
            timestamp=_minute(quote.timestamp),
            trading_date=trading_date,
            open=quote.open,
            high=quote.high,
            low=quote.low,
            close=quote.ltp,
            ltp=quote.ltp,
            volume=quote.volume,
            change=quote.change,
            change_percent=quote.change_percent,
        )
        return await self._insert_index_rows([snapshot])

    async def record_bars(self, bars: Sequence[HistoricalBar], *, symbol: str | None = None) -> int:
        name = symbol or self.settings.index_symbol
        rows = [
            IndexSnapshot(
                symbol=name,
                interval=bar.interval,
                timestamp=bar.timestamp,
                trading_date=date.fromisoformat(bar.date),
                open=bar.open,
                high=bar.high,
                low=bar.low,
                close=bar.close,
                ltp=bar.close,
                volume=bar.volume,
                change=round(bar.close - bar.open, 2),
                change_percent=round((bar.close - bar.open) / bar.open * 100, 2) if bar.open else 0.0,
            )
            for bar in bars
        ]
        return await self._insert_index_rows(rows)

    async def record_option_chain(self, quotes: Iterable[Quote], *, interval: str = LIVE_OPTION_INTERVAL) -> int:
        rows = [
            OptionSnapshot(
                symbol=quote.symbol,
                instrument_key=quote.instrument_key,
                strike=quote.strike,
                option_type=quote.option_type,
                expiry=quote.expiry,
                interval=interval,
                timestamp=_minute(quote.timestamp),
                ltp=quote.ltp,
                open=quote.open,
                high=quote.high,
                low=quote.low,
                close=quote.close,
                volume=quote.volume,
                open_interest=quote.open_interest,
                implied_volatility=quote.implied_volatility,
            )
            for quote in quotes
            if quote.strike is not None and quote.expiry is not None
        ]
        inserted = 0
        batch_size = max(self.settings.snapshot_batch_size, 1)
        for start in range(0, len(rows), batch_size):
            inserted += await self._insert_option_batch(rows[start : start + batch_size])
        return inserted

    async def load_history(self, day: date, interval: str, *, symbol: str | None = None) -> List[IndexSnapshot]:
        result = await self.session.execute(
            select(IndexSnapshot)
            .where(
                IndexSnapshot.symbol == (symbol or self.settings.index_symbol),
                IndexSnapshot.interval == interval,
                IndexSnapshot.trading_date == day,
            )
            .order_by(IndexSnapshot.timestamp)
        )
        return list(result.scalars().all())

    async def load_range(self, start: date, end: date, interval: str, *, symbol: str | None = None) -> List[IndexSnapshot]:
        result = await self.session.execute(
            select(IndexSnapshot)
            .where(
                IndexSnapshot.symbol == (symbol or self.settings.index_symbol),
                IndexSnapshot.interval == interval,
                IndexSnapshot.trading_date >= start,
                IndexSnapshot.trading_date <= end,
            )
            .order_by(IndexSnapshot.timestamp)
        )
        return list(result.scalars().all())

    async def load_option_history(
        self,
        strike: int,
        option_type: str,
        expiry: date,
        day: date,
        interval: str = LIVE_OPTION_INTERVAL,
    ) -> List[OptionSnapshot]:
        """Return one option leg's stored snapshots for an exchange-local trading day."""

        tz = MarketClock.from_settings(self.settings).tz
        start = datetime.combine(day, time.min, tzinfo=tz).astimezone(timezone.utc)
        end = start + timedelta(days=1)
        result = await self.session.execute(
            select(OptionSnapshot)
            .where(
                OptionSnapshot.strike == strike,
                OptionSnapshot.option_type == option_type,
                OptionSnapshot.expiry == expiry,
                OptionSnapshot.interval == interval,
                OptionSnapshot.timestamp >= start,
                OptionSnapshot.timestamp < end,
            )
            .order_by(OptionSnapshot.timestamp)
        )
        return list(result.scalars().all())

    async def _insert_index_rows(self, rows: List[IndexSnapshot]) -> int:
        if not rows:
            return 0
        keys = {(row.symbol, row.interval, _naive_utc(row.timestamp)) for row in rows}
        existing_result = await self.session.execute(
            select(IndexSnapshot.symbol, IndexSnapshot.interval, IndexSnapshot.timestamp).where(
                IndexSnapshot.symbol.in_(sorted({symbol for symbol, _, _ in keys})),
                IndexSnapshot.interval.in_(sorted({interval for _, interval, _ in keys})),
                IndexSnapshot.timestamp.in_([row.timestamp for row in rows]),
            )
        )
        existing = {(symbol, interval, _naive_utc(stamp)) for symbol, interval, stamp in existing_result.all()}

        fresh: List[IndexSnapshot] = []
        seen: set[tuple[str, str, datetime]] = set()
        for row in rows:
            key = (row.symbol, row.interval, _naive_utc(row.timestamp))
            if key in existing or key in seen:
                continue
            seen.add(key)
            fresh.append(row)
        return await self._commit_rows(fresh, table="index_snapshots", skipped=len(rows) - len(fresh))

    async def _insert_option_batch(self, rows: List[OptionSnapshot]) -> int:
        if not rows:
            return 0
        existing_result = await self.session.execute(
            select(
                OptionSnapshot.strike,
                OptionSnapshot.option_type,
                OptionSnapshot.expiry,
                OptionSnapshot.interval,
                OptionSnapshot.timestamp,
            ).where(
                OptionSnapshot.instrument_key.in_([row.instrument_key for row in rows]),
                OptionSnapshot.timestamp.in_([row.timestamp for row in rows]),
            )
        )
        existing = {
            (strike, option_type, expiry, interval, _naive_utc(stamp))
            for strike, option_type, expiry, interval, stamp in existing_result.all()
        }

        fresh: List[OptionSnapshot] = []
        seen: set[tuple] = set()
        for row in rows:
            key = (row.strike, row.option_type, row.expiry, row.interval, _naive_utc(row.timestamp))
            if key in existing or key in seen:
                continue
            seen.add(key)
            fresh.append(row)
        return await self._commit_rows(fresh, table="option_snapshots", skipped=len(rows) - len(fresh))

    async def _commit_rows(self, rows: list, *, table: str, skipped: int) -> int:
        if skipped:
            logger.debug(
                "Skipped duplicate snapshot rows",
                extra={"event": "snapshot_duplicates_skipped", "table": table, "skipped": skipped},
            )
        if not rows:
            return 0
        self.session.add_all(rows)
        try:
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            logger.warning(
                "Snapshot batch collided with existing rows",
                extra={"event": "snapshot_insert_conflict", "table": table, "rows": len(rows), "error": str(exc.orig)},
            )
            return 0
        return len(rows)
