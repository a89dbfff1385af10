from __future__ import annotations

import asyncio
import logging
import time
from datetime import date, datetime
from typing import Any, Callable, Dict

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings, get_settings
from .errors import QuoteUnavailableError
from .logging_utils import LogSampler, logging_context, monitor_task
from .market_clock import MarketClock, MarketPhase
from .market_recorder import MarketDataRecorder
from .paper_trading_service import PaperTradingService, SessionLockRegistry
from .quote_service import QuoteService

logger = logging.getLogger("paper_trading.market_poller")

END_OF_DAY_HHMM = 1600


class MarketDataPoller:
    """Background job that ticks the core's periodic operations.

    Every tick checks which jobs are due: index snapshots, option chain
    snapshots and the portfolio repricing sweep run only while the market is
    open; the end-of-day rollover runs once per trading date after 16:00.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        quotes: QuoteService,
        settings: Settings | None = None,
        *,
        clock: MarketClock | None = None,
        now: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        locks: SessionLockRegistry | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._quotes = quotes
        self._settings = settings or get_settings()
        self._clock = clock or MarketClock.from_settings(self._settings)
        self._now = now or self._clock.now
        self._monotonic = monotonic
        self._locks = locks
        self._tick = max(self._settings.poller_tick_seconds, 0.5)
        self._intervals = {
            "reprice": self._settings.reprice_interval_seconds,
            "index": self._settings.index_poll_interval_seconds,
            "option_chain": self._settings.option_chain_poll_interval_seconds,
        }
        self._last_run: Dict[str, float] = {}
        self._last_end_of_day: date | None = None
        self._sampler = LogSampler(self._settings.reprice_log_sample_rate)
        self._reprice_task: asyncio.Task[Any] | None = None
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "market_status": self._clock.phase(self._now()).value,
            "last_end_of_day": self._last_end_of_day.isoformat() if self._last_end_of_day else None,
            "intervals": dict(self._intervals),
        }

    async def start(self) -> None:
        if not self._settings.poller_enabled:
            logger.info("Market data poller disabled", extra={"event": "market_poller_disabled"})
            return

        if self.running:
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="market-data-poller")
        monitor_task(self._task, logger, context={"event": "market_poller_task"})
        logger.info("Market data poller started", extra={"event": "market_poller_started", "tick_seconds": self._tick})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:  # pragma: no cover - shutdown flow
            pass
        finally:
            self._task = None
            if self._reprice_task is not None and not self._reprice_task.done():
                self._reprice_task.cancel()
            logger.info("Market data poller stopped", extra={"event": "market_poller_stopped"})

    async def tick(self) -> Dict[str, Any]:
        """Run whichever jobs are due at the current time."""

        at = self._now()
        phase = self._clock.phase(at)
        ran: Dict[str, Any] = {"phase": phase.value}

        if phase is MarketPhase.OPEN:
            if self._due("index"):
                ran["index"] = await self._guard("index", self.record_index_once())
            if self._due("option_chain"):
                ran["option_chain"] = await self._guard("option_chain", self.record_chain_once())
            if self._due("reprice"):
                if self._reprice_task is not None and not self._reprice_task.done():
                    logger.debug("Reprice sweep still running, skipping tick", extra={"event": "reprice_sweep_skipped"})
                    ran["reprice"] = "skipped"
                else:
                    self._reprice_task = asyncio.create_task(self.reprice_once(), name="portfolio-reprice")
                    monitor_task(self._reprice_task, logger, context={"event": "reprice_task"})
                    ran["reprice"] = "started"

        local = self._clock.to_exchange_time(at)
        if (
            self._clock.is_trading_day(local.date())
            and local.hour * 100 + local.minute >= END_OF_DAY_HHMM
            and self._last_end_of_day != local.date()
        ):
            ran["end_of_day"] = await self.end_of_day_once(local.date())
        return ran

    async def reprice_once(self) -> Dict[str, int]:
        with logging_context(job="reprice"):
            return await PaperTradingService.reprice_all_portfolios(
                self._session_factory,
                self._quotes,
                self._settings,
                locks=self._locks,
                sampler=self._sampler,
            )

    async def record_index_once(self) -> int:
        with logging_context(job="index_snapshot"):
            quote = await self._quotes.get_index_quote()
            async with self._session_factory() as session:
                recorder = MarketDataRecorder(session, self._settings)
                inserted = await recorder.record_index_quote(quote, trading_date=self._clock.today(self._now()))
            logger.debug(
                "Index snapshot recorded",
                extra={"event": "index_snapshot_recorded", "ltp": quote.ltp, "inserted": inserted},
            )
            return inserted

    async def record_chain_once(self) -> int:
        with logging_context(job="option_chain_snapshot"):
            chain = await self._quotes.get_option_chain()
            async with self._session_factory() as session:
                recorder = MarketDataRecorder(session, self._settings)
                inserted = await recorder.record_option_chain(chain)
            logger.info(
                "Option chain snapshot recorded",
                extra={"event": "option_chain_recorded", "legs": len(chain), "inserted": inserted},
            )
            return inserted

    async def end_of_day_once(self, trading_date: date) -> int:
        with logging_context(job="end_of_day"):
            count = await PaperTradingService.end_of_day(self._session_factory, self._quotes)
        self._last_end_of_day = trading_date
        return count

    def _due(self, job: str) -> bool:
        now = self._monotonic()
        last = self._last_run.get(job)
        if last is not None and now - last < self._intervals[job]:
            return False
        self._last_run[job] = now
        return True

    async def _guard(self, job: str, operation: Any) -> Any:
        try:
            return await operation
        except QuoteUnavailableError as exc:
            logger.warning(
                "Market data job skipped, quotes unavailable",
                extra={"event": "market_poll_failed", "poll_job": job, "error": str(exc)},
            )
            return None

    async def _run_loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                try:
                    await self.tick()
                except Exception:  # noqa: BLE001
                    logger.exception("Market data poller tick failed", extra={"event": "market_poller_tick_failed"})
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._tick)
                except asyncio.TimeoutError:
                    continue
        except asyncio.CancelledError:  # pragma: no cover - shutdown flow
            raise
