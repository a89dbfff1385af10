from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings, get_settings
from ..models.paper_trade import PaperOrder, Portfolio
from .errors import NotFoundError, QuoteUnavailableError, ValidationError
from .greeks import compute_greeks
from .instruments import Instrument, build_instrument
from .logging_utils import LogSampler, logging_context
from .market_clock import MarketClock
from .performance import max_drawdown, profit_factor, sharpe_ratio
from .position_engine import Fill, apply_fill
from .quote_service import QuoteService
from .risk import compute_risk_metrics
from .valuation import value_portfolio, value_position

logger = logging.getLogger(__name__)

ORDER_KINDS = ("MARKET", "LIMIT")
SIDES = ("BUY", "SELL")
RECENT_ORDER_WINDOW = 10
MAX_PAGE_SIZE = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _generate_order_id() -> str:
    return f"ORD_{int(_utcnow().timestamp() * 1000)}_{uuid.uuid4().hex[:6]}"


class SessionLockRegistry:
    """One ``asyncio.Lock`` per portfolio session id."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks.setdefault(session_id, asyncio.Lock())
        return lock

    def __len__(self) -> int:
        return len(self._locks)


default_session_locks = SessionLockRegistry()


class PaperTradingService:
    """Facade over the paper ledger: orders, portfolio valuation, and maintenance sweeps."""

    def __init__(
        self,
        session: AsyncSession,
        quotes: QuoteService,
        settings: Settings | None = None,
        *,
        clock: MarketClock | None = None,
        locks: SessionLockRegistry | None = None,
    ):
        self.session = session
        self.quotes = quotes
        self.settings = settings or get_settings()
        self.clock = clock or MarketClock.from_settings(self.settings)
        self.locks = locks if locks is not None else default_session_locks

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    async def place_order(
        self,
        session_id: str,
        *,
        side: str,
        quantity: Any,
        symbol: str | None = None,
        option_type: str | None = None,
        strike: Any = None,
        expiry: Any = None,
        order_kind: str = "MARKET",
        limit_price: float | None = None,
        order_id: str | None = None,
        tags: Iterable[str] | None = None,
    ) -> PaperOrder:
        session_id = self._validate_session_id(session_id)
        instrument = build_instrument(
            symbol=symbol or self.settings.index_symbol,
            option_type=option_type,
            strike=strike,
            expiry=expiry,
            strike_step=self.settings.strike_step,
        )
        if instrument.symbol != self.settings.index_symbol:
            raise ValidationError(f"Only {self.settings.index_symbol} instruments are supported")
        normalized_side = (side or "").strip().upper()
        if normalized_side not in SIDES:
            raise ValidationError("side must be either BUY or SELL")
        lots = self._validate_quantity(quantity)
        kind = (order_kind or "MARKET").strip().upper()
        if kind not in ORDER_KINDS:
            raise ValidationError("orderType must be MARKET or LIMIT")
        if kind == "LIMIT" and (limit_price is None or limit_price <= 0):
            raise ValidationError("limitPrice must be a positive number for LIMIT orders")

        with logging_context(session_id=session_id, instrument_key=instrument.key, order_id=order_id):
            if order_id:
                existing = await self._find_order(order_id)
                if existing is not None:
                    return self._replay(existing, session_id)

            quote = await self.quotes.get_live_quote(instrument)
            execution_price = float(limit_price) if kind == "LIMIT" else quote.ltp
            resolved_order_id = order_id or _generate_order_id()
            fill = Fill(
                instrument=instrument,
                side=normalized_side,  # type: ignore[arg-type]
                quantity=lots,
                price=execution_price,
                lot_size=self.settings.lot_size,
            )

            async with self.locks.lock_for(session_id):
                portfolio = await self._load_portfolio(session_id, create=True, for_update=True)
                result = apply_fill(portfolio, fill, order_id=resolved_order_id)
                portfolio.last_updated = _utcnow()
                order = PaperOrder(
                    order_id=resolved_order_id,
                    session_id=session_id,
                    symbol=instrument.symbol,
                    option_type=instrument.option_type,
                    strike=instrument.strike,
                    expiry=instrument.expiry,
                    side=normalized_side,
                    quantity=lots,
                    order_kind=kind,
                    limit_price=float(limit_price) if limit_price is not None else None,
                    quote_price=quote.ltp,
                    execution_price=execution_price,
                    lot_size=fill.lot_size,
                    total_value=fill.total_value,
                    status="FILLED",
                    tags=list(tags or []),
                    created_at=_utcnow(),
                )
                self.session.add(order)
                try:
                    await self.session.commit()
                except IntegrityError:
                    await self.session.rollback()
                    logger.warning(
                        "Duplicate order id on insert",
                        extra={"event": "order_duplicate", "order_id": resolved_order_id},
                    )
                    existing = await self._find_order(resolved_order_id)
                    if existing is None:
                        raise
                    return self._replay(existing, session_id)

            logger.info(
                "Paper order filled",
                extra={
                    "event": "order_filled",
                    "order_id": resolved_order_id,
                    "side": normalized_side,
                    "quantity": lots,
                    "execution_price": execution_price,
                    "total_value": fill.total_value,
                    "transition": result.transition.value,
                    "cash_balance": portfolio.cash_balance,
                },
            )
            return order

    async def list_orders(
        self,
        session_id: str,
        *,
        status: str | None = None,
        symbol: str | None = None,
        option_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        session_id = self._validate_session_id(session_id)
        limit = min(max(int(limit), 1), MAX_PAGE_SIZE)
        offset = max(int(offset), 0)

        filters = [PaperOrder.session_id == session_id]
        if status:
            filters.append(PaperOrder.status == status.upper())
        if symbol:
            filters.append(PaperOrder.symbol == symbol.upper())
        if option_type:
            filters.append(PaperOrder.option_type == option_type.upper())

        total = await self.session.scalar(select(func.count()).select_from(PaperOrder).where(*filters))
        result = await self.session.execute(
            select(PaperOrder)
            .where(*filters)
            .order_by(PaperOrder.created_at.desc(), PaperOrder.id.desc())
            .limit(limit)
            .offset(offset)
        )
        orders = list(result.scalars().all())
        total = int(total or 0)
        return {
            "items": orders,
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": total > offset + limit,
        }

    # ------------------------------------------------------------------
    # Portfolio
    # ------------------------------------------------------------------
    async def get_portfolio(self, session_id: str) -> Dict[str, Any]:
        session_id = self._validate_session_id(session_id)
        with logging_context(session_id=session_id):
            async with self.locks.lock_for(session_id):
                portfolio = await self._load_portfolio(session_id, create=True, for_update=True)
                await self._reprice(portfolio)
                await self.session.commit()
            return self._portfolio_payload(portfolio)

    async def get_detailed_pnl(self, session_id: str, *, include_greeks: bool = False) -> Dict[str, Any]:
        session_id = self._validate_session_id(session_id)
        portfolio = await self._load_portfolio(session_id, create=False)
        if portfolio is None:
            raise NotFoundError("Portfolio not found")

        spot = await self.quotes.get_index_quote()
        positions = list(portfolio.positions)
        net_value = self._net_liquidation_value(portfolio)
        summary = value_portfolio(positions)
        risk = compute_risk_metrics(positions, net_value)

        today = self.clock.today()
        position_rows: List[Dict[str, Any]] = []
        for position in positions:
            row = position.as_dict()
            if include_greeks and position.instrument.is_option:
                row["greeks"] = compute_greeks(
                    position.strike,
                    position.option_type,
                    position.expiry,
                    spot.ltp,
                    volatility=self.settings.greeks_volatility,
                    risk_free_rate=self.settings.greeks_risk_free_rate,
                    today=today,
                ).as_dict()
            position_rows.append(row)

        recent = await self._recent_orders(session_id)
        prices = {position.instrument_key: position.current_price for position in positions}
        order_pnls = [await self._order_pnl(order, prices) for order in recent]
        chronological = list(reversed(order_pnls))

        wins = [pnl for pnl in order_pnls if pnl > 0]
        session_stats = {
            "total_trades": len(recent),
            "successful_trades": len(wins),
            "win_rate": round(len(wins) / len(recent) * 100, 2) if recent else 0.0,
            "average_trade_value": round(sum(order.total_value for order in recent) / len(recent), 2) if recent else 0.0,
            "largest_win": max(order_pnls) if order_pnls else 0.0,
            "largest_loss": min(order_pnls) if order_pnls else 0.0,
        }
        initial = self.settings.initial_balance
        performance = {
            "total_return": round(portfolio.total_pnl or 0.0, 2),
            "total_return_percent": round((portfolio.total_pnl or 0.0) / initial * 100, 2) if initial else 0.0,
            "sharpe_ratio": sharpe_ratio(order_pnls),
            "max_drawdown": max_drawdown(chronological),
            "profit_factor": profit_factor(order_pnls),
        }
        return {
            "portfolio": {
                "session_id": portfolio.session_id,
                "initial_balance": initial,
                "cash_balance": round(portfolio.cash_balance, 2),
                "total_value": net_value,
                "total_pnl": round(portfolio.total_pnl or 0.0, 2),
                "day_pnl": round(portfolio.day_pnl or 0.0, 2),
                "last_updated": portfolio.last_updated,
            },
            "pnl_summary": summary.as_dict(),
            "risk_metrics": risk.as_dict(),
            "positions": position_rows,
            "market_data": {
                "spot_price": spot.ltp,
                "change": spot.change,
                "change_percent": spot.change_percent,
                "market_status": self.clock.phase().value,
                "timestamp": spot.timestamp,
            },
            "session_stats": session_stats,
            "performance": performance,
        }

    async def reset_portfolio(self, session_id: str) -> Dict[str, Any]:
        session_id = self._validate_session_id(session_id)
        with logging_context(session_id=session_id):
            async with self.locks.lock_for(session_id):
                deleted = await self.session.execute(delete(PaperOrder).where(PaperOrder.session_id == session_id))
                portfolio = await self._load_portfolio(session_id, create=True, for_update=True)
                portfolio.positions.clear()
                portfolio.cash_balance = self.settings.initial_balance
                portfolio.total_pnl = 0.0
                portfolio.day_pnl = 0.0
                portfolio.day_opening_pnl = 0.0
                portfolio.last_updated = _utcnow()
                await self.session.commit()
            logger.info(
                "Portfolio reset",
                extra={"event": "portfolio_reset", "orders_deleted": int(deleted.rowcount or 0)},
            )
            return self._portfolio_payload(portfolio)

    # ------------------------------------------------------------------
    # Maintenance sweeps, driven by the poller
    # ------------------------------------------------------------------
    @classmethod
    async def reprice_all_portfolios(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        quotes: QuoteService,
        settings: Settings | None = None,
        *,
        locks: SessionLockRegistry | None = None,
        sampler: LogSampler | None = None,
    ) -> Dict[str, int]:
        """Mark every portfolio that holds positions to the latest quotes."""

        async with session_factory() as session:
            result = await session.execute(
                select(Portfolio.session_id).where(Portfolio.positions.any()).order_by(Portfolio.id)
            )
            session_ids = list(result.scalars().all())

        repriced = 0
        failed_quotes = 0
        for session_id in session_ids:
            async with session_factory() as session:
                service = cls(session, quotes, settings, locks=locks)
                with logging_context(session_id=session_id, job="reprice"):
                    async with service.locks.lock_for(session_id):
                        portfolio = await service._load_portfolio(session_id, create=False, for_update=True)
                        if portfolio is None:
                            continue
                        failed_quotes += await service._reprice(portfolio)
                        await session.commit()
                repriced += 1

        stats = {"portfolios": repriced, "failed_quotes": failed_quotes}
        if sampler is None or sampler.should_log("reprice_sweep"):
            logger.info("Reprice sweep complete", extra={"event": "reprice_sweep_complete", **stats})
        return stats

    @classmethod
    async def end_of_day(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        quotes: QuoteService,
    ) -> int:
        """Roll each portfolio's day P&L baseline forward and drop cached quotes."""

        quotes.clear_cache()
        async with session_factory() as session:
            result = await session.execute(select(Portfolio))
            portfolios = list(result.scalars().all())
            for portfolio in portfolios:
                portfolio.day_opening_pnl = portfolio.total_pnl or 0.0
                portfolio.day_pnl = 0.0
            await session.commit()
        logger.info("End of day rollover complete", extra={"event": "end_of_day", "portfolios": len(portfolios)})
        return len(portfolios)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _validate_session_id(self, session_id: str | None) -> str:
        value = (session_id or "").strip()
        if not value:
            raise ValidationError("sessionId is required")
        if len(value) > self.settings.max_session_id_length:
            raise ValidationError(f"sessionId must be at most {self.settings.max_session_id_length} characters")
        return value

    def _validate_quantity(self, quantity: Any) -> int:
        if isinstance(quantity, bool):
            raise ValidationError("quantity must be a whole number of lots")
        try:
            numeric = float(quantity)
        except (TypeError, ValueError):
            raise ValidationError("quantity must be a whole number of lots") from None
        if numeric != numeric or not numeric.is_integer():
            raise ValidationError("quantity must be a whole number of lots")
        lots = int(numeric)
        if lots <= 0:
            raise ValidationError("quantity must be greater than 0")
        if lots > self.settings.max_order_lots:
            raise ValidationError(f"quantity must be at most {self.settings.max_order_lots} lots")
        return lots

    async def _find_order(self, order_id: str) -> PaperOrder | None:
        result = await self.session.execute(select(PaperOrder).where(PaperOrder.order_id == order_id))
        return result.scalar_one_or_none()

    def _replay(self, order: PaperOrder, session_id: str) -> PaperOrder:
        if order.session_id != session_id:
            raise ValidationError("orderId is already used by another session")
        logger.info(
            "Duplicate order submission replayed",
            extra={"event": "order_replayed", "order_id": order.order_id},
        )
        return order

    async def _load_portfolio(
        self,
        session_id: str,
        *,
        create: bool,
        for_update: bool = False,
    ) -> Portfolio | None:
        stmt = select(Portfolio).where(Portfolio.session_id == session_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        portfolio = result.scalar_one_or_none()
        if portfolio is not None or not create:
            return portfolio

        portfolio = Portfolio(
            session_id=session_id,
            cash_balance=self.settings.initial_balance,
            total_pnl=0.0,
            day_pnl=0.0,
            day_opening_pnl=0.0,
            created_at=_utcnow(),
            last_updated=_utcnow(),
            positions=[],
        )
        self.session.add(portfolio)
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            logger.warning("Concurrent portfolio creation", extra={"event": "portfolio_create_race"})
            result = await self.session.execute(stmt)
            return result.scalar_one()
        logger.info(
            "Portfolio created",
            extra={"event": "portfolio_created", "initial_balance": self.settings.initial_balance},
        )
        return portfolio

    async def _reprice(self, portfolio: Portfolio) -> int:
        failures = 0
        for position in portfolio.positions:
            try:
                quote = await self.quotes.get_live_quote(position.instrument)
            except QuoteUnavailableError as exc:
                failures += 1
                logger.warning(
                    "Keeping previous price for position",
                    extra={"event": "position_reprice_failed", "position_key": position.instrument_key, "error": str(exc)},
                )
                continue
            position.current_price = quote.ltp
            valuation = value_position(position, quote.ltp)
            position.pnl = valuation.pnl
            position.pnl_percent = valuation.pnl_percent

        portfolio.total_pnl = round(sum(position.pnl or 0.0 for position in portfolio.positions), 2)
        portfolio.day_pnl = round(portfolio.total_pnl - (portfolio.day_opening_pnl or 0.0), 2)
        portfolio.last_updated = _utcnow()
        return failures

    @staticmethod
    def _net_liquidation_value(portfolio: Portfolio) -> float:
        marked = 0.0
        for position in portfolio.positions:
            price = position.current_price if position.current_price is not None else position.avg_price
            marked += price * position.quantity * position.lot_size
        return round(portfolio.cash_balance + marked, 2)

    def _portfolio_payload(self, portfolio: Portfolio) -> Dict[str, Any]:
        summary = value_portfolio(portfolio.positions)
        return {
            "session_id": portfolio.session_id,
            "cash_balance": round(portfolio.cash_balance, 2),
            "total_value": self._net_liquidation_value(portfolio),
            "total_pnl": round(portfolio.total_pnl or 0.0, 2),
            "day_pnl": round(portfolio.day_pnl or 0.0, 2),
            "lot_size": self.settings.lot_size,
            "positions": [position.as_dict() for position in portfolio.positions],
            "summary": {
                "total_positions": len(portfolio.positions),
                "profitable_positions": summary.profitable_positions,
                "losing_positions": summary.losing_positions,
                "max_profit": summary.max_profit,
                "max_loss": summary.max_loss,
            },
            "last_updated": portfolio.last_updated,
        }

    async def _recent_orders(self, session_id: str) -> List[PaperOrder]:
        result = await self.session.execute(
            select(PaperOrder)
            .where(PaperOrder.session_id == session_id)
            .order_by(PaperOrder.created_at.desc(), PaperOrder.id.desc())
            .limit(RECENT_ORDER_WINDOW)
        )
        return list(result.scalars().all())

    async def _order_pnl(self, order: PaperOrder, prices: Dict[str, float | None]) -> float:
        instrument: Instrument = order.instrument
        price = prices.get(instrument.key)
        if price is None:
            try:
                price = (await self.quotes.get_live_quote(instrument)).ltp
            except QuoteUnavailableError:
                return 0.0
        direction = 1 if order.side == "BUY" else -1
        return round((price - order.execution_price) * order.quantity * order.lot_size * direction, 2)

