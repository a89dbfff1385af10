from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import JSON, Date, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.database import Base
from ..services.instruments import Instrument


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Portfolio(Base):
    """Virtual cash and positions ledger for one caller session."""

    __tablename__ = "portfolios"
    __table_args__ = {"extend_existing": True}

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    session_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    cash_balance: Mapped[float] = mapped_column(Float)
    total_pnl: Mapped[float] = mapped_column(Float, default=0.0)
    day_pnl: Mapped[float] = mapped_column(Float, default=0.0)
    day_opening_pnl: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    positions: Mapped[list[PortfolioPosition]] = relationship(
        back_populates="portfolio",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PortfolioPosition.id",
    )


class PortfolioPosition(Base):
    """Net position for one instrument inside a portfolio."""

    __tablename__ = "portfolio_positions"
    __table_args__ = (
        UniqueConstraint("portfolio_id", "instrument_key", name="uq_position_instrument"),
        {"extend_existing": True},
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id", ondelete="CASCADE"))
    instrument_key: Mapped[str] = mapped_column(String(96))
    symbol: Mapped[str] = mapped_column(String(32))
    option_type: Mapped[str] = mapped_column(String(8))
    strike: Mapped[int | None] = mapped_column(Integer, nullable=True)
    expiry: Mapped[date | None] = mapped_column(Date, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer)
    avg_price: Mapped[float] = mapped_column(Float)
    current_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    lot_size: Mapped[int] = mapped_column(Integer)
    pnl: Mapped[float] = mapped_column(Float, default=0.0)
    pnl_percent: Mapped[float] = mapped_column(Float, default=0.0)
    opening_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    portfolio: Mapped[Portfolio] = relationship(back_populates="positions")

    @property
    def instrument(self) -> Instrument:
        return Instrument(symbol=self.symbol, option_type=self.option_type, strike=self.strike, expiry=self.expiry)

    def as_dict(self) -> dict[str, object | None]:
        return {
            "instrument_key": self.instrument_key,
            "symbol": self.symbol,
            "type": self.option_type,
            "strike": self.strike,
            "expiry": self.expiry.isoformat() if self.expiry else None,
            "quantity": self.quantity,
            "avg_price": self.avg_price,
            "current_price": self.current_price,
            "lot_size": self.lot_size,
            "pnl": self.pnl,
            "pnl_percent": self.pnl_percent,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
        }


class PaperOrder(Base):
    """Append-only record of a simulated fill."""

    __tablename__ = "paper_orders"
    __table_args__ = {"extend_existing": True}

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    session_id: Mapped[str] = mapped_column(String(64), index=True)
    symbol: Mapped[str] = mapped_column(String(32))
    option_type: Mapped[str] = mapped_column(String(8))
    strike: Mapped[int | None] = mapped_column(Integer, nullable=True)
    expiry: Mapped[date | None] = mapped_column(Date, nullable=True)
    side: Mapped[str] = mapped_column(String(4))
    quantity: Mapped[int] = mapped_column(Integer)
    order_kind: Mapped[str] = mapped_column(String(10), default="MARKET")
    limit_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    quote_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    execution_price: Mapped[float] = mapped_column(Float)
    lot_size: Mapped[int] = mapped_column(Integer)
    total_value: Mapped[float] = mapped_column(Float)
    status: Mapped[str] = mapped_column(String(12), default="FILLED")
    tags: Mapped[list | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)

    @property
    def instrument(self) -> Instrument:
        return Instrument(symbol=self.symbol, option_type=self.option_type, strike=self.strike, expiry=self.expiry)
