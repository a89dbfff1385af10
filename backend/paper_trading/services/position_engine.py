from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Literal

from ..models.paper_trade import Portfolio, PortfolioPosition
from .errors import InsufficientBalanceError, ValidationError
from .instruments import Instrument
from .valuation import value_position

logger = logging.getLogger(__name__)

Side = Literal["BUY", "SELL"]


class PositionTransition(str, Enum):
    OPENED_LONG = "OPENED_LONG"
    OPENED_SHORT = "OPENED_SHORT"
    INCREASED = "INCREASED"
    REDUCED = "REDUCED"
    FLIPPED = "FLIPPED"
    CLOSED = "CLOSED"


@dataclass(frozen=True)
class Fill:
    instrument: Instrument
    side: Side
    quantity: int
    price: float
    lot_size: int

    def __post_init__(self) -> None:
        if self.side not in ("BUY", "SELL"):
            raise ValidationError("side must be BUY or SELL")
        if self.quantity <= 0:
            raise ValidationError("quantity must be a positive number of lots")
        if self.price <= 0:
            raise ValidationError("execution price must be positive")

    @property
    def total_value(self) -> float:
        return self.price * self.quantity * self.lot_size

    @property
    def signed_quantity(self) -> int:
        return self.quantity if self.side == "BUY" else -self.quantity

    @property
    def cash_delta(self) -> float:
        return -self.total_value if self.side == "BUY" else self.total_value


@dataclass(frozen=True)
class FillResult:
    transition: PositionTransition
    position: PortfolioPosition | None
    cash_delta: float
    quantity_before: int
    quantity_after: int


def find_position(portfolio: Portfolio, instrument: Instrument) -> PortfolioPosition | None:
    key = instrument.key
    for position in portfolio.positions:
        if position.instrument_key == key:
            return position
    return None


def ensure_affordable(portfolio: Portfolio, fill: Fill) -> None:
    if fill.side != "BUY":
        return
    if portfolio.cash_balance < fill.total_value:
        raise InsufficientBalanceError(available=portfolio.cash_balance, required=fill.total_value)


def _classify(before: int, after: int) -> PositionTransition:
    if after == 0:
        return PositionTransition.CLOSED
    if (before > 0) != (after > 0):
        return PositionTransition.FLIPPED
    if abs(after) > abs(before):
        return PositionTransition.INCREASED
    return PositionTransition.REDUCED


def apply_fill(portfolio: Portfolio, fill: Fill, *, order_id: str | None = None) -> FillResult:
    """Apply one fill to the portfolio in place.

    The affordability check runs before anything is touched. An existing
    position's average is re-based on the signed carrying cost, including for
    reducing fills; a position netted to zero is removed. Cash always moves by
    exactly the fill's notional value.
    """

    ensure_affordable(portfolio, fill)

    position = find_position(portfolio, fill.instrument)
    if position is None:
        position = PortfolioPosition(
            instrument_key=fill.instrument.key,
            symbol=fill.instrument.symbol,
            option_type=fill.instrument.option_type,
            strike=fill.instrument.strike,
            expiry=fill.instrument.expiry,
            quantity=fill.signed_quantity,
            avg_price=fill.price,
            current_price=fill.price,
            lot_size=fill.lot_size,
            pnl=0.0,
            pnl_percent=0.0,
            opening_order_id=order_id,
        )
        portfolio.positions.append(position)
        transition = PositionTransition.OPENED_LONG if fill.side == "BUY" else PositionTransition.OPENED_SHORT
        before = 0
        after = position.quantity
    else:
        before = position.quantity
        after = before + fill.signed_quantity
        transition = _classify(before, after)
        if after == 0:
            portfolio.positions.remove(position)
            position = None
        else:
            carrying_cost = position.avg_price * before * position.lot_size
            cost_delta = fill.total_value if fill.side == "BUY" else -fill.total_value
            position.avg_price = (carrying_cost + cost_delta) / (after * position.lot_size)
            position.quantity = after
            position.current_price = fill.price
            valuation = value_position(position, fill.price)
            position.pnl = valuation.pnl
            position.pnl_percent = valuation.pnl_percent

    portfolio.cash_balance += fill.cash_delta

    logger.debug(
        "Fill applied",
        extra={
            "event": "position_transition",
            "instrument_key": fill.instrument.key,
            "transition": transition.value,
            "quantity_before": before,
            "quantity_after": after,
            "cash_delta": fill.cash_delta,
        },
    )
    return FillResult(
        transition=transition,
        position=position,
        cash_delta=fill.cash_delta,
        quantity_before=before,
        quantity_after=after,
    )
