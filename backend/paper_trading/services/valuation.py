from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Protocol


class PositionLike(Protocol):
    instrument_key: str
    quantity: int
    avg_price: float
    lot_size: int
    current_price: float | None


@dataclass(frozen=True)
class PositionValuation:
    pnl: float = 0.0
    pnl_percent: float = 0.0
    pnl_points: float = 0.0


@dataclass(frozen=True)
class PositionBreakdown:
    instrument_key: str
    invested: float
    current_value: float
    pnl: float
    pnl_percent: float


@dataclass(frozen=True)
class PortfolioValuation:
    total_invested: float = 0.0
    current_value: float = 0.0
    total_pnl: float = 0.0
    total_pnl_percent: float = 0.0
    profitable_positions: int = 0
    losing_positions: int = 0
    max_profit: float = 0.0
    max_loss: float = 0.0
    positions: List[PositionBreakdown] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_invested": self.total_invested,
            "current_value": self.current_value,
            "total_pnl": self.total_pnl,
            "total_pnl_percent": self.total_pnl_percent,
            "profitable_positions": self.profitable_positions,
            "losing_positions": self.losing_positions,
            "max_profit": self.max_profit,
            "max_loss": self.max_loss,
            "positions": [
                {
                    "instrument_key": item.instrument_key,
                    "invested": item.invested,
                    "current_value": item.current_value,
                    "pnl": item.pnl,
                    "pnl_percent": item.pnl_percent,
                }
                for item in self.positions
            ],
        }


def _raw_valuation(quantity: int, avg_price: float | None, lot_size: int, current_price: float | None) -> tuple[float, float, float]:
    if not avg_price or current_price is None:
        return 0.0, 0.0, 0.0
    points = current_price - avg_price
    pnl = points * quantity * lot_size
    percent = points / avg_price * 100
    if quantity < 0:
        percent = -percent
    return pnl, percent, points


def value_position(position: PositionLike, current_price: float | None) -> PositionValuation:
    """Mark one position to ``current_price``.

    A zero or missing average price, or a missing current price, yields zeros
    rather than raising. Outputs are rounded to two decimals.
    """

    pnl, percent, points = _raw_valuation(position.quantity, position.avg_price, position.lot_size, current_price)
    return PositionValuation(pnl=round(pnl, 2), pnl_percent=round(percent, 2), pnl_points=round(points, 2))


def value_portfolio(positions: Iterable[PositionLike]) -> PortfolioValuation:
    """Aggregate marked-to-market figures across positions at their stored current price."""

    total_invested = 0.0
    current_value = 0.0
    total_pnl = 0.0
    profitable = 0
    losing = 0
    max_profit = 0.0
    max_loss = 0.0
    breakdown: List[PositionBreakdown] = []

    for position in positions:
        invested = abs((position.avg_price or 0.0) * position.quantity * position.lot_size)
        pnl, percent, _ = _raw_valuation(position.quantity, position.avg_price, position.lot_size, position.current_price)
        value = invested + pnl

        total_invested += invested
        current_value += value
        total_pnl += pnl
        if pnl > 0:
            profitable += 1
            max_profit = max(max_profit, pnl)
        elif pnl < 0:
            losing += 1
            max_loss = min(max_loss, pnl)

        breakdown.append(
            PositionBreakdown(
                instrument_key=position.instrument_key,
                invested=round(invested, 2),
                current_value=round(value, 2),
                pnl=round(pnl, 2),
                pnl_percent=round(percent, 2),
            )
        )

    total_percent = total_pnl / total_invested * 100 if total_invested else 0.0
    return PortfolioValuation(
        total_invested=round(total_invested, 2),
        current_value=round(current_value, 2),
        total_pnl=round(total_pnl, 2),
        total_pnl_percent=round(total_percent, 2),
        profitable_positions=profitable,
        losing_positions=losing,
        max_profit=round(max_profit, 2),
        max_loss=round(max_loss, 2),
        positions=breakdown,
    )
