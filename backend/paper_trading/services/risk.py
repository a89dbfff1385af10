from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Iterable

from .valuation import PositionLike

HIGH_LEVERAGE = 3.0
MEDIUM_LEVERAGE = 2.0
HIGH_CONCENTRATION = 0.5
MEDIUM_CONCENTRATION = 0.3
DIVERSIFICATION_TARGET = 10


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


@dataclass(frozen=True)
class RiskMetrics:
    total_exposure: float = 0.0
    leverage_ratio: float = 0.0
    concentration_risk: float = 0.0
    max_position_size: float = 0.0
    diversification_score: float = 0.0
    risk_level: RiskLevel = RiskLevel.LOW

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["risk_level"] = self.risk_level.value
        return payload


def classify_risk(leverage: float, concentration: float) -> RiskLevel:
    if leverage > HIGH_LEVERAGE or concentration > HIGH_CONCENTRATION:
        return RiskLevel.HIGH
    if leverage > MEDIUM_LEVERAGE or concentration > MEDIUM_CONCENTRATION:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def compute_risk_metrics(positions: Iterable[PositionLike], portfolio_value: float) -> RiskMetrics:
    """Exposure-based risk figures; exposure uses current price, else average price."""

    exposure = 0.0
    largest = 0.0
    distinct: set[tuple[Any, Any, Any]] = set()

    for position in positions:
        price = position.current_price if position.current_price is not None else position.avg_price
        size = abs((price or 0.0) * position.quantity * position.lot_size)
        exposure += size
        largest = max(largest, size)
        distinct.add((getattr(position, "strike", None), getattr(position, "option_type", None), getattr(position, "expiry", None)))

    leverage = exposure / portfolio_value if portfolio_value > 0 else 0.0
    concentration = largest / exposure if exposure > 0 else 0.0
    diversification = min(len(distinct) / DIVERSIFICATION_TARGET, 1.0)

    return RiskMetrics(
        total_exposure=round(exposure, 2),
        leverage_ratio=round(leverage, 2),
        concentration_risk=round(concentration, 2),
        max_position_size=round(largest, 2),
        diversification_score=round(diversification, 2),
        risk_level=classify_risk(leverage, concentration),
    )
