from __future__ import annotations

import math
from typing import Sequence


def sharpe_ratio(pnls: Sequence[float]) -> float:
    """Mean over population standard deviation of per-trade P&L; no risk-free leg."""

    if len(pnls) < 2:
        return 0.0
    mean = sum(pnls) / len(pnls)
    variance = sum((value - mean) ** 2 for value in pnls) / len(pnls)
    std_dev = math.sqrt(variance)
    return round(mean / std_dev, 2) if std_dev else 0.0


def max_drawdown(pnls: Sequence[float]) -> float:
    """Largest peak-to-trough fall of cumulative P&L; ``pnls`` must be oldest first."""

    peak = 0.0
    running = 0.0
    worst = 0.0
    for value in pnls:
        running += value
        peak = max(peak, running)
        worst = max(worst, peak - running)
    return round(worst, 2)


def profit_factor(pnls: Sequence[float]) -> float:
    gains = sum(value for value in pnls if value > 0)
    losses = abs(sum(value for value in pnls if value < 0))
    return round(gains / losses, 2) if losses else 0.0
