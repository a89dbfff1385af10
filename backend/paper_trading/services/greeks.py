from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import date

from .instruments import parse_expiry

# Abramowitz & Stegun 7.1.26
_A1 = 0.254829592
_A2 = -0.284496736
_A3 = 1.421413741
_A4 = -1.453152027
_A5 = 1.061405429
_P = 0.3275911

DAYS_PER_YEAR = 365


@dataclass(frozen=True)
class Greeks:
    delta: float = 0.0
    gamma: float = 0.0
    theta: float = 0.0
    vega: float = 0.0
    rho: float = 0.0

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


def erf(x: float) -> float:
    sign = -1.0 if x < 0 else 1.0
    x = abs(x)
    t = 1.0 / (1.0 + _P * x)
    y = 1.0 - (((((_A5 * t + _A4) * t) + _A3) * t + _A2) * t + _A1) * t * math.exp(-x * x)
    return sign * y


def norm_cdf(x: float) -> float:
    return 0.5 * (1.0 + erf(x / math.sqrt(2.0)))


def norm_pdf(x: float) -> float:
    return math.exp(-0.5 * x * x) / math.sqrt(2.0 * math.pi)


def _rounded(delta: float, gamma: float, theta: float, vega: float, rho: float) -> Greeks:
    return Greeks(
        delta=round(delta, 4),
        gamma=round(gamma, 4),
        theta=round(theta, 2),
        vega=round(vega, 2),
        rho=round(rho, 2),
    )


def compute_greeks(
    strike: float | None,
    option_type: str | None,
    expiry: date | str | None,
    spot: float | None,
    *,
    volatility: float = 0.20,
    risk_free_rate: float = 0.06,
    today: date,
) -> Greeks:
    """Black-Scholes sensitivities for a European CE/PE leg.

    ``today`` is the current date in the exchange's time zone. Missing inputs,
    a non-positive spot or strike, or an unknown option type give all zeros. At
    or after expiry only the intrinsic delta (0 or +/-1) is reported.
    """

    if strike is None or expiry is None or spot is None or option_type not in ("CE", "PE"):
        return Greeks()
    if spot <= 0 or strike <= 0 or volatility <= 0:
        return Greeks()

    expiry_date = parse_expiry(expiry)
    years = (expiry_date - today).days / DAYS_PER_YEAR
    is_call = option_type == "CE"

    if years <= 0:
        if is_call:
            return Greeks(delta=1.0 if spot > strike else 0.0)
        return Greeks(delta=-1.0 if spot < strike else 0.0)

    sqrt_t = math.sqrt(years)
    sigma_sqrt_t = volatility * sqrt_t
    d1 = (math.log(spot / strike) + (risk_free_rate + volatility ** 2 / 2) * years) / sigma_sqrt_t
    d2 = d1 - sigma_sqrt_t
    density = norm_pdf(d1)
    discount = math.exp(-risk_free_rate * years)

    gamma = density / (spot * sigma_sqrt_t)
    vega = spot * density * sqrt_t
    decay = -spot * density * volatility / (2 * sqrt_t)

    if is_call:
        delta = norm_cdf(d1)
        theta = decay - risk_free_rate * strike * discount * norm_cdf(d2)
        rho = strike * years * discount * norm_cdf(d2)
    else:
        delta = norm_cdf(d1) - 1
        theta = decay + risk_free_rate * strike * discount * norm_cdf(-d2)
        rho = -strike * years * discount * norm_cdf(-d2)

    return _rounded(delta, gamma, theta, vega, rho)
