from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from .errors import ValidationError

OPTION_TYPES = ("CE", "PE")
INDEX_TYPE = "INDEX"
EXPIRY_FORMATS = ("%Y-%m-%d", "%d-%m-%Y", "%d-%b-%Y", "%d/%m/%Y", "%Y/%m/%d")


@dataclass(frozen=True)
class Instrument:
    """An index or an option leg; equal only when every field matches exactly."""

    symbol: str
    option_type: str = INDEX_TYPE
    strike: int | None = None
    expiry: date | None = None

    @property
    def is_option(self) -> bool:
        return self.option_type in OPTION_TYPES

    @property
    def key(self) -> str:
        strike = str(self.strike) if self.strike is not None else "-"
        expiry = self.expiry.isoformat() if self.expiry is not None else "-"
        return f"{self.symbol}|{strike}|{self.option_type}|{expiry}"

    def describe(self) -> str:
        if not self.is_option:
            return self.symbol
        return f"{self.symbol} {self.strike} {self.option_type} {self.expiry.isoformat() if self.expiry else ''}".strip()


def parse_expiry(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        # Accept ISO timestamps as well as plain dates.
        if "T" in text:
            text = text.split("T", 1)[0]
        for fmt in EXPIRY_FORMATS:
            try:
                return datetime.strptime(text, fmt).date()
            except ValueError:
                continue
    raise ValidationError(f"Invalid expiry date '{value}'. Use YYYY-MM-DD")


def parse_strike(value: Any, strike_step: int) -> int:
    if isinstance(value, bool):
        raise ValidationError("strike must be a valid number")
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        raise ValidationError("strike must be a valid number") from None
    if numeric != numeric or numeric <= 0 or not numeric.is_integer():
        raise ValidationError("strike must be a positive whole number")
    strike = int(numeric)
    if strike_step > 0 and strike % strike_step != 0:
        raise ValidationError(f"strike must be a multiple of {strike_step}")
    return strike


def build_instrument(
    *,
    symbol: str,
    option_type: str | None,
    strike: Any = None,
    expiry: Any = None,
    strike_step: int = 50,
) -> Instrument:
    """Validate raw order parameters into an :class:`Instrument`."""

    normalized_symbol = (symbol or "").strip().upper()
    if not normalized_symbol:
        raise ValidationError("symbol is required")

    normalized_type = (option_type or INDEX_TYPE).strip().upper()
    if normalized_type == INDEX_TYPE:
        return Instrument(symbol=normalized_symbol)
    if normalized_type not in OPTION_TYPES:
        raise ValidationError("type must be one of CE, PE or INDEX")
    if strike in (None, "") or expiry in (None, ""):
        raise ValidationError("strike and expiry are required for options")

    return Instrument(
        symbol=normalized_symbol,
        option_type=normalized_type,
        strike=parse_strike(strike, strike_step),
        expiry=parse_expiry(expiry),
    )
