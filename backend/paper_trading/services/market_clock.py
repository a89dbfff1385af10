from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date, datetime, time as time_obj, timedelta, timezone
from enum import Enum
from typing import Any

UTC = timezone.utc

PRE_MARKET_START = 900
MARKET_OPEN = 915
MARKET_CLOSE = 1530
POST_MARKET_END = 1600
EXPIRY_CUTOFF_HOUR = 15


class MarketPhase(str, Enum):
    CLOSED = "CLOSED"
    PRE_MARKET = "PRE_MARKET"
    OPEN = "OPEN"
    POST_MARKET = "POST_MARKET"


class ExpiryWindow(str, Enum):
    NORMAL = "NORMAL"
    PRE_EXPIRY = "PRE_EXPIRY"
    EXPIRY_SESSION = "EXPIRY_SESSION"


_PHASE_REASONS = {
    MarketPhase.PRE_MARKET: "Pre-market session",
    MarketPhase.OPEN: "Regular trading session",
    MarketPhase.POST_MARKET: "Post-market session",
}

_EXPIRY_MESSAGES = {
    ExpiryWindow.NORMAL: "Regular trading session",
    ExpiryWindow.PRE_EXPIRY: "Approaching expiry session - increased volatility expected",
    ExpiryWindow.EXPIRY_SESSION: "Options expiry in progress - high volatility expected",
}


def format_time_until(delta: timedelta) -> str:
    seconds = max(int(delta.total_seconds()), 0)
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


@dataclass(frozen=True)
class MarketClock:
    """Derives the market phase from wall-clock time in the exchange's fixed offset.

    Every method is pure given ``at``; omitting it reads the current time.
    """

    utc_offset: timedelta = timedelta(hours=5, minutes=30)
    expiry_weekday: int = 1
    tz: timezone = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "tz", timezone(self.utc_offset))

    @classmethod
    def from_settings(cls, settings: Any) -> "MarketClock":
        return cls(
            utc_offset=timedelta(minutes=settings.exchange_utc_offset_minutes),
            expiry_weekday=settings.weekly_expiry_weekday,
        )

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def to_exchange_time(self, at: datetime | None = None) -> datetime:
        if at is None:
            return self.now()
        if at.tzinfo is None:
            at = at.replace(tzinfo=UTC)
        return at.astimezone(self.tz)

    def today(self, at: datetime | None = None) -> date:
        return self.to_exchange_time(at).date()

    def phase(self, at: datetime | None = None) -> MarketPhase:
        local = self.to_exchange_time(at)
        if not self.is_trading_day(local.date()):
            return MarketPhase.CLOSED
        hhmm = local.hour * 100 + local.minute
        if PRE_MARKET_START <= hhmm < MARKET_OPEN:
            return MarketPhase.PRE_MARKET
        if MARKET_OPEN <= hhmm <= MARKET_CLOSE:
            return MarketPhase.OPEN
        if MARKET_CLOSE < hhmm <= POST_MARKET_END:
            return MarketPhase.POST_MARKET
        return MarketPhase.CLOSED

    def is_open(self, at: datetime | None = None) -> bool:
        return self.phase(at) is MarketPhase.OPEN

    def is_expiry_day(self, day: date) -> bool:
        return day.weekday() == self.expiry_weekday

    def expiry_window(self, at: datetime | None = None) -> ExpiryWindow:
        local = self.to_exchange_time(at)
        if not self.is_expiry_day(local.date()):
            return ExpiryWindow.NORMAL
        if local.hour == 14:
            return ExpiryWindow.PRE_EXPIRY
        if local.hour == 15:
            return ExpiryWindow.EXPIRY_SESSION
        return ExpiryWindow.NORMAL

    @staticmethod
    def is_trading_day(day: date) -> bool:
        return day.weekday() < 5

    def next_trading_day(self, day: date) -> date:
        candidate = day + timedelta(days=1)
        while not self.is_trading_day(candidate):
            candidate += timedelta(days=1)
        return candidate

    def previous_trading_day(self, day: date) -> date:
        candidate = day - timedelta(days=1)
        while not self.is_trading_day(candidate):
            candidate -= timedelta(days=1)
        return candidate

    def next_expiry(self, at: datetime | None = None) -> date:
        """Return the current weekly expiry; expiry day itself counts until 15:00."""

        local = self.to_exchange_time(at)
        today = local.date()
        if self.is_expiry_day(today) and local.hour < EXPIRY_CUTOFF_HOUR:
            return today
        days_ahead = (self.expiry_weekday - today.weekday()) % 7
        return today + timedelta(days=days_ahead or 7)

    def upcoming_expiries(self, count: int = 3, at: datetime | None = None) -> list[date]:
        first = self.next_expiry(at)
        return [first + timedelta(weeks=offset) for offset in range(max(count, 0))]

    def expiries_in_month(self, year: int, month: int) -> list[date]:
        _, days_in_month = calendar.monthrange(year, month)
        return [
            date(year, month, day)
            for day in range(1, days_in_month + 1)
            if date(year, month, day).weekday() == self.expiry_weekday
        ]

    def time_until_next_event(self, at: datetime | None = None) -> dict[str, Any] | None:
        local = self.to_exchange_time(at)
        phase = self.phase(local)
        if phase is MarketPhase.OPEN:
            event_name = "MARKET_CLOSE"
            target = datetime.combine(local.date(), time_obj(15, 30), tzinfo=self.tz)
        elif phase is MarketPhase.CLOSED:
            event_name = "MARKET_OPEN"
            opening_today = datetime.combine(local.date(), time_obj(9, 15), tzinfo=self.tz)
            if self.is_trading_day(local.date()) and local < opening_today:
                target = opening_today
            else:
                target = datetime.combine(self.next_trading_day(local.date()), time_obj(9, 15), tzinfo=self.tz)
        else:
            return None
        remaining = target - local
        return {
            "event": event_name,
            "next_event_at": target,
            "seconds_until": max(remaining.total_seconds(), 0.0),
            "formatted": format_time_until(remaining),
        }

    def status(self, at: datetime | None = None) -> dict[str, Any]:
        local = self.to_exchange_time(at)
        phase = self.phase(local)
        window = self.expiry_window(local)
        if phase is MarketPhase.CLOSED:
            reason = "Weekend" if not self.is_trading_day(local.date()) else "Outside trading hours"
        else:
            reason = _PHASE_REASONS[phase]
        return {
            "status": phase,
            "reason": reason,
            "expiry_window": window,
            "expiry_message": _EXPIRY_MESSAGES[window],
            "is_expiry_day": self.is_expiry_day(local.date()),
            "exchange_time": local,
            "next_event": self.time_until_next_event(local),
        }
