from datetime import date, datetime, timedelta, timezone

import pytest

from paper_trading.services.market_clock import ExpiryWindow, MarketClock, MarketPhase, format_time_until

IST = timezone(timedelta(hours=5, minutes=30))
CLOCK = MarketClock()


def ist(year, month, day, hour, minute=0):
    return datetime(year, month, day, hour, minute, tzinfo=IST)


@pytest.mark.parametrize(
    ("at", "expected"),
    [
        (ist(2025, 1, 6, 8, 59), MarketPhase.CLOSED),
        (ist(2025, 1, 6, 9, 0), MarketPhase.PRE_MARKET),
        (ist(2025, 1, 6, 9, 14), MarketPhase.PRE_MARKET),
        (ist(2025, 1, 6, 9, 15), MarketPhase.OPEN),
        (ist(2025, 1, 6, 15, 30), MarketPhase.OPEN),
        (ist(2025, 1, 6, 15, 31), MarketPhase.POST_MARKET),
        (ist(2025, 1, 6, 16, 0), MarketPhase.POST_MARKET),
        (ist(2025, 1, 6, 16, 1), MarketPhase.CLOSED),
        (ist(2025, 1, 11, 11, 0), MarketPhase.CLOSED),
        (ist(2025, 1, 12, 11, 0), MarketPhase.CLOSED),
    ],
)
def test_phase_boundaries(at, expected):
    assert CLOCK.phase(at) is expected


def test_utc_input_is_converted_to_exchange_time():
    # 03:45 UTC is 09:15 IST
    assert CLOCK.phase(datetime(2025, 1, 6, 3, 45, tzinfo=timezone.utc)) is MarketPhase.OPEN
    assert CLOCK.phase(datetime(2025, 1, 6, 3, 45)) is MarketPhase.OPEN


def test_expiry_windows_only_on_expiry_weekday():
    assert CLOCK.expiry_window(ist(2025, 1, 7, 13, 59)) is ExpiryWindow.NORMAL
    assert CLOCK.expiry_window(ist(2025, 1, 7, 14, 0)) is ExpiryWindow.PRE_EXPIRY
    assert CLOCK.expiry_window(ist(2025, 1, 7, 15, 45)) is ExpiryWindow.EXPIRY_SESSION
    assert CLOCK.expiry_window(ist(2025, 1, 7, 16, 0)) is ExpiryWindow.NORMAL
    assert CLOCK.expiry_window(ist(2025, 1, 8, 14, 30)) is ExpiryWindow.NORMAL


def test_next_expiry_counts_today_until_cutoff():
    assert CLOCK.next_expiry(ist(2025, 1, 7, 10, 0)) == date(2025, 1, 7)
    assert CLOCK.next_expiry(ist(2025, 1, 7, 15, 0)) == date(2025, 1, 14)
    assert CLOCK.next_expiry(ist(2025, 1, 9, 10, 0)) == date(2025, 1, 14)
    assert CLOCK.upcoming_expiries(3, ist(2025, 1, 6, 10, 0)) == [
        date(2025, 1, 7),
        date(2025, 1, 14),
        date(2025, 1, 21),
    ]


def test_trading_day_navigation_skips_weekends():
    friday = date(2025, 1, 10)
    monday = date(2025, 1, 13)
    assert CLOCK.next_trading_day(friday) == monday
    assert CLOCK.previous_trading_day(monday) == friday
    assert not CLOCK.is_trading_day(date(2025, 1, 11))


def test_expiries_in_month_lists_every_tuesday():
    expiries = CLOCK.expiries_in_month(2025, 1)
    assert expiries == [date(2025, 1, 7), date(2025, 1, 14), date(2025, 1, 21), date(2025, 1, 28)]


def test_time_until_next_event():
    during = CLOCK.time_until_next_event(ist(2025, 1, 6, 14, 0))
    assert during["event"] == "MARKET_CLOSE"
    assert during["formatted"] == "1h 30m"

    friday_night = CLOCK.time_until_next_event(ist(2025, 1, 10, 20, 0))
    assert friday_night["event"] == "MARKET_OPEN"
    assert friday_night["next_event_at"] == ist(2025, 1, 13, 9, 15)
    assert friday_night["formatted"] == "2d 13h 15m"

    assert CLOCK.time_until_next_event(ist(2025, 1, 6, 9, 5)) is None


def test_status_reports_reason_and_expiry_message():
    snapshot = CLOCK.status(ist(2025, 1, 11, 10, 0))
    assert snapshot["status"] is MarketPhase.CLOSED
    assert snapshot["reason"] == "Weekend"
    assert snapshot["is_expiry_day"] is False

    expiry = CLOCK.status(ist(2025, 1, 7, 15, 10))
    assert expiry["status"] is MarketPhase.OPEN
    assert expiry["expiry_window"] is ExpiryWindow.EXPIRY_SESSION
    assert "expiry" in expiry["expiry_message"].lower()


def test_format_time_until_short_durations():
    assert format_time_until(timedelta(seconds=42)) == "42s"
    assert format_time_until(timedelta(minutes=5, seconds=3)) == "5m 3s"
    assert format_time_until(timedelta(seconds=-10)) == "0s"
