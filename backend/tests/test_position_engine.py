from datetime import date

import pytest

from paper_trading.models.paper_trade import Portfolio
from paper_trading.services.errors import InsufficientBalanceError, ValidationError
from paper_trading.services.instruments import Instrument
from paper_trading.services.position_engine import Fill, PositionTransition, apply_fill, find_position

CALL = Instrument(symbol="NIFTY", option_type="CE", strike=22000, expiry=date(2025, 1, 9))
PUT = Instrument(symbol="NIFTY", option_type="PE", strike=22000, expiry=date(2025, 1, 9))


def make_portfolio(cash: float = 1_000_000.0) -> Portfolio:
    return Portfolio(session_id="engine", cash_balance=cash, positions=[])


def fill(side: str, quantity: int, price: float, instrument: Instrument = CALL) -> Fill:
    return Fill(instrument=instrument, side=side, quantity=quantity, price=price, lot_size=50)


def test_buy_opens_long_and_debits_cash():
    portfolio = make_portfolio()
    result = apply_fill(portfolio, fill("BUY", 2, 100.0), order_id="o-1")

    assert result.transition is PositionTransition.OPENED_LONG
    assert portfolio.cash_balance == 990_000.0
    position = find_position(portfolio, CALL)
    assert position.quantity == 2
    assert position.avg_price == 100.0
    assert position.opening_order_id == "o-1"


def test_partial_sell_rebases_average_on_signed_cost():
    portfolio = make_portfolio()
    apply_fill(portfolio, fill("BUY", 2, 100.0))
    result = apply_fill(portfolio, fill("SELL", 1, 150.0))

    assert result.transition is PositionTransition.REDUCED
    assert portfolio.cash_balance == 997_500.0
    position = find_position(portfolio, CALL)
    assert position.quantity == 1
    # (100 x 2 x 50 - 7500) / (1 x 50); leaving lot off the first term would give -146.
    assert position.avg_price == pytest.approx(50.0)
    assert position.current_price == 150.0
    assert position.pnl == 5000.0


def test_adding_to_long_averages_price():
    portfolio = make_portfolio()
    apply_fill(portfolio, fill("BUY", 1, 100.0))
    result = apply_fill(portfolio, fill("BUY", 1, 120.0))

    assert result.transition is PositionTransition.INCREASED
    assert find_position(portfolio, CALL).avg_price == pytest.approx(110.0)


@pytest.mark.parametrize(
    ("side", "legs"),
    [
        ("BUY", [(1, 100.0), (3, 120.0), (2, 90.0)]),
        ("BUY", [(5, 42.5), (1, 61.0), (4, 38.25), (2, 55.0)]),
        ("SELL", [(1, 200.0), (2, 170.0)]),
        ("SELL", [(3, 80.0), (1, 95.0), (6, 72.0)]),
    ],
)
def test_average_is_weighted_by_size_for_same_direction_fills(side, legs):
    portfolio = make_portfolio()
    for quantity, price in legs:
        result = apply_fill(portfolio, fill(side, quantity, price))

    total_quantity = sum(quantity for quantity, _ in legs)
    notional = sum(quantity * price * 50 for quantity, price in legs)
    sign = 1 if side == "BUY" else -1

    assert result.transition is PositionTransition.INCREASED
    position = find_position(portfolio, CALL)
    assert position.quantity == sign * total_quantity
    assert position.avg_price == pytest.approx(sum(quantity * price for quantity, price in legs) / total_quantity)
    assert portfolio.cash_balance == pytest.approx(1_000_000.0 - sign * notional)


def test_adding_to_short_keeps_average_positive():
    portfolio = make_portfolio()
    apply_fill(portfolio, fill("SELL", 1, 200.0, PUT))
    apply_fill(portfolio, fill("SELL", 2, 170.0, PUT))

    position = find_position(portfolio, PUT)
    assert position.quantity == -3
    assert position.avg_price == pytest.approx(180.0)
    assert portfolio.cash_balance == 1_027_000.0


def test_netting_to_zero_removes_position():
    portfolio = make_portfolio()
    apply_fill(portfolio, fill("BUY", 1, 100.0))
    result = apply_fill(portfolio, fill("SELL", 1, 120.0))

    assert result.transition is PositionTransition.CLOSED
    assert result.position is None
    assert portfolio.positions == []
    assert portfolio.cash_balance == 1_001_000.0


def test_sell_without_position_opens_short_and_credits_cash():
    portfolio = make_portfolio()
    result = apply_fill(portfolio, fill("SELL", 1, 200.0, PUT))

    assert result.transition is PositionTransition.OPENED_SHORT
    assert find_position(portfolio, PUT).quantity == -1
    assert portfolio.cash_balance == 1_010_000.0


def test_oversized_sell_flips_position():
    portfolio = make_portfolio()
    apply_fill(portfolio, fill("BUY", 1, 100.0))
    result = apply_fill(portfolio, fill("SELL", 3, 80.0))

    assert result.transition is PositionTransition.FLIPPED
    position = find_position(portfolio, CALL)
    assert position.quantity == -2
    assert position.avg_price == pytest.approx(70.0)


def test_instruments_are_kept_apart():
    portfolio = make_portfolio()
    apply_fill(portfolio, fill("BUY", 1, 100.0, CALL))
    apply_fill(portfolio, fill("BUY", 1, 90.0, PUT))
    assert len(portfolio.positions) == 2


def test_insufficient_balance_leaves_portfolio_untouched():
    portfolio = make_portfolio(cash=1000.0)
    with pytest.raises(InsufficientBalanceError) as excinfo:
        apply_fill(portfolio, fill("BUY", 1, 100.0))

    assert excinfo.value.available == 1000.0
    assert excinfo.value.required == 5000.0
    assert portfolio.cash_balance == 1000.0
    assert portfolio.positions == []


@pytest.mark.parametrize(
    ("side", "quantity", "price"),
    [("HOLD", 1, 100.0), ("BUY", 0, 100.0), ("SELL", -1, 100.0), ("BUY", 1, 0.0)],
)
def test_fill_rejects_malformed_input(side, quantity, price):
    with pytest.raises(ValidationError):
        fill(side, quantity, price)
