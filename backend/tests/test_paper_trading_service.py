import asyncio
from datetime import date

import pytest
from sqlalchemy import select

from conftest import NIFTY_KEY
from paper_trading.core.config import get_settings
from paper_trading.models.paper_trade import Portfolio
from paper_trading.services.errors import InsufficientBalanceError, NotFoundError, QuoteUnavailableError, ValidationError
from paper_trading.services.instruments import Instrument
from paper_trading.services.paper_trading_service import PaperTradingService, SessionLockRegistry, default_session_locks

EXPIRY = "2025-01-09"
CALL = Instrument(symbol="NIFTY", option_type="CE", strike=22000, expiry=date(2025, 1, 9))
PUT = Instrument(symbol="NIFTY", option_type="PE", strike=21900, expiry=date(2025, 1, 9))


@pytest.fixture()
def service(db_session, quotes, session_locks):
    quotes.set_price(CALL, 100.0)
    quotes.set_price(PUT, 80.0)
    return PaperTradingService(db_session, quotes, get_settings(), locks=session_locks)


async def buy_call(service, session_id="alpha", quantity=2, **kwargs):
    return await service.place_order(
        session_id, side="BUY", quantity=quantity, option_type="CE", strike=22000, expiry=EXPIRY, **kwargs
    )


@pytest.mark.asyncio
async def test_first_buy_creates_portfolio_and_position(service):
    order = await buy_call(service)

    assert order.status == "FILLED"
    assert order.execution_price == 100.0
    assert order.total_value == 10_000.0
    assert order.order_id.startswith("ORD_")

    payload = await service.get_portfolio("alpha")
    assert payload["cash_balance"] == 990_000.0
    assert payload["total_value"] == 1_000_000.0
    [position] = payload["positions"]
    assert position["quantity"] == 2
    assert position["avg_price"] == 100.0
    assert position["instrument_key"] == CALL.key


@pytest.mark.asyncio
async def test_partial_sell_rebases_average_and_marks_pnl(service, quotes):
    await buy_call(service)
    quotes.set_price(CALL, 150.0)
    await service.place_order("alpha", side="SELL", quantity=1, option_type="CE", strike=22000, expiry=EXPIRY)

    payload = await service.get_portfolio("alpha")
    assert payload["cash_balance"] == 997_500.0
    [position] = payload["positions"]
    assert position["quantity"] == 1
    assert position["avg_price"] == pytest.approx(50.0)
    assert position["current_price"] == 150.0
    assert payload["total_pnl"] == 5000.0


@pytest.mark.asyncio
async def test_insufficient_balance_rejects_without_side_effects(service, db_session, quotes):
    quotes.set_price(CALL, 300.0)
    with pytest.raises(InsufficientBalanceError) as excinfo:
        await buy_call(service, session_id="beta", quantity=100)
    await db_session.rollback()

    assert excinfo.value.required == 1_500_000.0
    assert excinfo.value.available == 1_000_000.0
    orders = await service.list_orders("beta")
    assert orders["total"] == 0
    payload = await service.get_portfolio("beta")
    assert payload["cash_balance"] == 1_000_000.0
    assert payload["positions"] == []


@pytest.mark.parametrize(
    "overrides",
    [
        {"quantity": 0},
        {"quantity": 1.5},
        {"quantity": 101},
        {"side": "HOLD"},
        {"symbol": "BANKNIFTY"},
        {"strike": 22010},
        {"expiry": "soon"},
        {"order_kind": "LIMIT"},
        {"order_kind": "STOP"},
    ],
)
@pytest.mark.asyncio
async def test_invalid_orders_fail_before_fetching_quotes(service, quotes, overrides):
    params = dict(side="BUY", quantity=1, option_type="CE", strike=22000, expiry=EXPIRY)
    params.update(overrides)
    with pytest.raises(ValidationError):
        await service.place_order("alpha", **params)
    assert quotes.calls == []


@pytest.mark.asyncio
async def test_blank_session_id_is_rejected(service):
    with pytest.raises(ValidationError):
        await service.get_portfolio("   ")


@pytest.mark.asyncio
async def test_limit_order_fills_at_limit_price(service):
    order = await buy_call(service, quantity=1, order_kind="LIMIT", limit_price=95.0)
    assert order.execution_price == 95.0
    assert order.quote_price == 100.0
    assert order.order_kind == "LIMIT"


@pytest.mark.asyncio
async def test_quote_failure_leaves_ledger_untouched(service, quotes):
    quotes.drop_price(CALL)
    with pytest.raises(QuoteUnavailableError):
        await buy_call(service)
    assert (await service.list_orders("alpha"))["total"] == 0


@pytest.mark.asyncio
async def test_resubmitted_order_id_is_replayed(service):
    first = await buy_call(service, quantity=1, order_id="client-1")
    second = await buy_call(service, quantity=1, order_id="client-1")

    assert second.order_id == first.order_id
    assert (await service.list_orders("alpha"))["total"] == 1
    assert (await service.get_portfolio("alpha"))["cash_balance"] == 995_000.0

    with pytest.raises(ValidationError):
        await buy_call(service, session_id="gamma", quantity=1, order_id="client-1")


@pytest.mark.asyncio
async def test_concurrent_orders_on_one_session_are_serialized(session_factory, quotes, session_locks):
    quotes.set_price(CALL, 100.0)

    async def place():
        async with session_factory() as session:
            service = PaperTradingService(session, quotes, get_settings(), locks=session_locks)
            await buy_call(service, session_id="race", quantity=1)

    await asyncio.gather(*(place() for _ in range(5)))

    async with session_factory() as session:
        service = PaperTradingService(session, quotes, get_settings(), locks=session_locks)
        payload = await service.get_portfolio("race")
        orders = await service.list_orders("race")

    assert orders["total"] == 5
    assert payload["cash_balance"] == 975_000.0
    [position] = payload["positions"]
    assert position["quantity"] == 5
    assert len(session_locks) == 1


def test_injected_lock_registry_is_used_even_when_empty(quotes):
    registry = SessionLockRegistry()
    service = PaperTradingService(None, quotes, get_settings(), locks=registry)

    assert service.locks is registry
    assert PaperTradingService(None, quotes, get_settings()).locks is default_session_locks


@pytest.mark.asyncio
async def test_list_orders_filters_and_paginates(service):
    await buy_call(service, quantity=1)
    await buy_call(service, quantity=1)
    await service.place_order("alpha", side="SELL", quantity=1, option_type="PE", strike=21900, expiry=EXPIRY)

    page = await service.list_orders("alpha", limit=2)
    assert page["total"] == 3
    assert len(page["items"]) == 2
    assert page["has_more"] is True
    assert page["items"][0].option_type == "PE"

    rest = await service.list_orders("alpha", limit=2, offset=2)
    assert len(rest["items"]) == 1
    assert rest["has_more"] is False

    puts = await service.list_orders("alpha", option_type="pe")
    assert puts["total"] == 1
    assert (await service.list_orders("alpha", limit=500))["limit"] == 100


@pytest.mark.asyncio
async def test_reset_restores_initial_balance(service):
    await buy_call(service)
    payload = await service.reset_portfolio("alpha")

    assert payload["cash_balance"] == 1_000_000.0
    assert payload["positions"] == []
    assert payload["total_pnl"] == 0.0
    assert (await service.list_orders("alpha"))["total"] == 0


@pytest.mark.asyncio
async def test_reprice_keeps_last_price_when_quote_missing(service, quotes):
    await buy_call(service)
    quotes.set_price(CALL, 120.0)
    assert (await service.get_portfolio("alpha"))["positions"][0]["current_price"] == 120.0

    quotes.drop_price(CALL)
    payload = await service.get_portfolio("alpha")
    [position] = payload["positions"]
    assert position["current_price"] == 120.0
    assert position["pnl"] == 2000.0


@pytest.mark.asyncio
async def test_sweeps_reprice_and_roll_day_baseline(service, session_factory, quotes, session_locks):
    await buy_call(service)
    quotes.set_price(CALL, 110.0)

    stats = await PaperTradingService.reprice_all_portfolios(session_factory, quotes, get_settings(), locks=session_locks)
    assert stats == {"portfolios": 1, "failed_quotes": 0}

    assert await PaperTradingService.end_of_day(session_factory, quotes) == 1
    assert quotes.cleared == 1

    async with session_factory() as session:
        portfolio = (await session.execute(select(Portfolio).where(Portfolio.session_id == "alpha"))).scalar_one()
        assert portfolio.total_pnl == 1000.0
        assert portfolio.day_opening_pnl == 1000.0
        assert portfolio.day_pnl == 0.0

    quotes.set_price(CALL, 115.0)
    payload = await service.get_portfolio("alpha")
    assert payload["total_pnl"] == 1500.0
    assert payload["day_pnl"] == 500.0


@pytest.mark.asyncio
async def test_reprice_sweep_counts_failed_quotes(service, session_factory, quotes, session_locks):
    await buy_call(service)
    quotes.drop_price(CALL)
    stats = await PaperTradingService.reprice_all_portfolios(session_factory, quotes, get_settings(), locks=session_locks)
    assert stats == {"portfolios": 1, "failed_quotes": 1}


@pytest.mark.asyncio
async def test_detailed_pnl_requires_existing_portfolio(service):
    with pytest.raises(NotFoundError):
        await service.get_detailed_pnl("nobody")


@pytest.mark.asyncio
async def test_detailed_pnl_reports_greeks_and_stats(service, quotes):
    await buy_call(service)
    await service.place_order("alpha", side="SELL", quantity=1, option_type="PE", strike=21900, expiry=EXPIRY)
    quotes.set_price(CALL, 110.0)
    await service.get_portfolio("alpha")

    report = await service.get_detailed_pnl("alpha", include_greeks=True)

    assert report["market_data"]["spot_price"] == quotes.prices[NIFTY_KEY]
    assert report["session_stats"]["total_trades"] == 2
    assert report["session_stats"]["successful_trades"] == 1
    assert report["session_stats"]["win_rate"] == 50.0
    assert report["performance"]["total_return"] == 1000.0
    assert report["risk_metrics"]["risk_level"] in ("LOW", "MEDIUM", "HIGH")
    assert {"delta", "gamma", "theta", "vega", "rho"} <= set(report["positions"][0]["greeks"])
    assert report["pnl_summary"]["profitable_positions"] == 1
