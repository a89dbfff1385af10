from __future__ import annotations

import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..schemas.paper_trade import (
    DetailedPnLResponse,
    OrderRecord,
    PaginatedOrders,
    PlaceOrderRequest,
    PlaceOrderResponse,
    PortfolioResponse,
    ResetPortfolioRequest,
)
from ..services.errors import (
    InsufficientBalanceError,
    NotFoundError,
    PaperTradingError,
    QuoteUnavailableError,
    ValidationError,
)
from ..services.paper_trading_service import PaperTradingService
from .deps import get_paper_trading_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/papertrade", tags=["paper-trade"])


def raise_http_error(exc: Exception) -> NoReturn:
    """Translate a core error into the matching HTTP response."""

    if isinstance(exc, InsufficientBalanceError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Insufficient balance", "available": exc.available, "required": exc.required},
        ) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, QuoteUnavailableError):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
            headers={"Retry-After": "5"},
        ) from exc
    logger.error("Unhandled paper trading error", exc_info=exc, extra={"event": "paper_trade_unhandled_error"})
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error") from exc


@router.post("/orders", response_model=PlaceOrderResponse, status_code=status.HTTP_201_CREATED)
async def place_order(
    payload: PlaceOrderRequest,
    service: PaperTradingService = Depends(get_paper_trading_service),
):
    try:
        order = await service.place_order(
            payload.session_id,
            side=payload.side,
            quantity=payload.quantity,
            symbol=payload.symbol,
            option_type=payload.type,
            strike=payload.strike,
            expiry=payload.expiry,
            order_kind=payload.order_type,
            limit_price=payload.limit_price,
            order_id=payload.order_id,
            tags=payload.tags,
        )
        portfolio = await service.get_portfolio(order.session_id)
    except PaperTradingError as exc:
        raise_http_error(exc)
    except Exception as exc:  # noqa: BLE001
        raise_http_error(exc)
    return PlaceOrderResponse(
        order=OrderRecord.model_validate(order),
        cash_balance=portfolio["cash_balance"],
        total_positions=portfolio["summary"]["total_positions"],
    )


@router.get("/orders", response_model=PaginatedOrders)
async def list_orders(
    session_id: str = Query("default"),
    status_filter: Optional[str] = Query(None, alias="status"),
    symbol: Optional[str] = Query(None),
    type: Optional[str] = Query(None),
    limit: int = Query(50),
    offset: int = Query(0, ge=0),
    service: PaperTradingService = Depends(get_paper_trading_service),
):
    try:
        page = await service.list_orders(
            session_id,
            status=status_filter,
            symbol=symbol,
            option_type=type,
            limit=limit,
            offset=offset,
        )
    except PaperTradingError as exc:
        raise_http_error(exc)
    except Exception as exc:  # noqa: BLE001
        raise_http_error(exc)
    return PaginatedOrders(
        items=[OrderRecord.model_validate(order) for order in page["items"]],
        total=page["total"],
        limit=page["limit"],
        offset=page["offset"],
        has_more=page["has_more"],
    )


@router.get("/portfolio", response_model=PortfolioResponse)
async def get_portfolio(
    session_id: str = Query("default"),
    service: PaperTradingService = Depends(get_paper_trading_service),
):
    try:
        return await service.get_portfolio(session_id)
    except PaperTradingError as exc:
        raise_http_error(exc)
    except Exception as exc:  # noqa: BLE001
        raise_http_error(exc)


@router.get("/pnl", response_model=DetailedPnLResponse)
async def get_detailed_pnl(
    session_id: str = Query("default"),
    include_greeks: bool = Query(False),
    service: PaperTradingService = Depends(get_paper_trading_service),
):
    try:
        return await service.get_detailed_pnl(session_id, include_greeks=include_greeks)
    except PaperTradingError as exc:
        raise_http_error(exc)
    except Exception as exc:  # noqa: BLE001
        raise_http_error(exc)


@router.post("/reset", response_model=PortfolioResponse)
async def reset_portfolio(
    payload: ResetPortfolioRequest,
    service: PaperTradingService = Depends(get_paper_trading_service),
):
    try:
        return await service.reset_portfolio(payload.session_id)
    except PaperTradingError as exc:
        raise_http_error(exc)
    except Exception as exc:  # noqa: BLE001
        raise_http_error(exc)
