"""REST API endpoints for the Stocks module.

Watchlist groups and their symbols, per-day stock notes, quotes served
from the shared price cache (filled by the fetch-stock-data function),
stored explanations of daily moves, the weekly multi-period view and
per-symbol performance.
"""

from __future__ import annotations

import datetime as dt
from typing import Any

import httpx
import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from src.app.api.deps import get_current_user
from src.app.api.errors import upstream_http_error
from src.app.models.user import User
from src.app.services.functions import FunctionError
from src.app.stocks.schemas import (
    ExplainRequest,
    QuotesRequest,
    StockCreate,
    StockExplanationRead,
    StockGroupCreate,
    StockGroupRead,
    StockGroupUpdate,
    StockNoteRead,
    StockNoteUpsert,
    StockPerformance,
    StockQuote,
    StockRead,
    StockUpdate,
    WeeklyRequest,
    WeeklyStats,
)
from src.app.stocks.weekly import build_weekly_stats, weekly_symbols

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/stocks", tags=["stocks"])


def _get_stock_repository(request: Request) -> Any:
    """Retrieve StockRepository from app.state, 503 if not available."""
    repo = getattr(request.app.state, "stock_repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stocks not initialized",
        )
    return repo


def _get_quote_service(request: Request) -> Any:
    service = getattr(request.app.state, "stock_quotes", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stock quotes not initialized",
        )
    return service


# ── Groups ───────────────────────────────────────────────────────────────────


@router.get("/groups", response_model=list[StockGroupRead])
async def list_groups(
    request: Request,
    user: User = Depends(get_current_user),
) -> list[StockGroupRead]:
    """Groups in display order, each with its symbols."""
    repo = _get_stock_repository(request)
    return await repo.list_groups(str(user.id))


@router.post("/groups", response_model=StockGroupRead, status_code=201)
async def create_group(
    body: StockGroupCreate,
    request: Request,
    user: User = Depends(get_current_user),
) -> StockGroupRead:
    repo = _get_stock_repository(request)
    return await repo.create_group(str(user.id), body)


@router.patch("/groups/{group_id}", response_model=StockGroupRead)
async def update_group(
    group_id: str,
    body: StockGroupUpdate,
    request: Request,
    user: User = Depends(get_current_user),
) -> StockGroupRead:
    repo = _get_stock_repository(request)
    try:
        return await repo.update_group(str(user.id), group_id, body)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.delete("/groups/{group_id}", status_code=204)
async def delete_group(
    group_id: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> None:
    repo = _get_stock_repository(request)
    if not await repo.delete_group(str(user.id), group_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Group not found: {group_id}",
        )


# ── Symbols ──────────────────────────────────────────────────────────────────


@router.post("/symbols", response_model=StockRead, status_code=201)
async def add_stock(
    body: StockCreate,
    request: Request,
    user: User = Depends(get_current_user),
) -> StockRead:
    repo = _get_stock_repository(request)
    try:
        return await repo.add_stock(str(user.id), body)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.patch("/symbols/{stock_id}", response_model=StockRead)
async def update_stock(
    stock_id: str,
    body: StockUpdate,
    request: Request,
    user: User = Depends(get_current_user),
) -> StockRead:
    repo = _get_stock_repository(request)
    try:
        return await repo.update_stock(str(user.id), stock_id, body)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.delete("/symbols/{stock_id}", status_code=204)
async def delete_stock(
    stock_id: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> None:
    repo = _get_stock_repository(request)
    if not await repo.delete_stock(str(user.id), stock_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Stock not found: {stock_id}",
        )


# ── Quotes ───────────────────────────────────────────────────────────────────


@router.post("/quotes", response_model=dict[str, StockQuote])
async def get_quotes(
    body: QuotesRequest,
    request: Request,
    user: User = Depends(get_current_user),
) -> dict[str, StockQuote]:
    """Quotes for the day, cached first; fresh fetch failures fall back to the cache."""
    service = _get_quote_service(request)
    return await service.get_quotes(body.symbols, body.date, force_refresh=body.force_refresh)


# ── Notes ────────────────────────────────────────────────────────────────────


@router.get("/notes", response_model=list[StockNoteRead])
async def list_notes(
    request: Request,
    day: dt.date | None = Query(None, alias="date"),
    symbol: str | None = None,
    user: User = Depends(get_current_user),
) -> list[StockNoteRead]:
    repo = _get_stock_repository(request)
    return await repo.list_notes(str(user.id), day=day, symbol=symbol)


@router.put("/notes", response_model=StockNoteRead)
async def save_note(
    body: StockNoteUpsert,
    request: Request,
    user: User = Depends(get_current_user),
) -> StockNoteRead:
    repo = _get_stock_repository(request)
    return await repo.save_note(str(user.id), body)


@router.delete("/notes/{symbol}/{day}", status_code=204)
async def delete_note(
    symbol: str,
    day: dt.date,
    request: Request,
    user: User = Depends(get_current_user),
) -> None:
    repo = _get_stock_repository(request)
    if not await repo.delete_note(str(user.id), symbol, day):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Note not found: {symbol} {day.isoformat()}",
        )


# ── Explanations ─────────────────────────────────────────────────────────────


@router.get("/explanations", response_model=list[StockExplanationRead])
async def list_explanations(
    request: Request,
    day: dt.date = Query(..., alias="date"),
    symbols: list[str] | None = Query(None),
    user: User = Depends(get_current_user),
) -> list[StockExplanationRead]:
    repo = _get_stock_repository(request)
    wanted = [s.strip().upper() for s in symbols] if symbols else None
    return await repo.list_explanations(str(user.id), day, wanted)


@router.post("/explain", response_model=StockExplanationRead)
async def explain_movement(
    body: ExplainRequest,
    request: Request,
    user: User = Depends(get_current_user),
) -> StockExplanationRead:
    """Ask why a symbol moved on a day and store the answer."""
    service = _get_quote_service(request)
    try:
        return await service.explain_movement(
            str(user.id), body.symbol, body.change_percent, body.date
        )
    except (FunctionError, httpx.HTTPError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


# ── Weekly stats and performance ─────────────────────────────────────────────


@router.post("/weekly", response_model=WeeklyStats)
async def weekly_stats(
    body: WeeklyRequest,
    request: Request,
    user: User = Depends(get_current_user),
) -> WeeklyStats:
    """Every group's week, month, YTD and year moves, ranked by ``timeframe``."""
    repo = _get_stock_repository(request)
    service = _get_quote_service(request)
    groups = await repo.list_groups(str(user.id))
    try:
        data = await service.weekly_data(weekly_symbols(groups), body.week_end_date)
    except (FunctionError, httpx.HTTPError) as exc:
        logger.warning("stocks.weekly_failed", user_id=str(user.id), error=str(exc))
        raise upstream_http_error(exc, "Failed to fetch weekly stock data")
    return build_weekly_stats(groups, data, body.week_end_date, body.timeframe, body.ascending)


@router.get("/performance/{symbol}", response_model=StockPerformance)
async def stock_performance(
    symbol: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> StockPerformance:
    service = _get_quote_service(request)
    try:
        return await service.performance(symbol)
    except (FunctionError, httpx.HTTPError, ValueError) as exc:
        raise upstream_http_error(exc, "Failed to fetch stock performance")
