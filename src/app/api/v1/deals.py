"""REST API endpoints for the Pipeline module (deals) and the dashboard.

Deals are listed by deal_date (newest first, undated last) and can be
filtered and re-sorted server-side. Saving a deal whose key_contacts gained
contacts also logs an interaction for each new contact; that follow-up
write is best-effort and never fails the save.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from src.app.api.deps import get_current_user
from src.app.deals.dashboard import build_dashboard
from src.app.deals.filters import deal_stats, filter_deals, filter_options, sort_deals
from src.app.deals.schemas import (
    Dashboard,
    DealCreate,
    DealRead,
    DealStats,
    DealUpdate,
    FilterOptions,
)
from src.app.models.user import User

router = APIRouter(prefix="/deals", tags=["deals"])


def _get_deal_repository(request: Request) -> Any:
    """Retrieve DealRepository from app.state, 503 if not available."""
    repo = getattr(request.app.state, "deal_repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Deal management not initialized",
        )
    return repo


@router.get("", response_model=list[DealRead])
async def list_deals(
    request: Request,
    search: str | None = None,
    sector: str | None = None,
    deal_status: str | None = Query(None, alias="status"),
    funding_round: str | None = Query(None, alias="round"),
    sort_by: str = "deal_date",
    order: str = "desc",
    user: User = Depends(get_current_user),
) -> list[DealRead]:
    """List deals with optional filters; "all" disables a filter."""
    repo = _get_deal_repository(request)
    deals = await repo.list_deals(str(user.id))
    filtered = filter_deals(deals, search, sector, deal_status, funding_round)
    try:
        return sort_deals(filtered, sort_by, order)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.post("", response_model=DealRead, status_code=201)
async def create_deal(
    body: DealCreate,
    request: Request,
    user: User = Depends(get_current_user),
) -> DealRead:
    repo = _get_deal_repository(request)
    return await repo.create_deal(str(user.id), body)


@router.get("/stats", response_model=DealStats)
async def get_deal_stats(
    request: Request,
    user: User = Depends(get_current_user),
) -> DealStats:
    repo = _get_deal_repository(request)
    return deal_stats(await repo.list_deals(str(user.id)))


@router.get("/filter-options", response_model=FilterOptions)
async def get_filter_options(
    request: Request,
    user: User = Depends(get_current_user),
) -> FilterOptions:
    repo = _get_deal_repository(request)
    return filter_options(await repo.list_deals(str(user.id)))


@router.get("/dashboard", response_model=Dashboard)
async def get_dashboard(
    request: Request,
    user: User = Depends(get_current_user),
) -> Dashboard:
    """Home dashboard: counts, latest deals/contacts/interactions, notable deals."""
    repo = _get_deal_repository(request)
    uid = str(user.id)
    deals = await repo.list_deals(uid)

    contacts: list = []
    interactions: list = []
    access_repo = getattr(request.app.state, "access_repository", None)
    if access_repo is not None:
        contacts = await access_repo.list_contacts(uid)
        interactions = await access_repo.list_interactions(uid)

    active_sources = 0
    research_repo = getattr(request.app.state, "research_repository", None)
    if research_repo is not None:
        active_sources = await research_repo.count_active_sources(uid)

    return build_dashboard(contacts, interactions, deals, active_sources)


@router.get("/{deal_id}", response_model=DealRead)
async def get_deal(
    deal_id: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> DealRead:
    repo = _get_deal_repository(request)
    deal = await repo.get_deal(str(user.id), deal_id)
    if deal is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Deal not found: {deal_id}",
        )
    return deal


@router.patch("/{deal_id}", response_model=DealRead)
async def update_deal(
    deal_id: str,
    body: DealUpdate,
    request: Request,
    user: User = Depends(get_current_user),
) -> DealRead:
    repo = _get_deal_repository(request)
    try:
        return await repo.update_deal(str(user.id), deal_id, body)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.delete("/{deal_id}", status_code=204)
async def delete_deal(
    deal_id: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> None:
    repo = _get_deal_repository(request)
    if not await repo.delete_deal(str(user.id), deal_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Deal not found: {deal_id}",
        )
