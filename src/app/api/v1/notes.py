"""REST API endpoints for daily/weekly notes and their Notion sync.

Notion calls use the workspace integration (NOTION_TOKEN) when it is
configured, else the key the user saved in their profile.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from notion_client.errors import APIResponseError
from pydantic import BaseModel

from src.app.api.deps import get_current_user
from src.app.config import get_settings
from src.app.models.user import User
from src.app.notes.schemas import (
    DailyNoteRead,
    DailyNoteUpsert,
    NotionSyncResult,
    WeeklyNoteRead,
    WeeklyNoteUpsert,
)
from src.app.services.notion import NotionService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/notes", tags=["notes"])


class NotionSyncRequest(BaseModel):
    date: dt.date | None = None


class WeeklySyncRequest(BaseModel):
    date: dt.date
    content: str | None = None


class PageTestRequest(BaseModel):
    page_id: str


class PageTestResult(BaseModel):
    success: bool
    message: str


def _get_notes_repository(request: Request) -> Any:
    """Retrieve NotesRepository from app.state, 503 if not available."""
    repo = getattr(request.app.state, "notes_repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Notes not initialized",
        )
    return repo


@asynccontextmanager
async def _notion_for(request: Request, user: User) -> AsyncIterator[NotionService]:
    """Yield the shared NotionService, or a short-lived one on the user's key."""
    shared = getattr(request.app.state, "notion_service", None)
    if shared is not None:
        yield shared
        return
    if not user.notion_api_key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Notion is not connected",
        )
    settings = get_settings()
    service = NotionService(
        token=user.notion_api_key,
        market_db_id=settings.NOTION_MARKET_NOTES_DB_ID,
        stock_db_id=settings.NOTION_STOCK_NOTES_DB_ID,
        weekly_db_id=settings.NOTION_WEEKLY_NOTES_DB_ID,
    )
    try:
        yield service
    finally:
        await service.aclose()


# ── Daily notes ──────────────────────────────────────────────────────────────


@router.get("/daily", response_model=list[DailyNoteRead])
async def list_daily_notes(
    request: Request,
    day: dt.date | None = Query(None, alias="date"),
    user: User = Depends(get_current_user),
) -> list[DailyNoteRead]:
    repo = _get_notes_repository(request)
    return await repo.list_daily_notes(str(user.id), day)


@router.get("/daily/{day}", response_model=DailyNoteRead)
async def get_daily_note(
    day: dt.date,
    request: Request,
    user: User = Depends(get_current_user),
) -> DailyNoteRead:
    repo = _get_notes_repository(request)
    note = await repo.get_daily_note(str(user.id), day)
    if note is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No note for {day.isoformat()}",
        )
    return note


@router.put("/daily", response_model=DailyNoteRead)
async def save_daily_note(
    body: DailyNoteUpsert,
    request: Request,
    user: User = Depends(get_current_user),
) -> DailyNoteRead:
    repo = _get_notes_repository(request)
    return await repo.save_daily_note(str(user.id), body)


@router.delete("/daily/{day}", status_code=204)
async def delete_daily_note(
    day: dt.date,
    request: Request,
    user: User = Depends(get_current_user),
) -> None:
    repo = _get_notes_repository(request)
    if not await repo.delete_daily_note(str(user.id), day):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No note for {day.isoformat()}",
        )


# ── Weekly notes ─────────────────────────────────────────────────────────────


@router.get("/weekly/{week_end_date}", response_model=WeeklyNoteRead)
async def get_weekly_note(
    week_end_date: dt.date,
    request: Request,
    user: User = Depends(get_current_user),
) -> WeeklyNoteRead:
    repo = _get_notes_repository(request)
    note = await repo.get_weekly_note(str(user.id), week_end_date)
    if note is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No weekly note for {week_end_date.isoformat()}",
        )
    return note


@router.put("/weekly", response_model=WeeklyNoteRead)
async def save_weekly_note(
    body: WeeklyNoteUpsert,
    request: Request,
    user: User = Depends(get_current_user),
) -> WeeklyNoteRead:
    repo = _get_notes_repository(request)
    return await repo.save_weekly_note(str(user.id), body)


# ── Notion ───────────────────────────────────────────────────────────────────


@router.post("/notion/sync", response_model=NotionSyncResult)
async def sync_to_notion(
    body: NotionSyncRequest,
    request: Request,
    user: User = Depends(get_current_user),
) -> NotionSyncResult:
    """Push daily market notes and stock notes (one day, or all) to Notion."""
    repo = _get_notes_repository(request)
    uid = str(user.id)
    daily = await repo.list_daily_notes(uid, body.date)
    stock_repo = getattr(request.app.state, "stock_repository", None)
    stock_notes = await stock_repo.list_notes(uid, day=body.date) if stock_repo else []

    async with _notion_for(request, user) as notion:
        try:
            return await notion.sync_notes(daily, stock_notes)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.post("/notion/sync-weekly", response_model=NotionSyncResult)
async def sync_weekly_to_notion(
    body: WeeklySyncRequest,
    request: Request,
    user: User = Depends(get_current_user),
) -> NotionSyncResult:
    """Push a weekly note to Notion; without content the stored note is used."""
    content = body.content
    if content is None:
        repo = _get_notes_repository(request)
        stored = await repo.get_weekly_note(str(user.id), body.date)
        content = stored.content if stored else ""

    async with _notion_for(request, user) as notion:
        try:
            return await notion.sync_weekly_notes(body.date.isoformat(), content)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        except APIResponseError as exc:
            logger.error("notes.weekly_sync_failed", date=body.date.isoformat(), error=str(exc))
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


@router.post("/notion/test-page", response_model=PageTestResult)
async def test_page_access(
    body: PageTestRequest,
    request: Request,
    user: User = Depends(get_current_user),
) -> PageTestResult:
    async with _notion_for(request, user) as notion:
        return PageTestResult(**await notion.test_page_access(body.page_id))
