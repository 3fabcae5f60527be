"""REST API endpoints for the Research module.

Covers sources and their items, full-text item search, source sync
(per-source, or a full run with progress and stop), summary generation
streamed as Server-Sent Events, summary history, and logo uploads.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
import structlog
from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from src.app.api.deps import get_current_user
from src.app.api.errors import upstream_http_error
from src.app.models.user import User
from src.app.research.filters import filter_sources
from src.app.research.schemas import (
    ItemCreate,
    ItemRead,
    SearchResult,
    SourceCreate,
    SourceLink,
    SourceRead,
    SourceUpdate,
    SummaryHistoryRead,
    SummaryStage,
    SyncProgress,
    SyncResult,
)
from src.app.research.source_tags import annotate_summary
from src.app.research.summary import DEFAULT_ERROR
from src.app.research.sync import SyncInProgressError
from src.app.services.functions import FunctionError
from src.app.services.storage import InvalidUploadError

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/research", tags=["research"])


# ── Request / Response Schemas ───────────────────────────────────────────────


class SyncRequest(BaseModel):
    source_ids: list[str] | None = None


class MarkReadRequest(BaseModel):
    is_read: bool = True


class MarkAllReadRequest(BaseModel):
    source_ids: list[str] | None = None


class CountResponse(BaseModel):
    count: int


class SummaryRequest(BaseModel):
    source_ids: list[str] = Field(default_factory=list)
    mark_as_read: bool = False
    max_items: int | None = Field(default=None, ge=1)


class FavoriteRequest(BaseModel):
    is_favorite: bool


class AnnotateRequest(BaseModel):
    summary: str


class AnnotateResponse(BaseModel):
    markdown: str
    sources: list[SourceLink]


class LogoResponse(BaseModel):
    url: str


class StopResponse(BaseModel):
    stopping: bool


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _get_state(request: Request, name: str, label: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return value


def _get_research_repository(request: Request) -> Any:
    return _get_state(request, "research_repository", "Research")


def _get_sync_service(request: Request) -> Any:
    return _get_state(request, "research_sync", "Research sync")


def _get_summary_service(request: Request) -> Any:
    return _get_state(request, "summary_service", "Research summary")


def _source_not_found(source_id: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Source not found: {source_id}")


# ── Sources ──────────────────────────────────────────────────────────────────


@router.get("/sources", response_model=list[SourceRead])
async def list_sources(
    request: Request,
    category: str | None = None,
    priority: str | None = None,
    tag: str | None = None,
    unread_only: bool = False,
    q: str | None = None,
    user: User = Depends(get_current_user),
) -> list[SourceRead]:
    """List sources with unread counts.

    Without filters the stored display order is kept; any filter switches
    to priority-then-name ordering.
    """
    repo = _get_research_repository(request)
    sources = await repo.list_sources(str(user.id))
    if not any((category, priority, tag, unread_only, q)):
        return sources
    try:
        return filter_sources(sources, category, priority, tag, unread_only, q)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid priority: {priority}",
        )


@router.post("/sources", response_model=SourceRead, status_code=201)
async def create_source(
    body: SourceCreate,
    request: Request,
    user: User = Depends(get_current_user),
) -> SourceRead:
    repo = _get_research_repository(request)
    return await repo.create_source(str(user.id), body)


@router.get("/sources/{source_id}", response_model=SourceRead)
async def get_source(
    source_id: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> SourceRead:
    repo = _get_research_repository(request)
    source = await repo.get_source(str(user.id), source_id)
    if source is None:
        raise _source_not_found(source_id)
    return source


@router.patch("/sources/{source_id}", response_model=SourceRead)
async def update_source(
    source_id: str,
    body: SourceUpdate,
    request: Request,
    user: User = Depends(get_current_user),
) -> SourceRead:
    repo = _get_research_repository(request)
    try:
        return await repo.update_source(str(user.id), source_id, body)
    except ValueError:
        raise _source_not_found(source_id)


@router.delete("/sources/{source_id}", status_code=204)
async def delete_source(
    source_id: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> None:
    repo = _get_research_repository(request)
    if not await repo.delete_source(str(user.id), source_id):
        raise _source_not_found(source_id)


@router.post("/sources/logo", response_model=LogoResponse, status_code=201)
async def upload_logo(
    request: Request,
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
) -> LogoResponse:
    """Store a source logo image and return its public URL."""
    storage = _get_state(request, "logo_storage", "Logo storage")
    data = await file.read()
    try:
        url = await storage.save_logo(str(user.id), data, file.filename, file.content_type)
    except InvalidUploadError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return LogoResponse(url=url)


# ── Items ────────────────────────────────────────────────────────────────────


@router.get("/sources/{source_id}/items", response_model=list[ItemRead])
async def list_items(
    source_id: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> list[ItemRead]:
    repo = _get_research_repository(request)
    return await repo.list_items(str(user.id), source_id)


@router.post("/sources/{source_id}/items", response_model=ItemRead, status_code=201)
async def add_item(
    source_id: str,
    body: ItemCreate,
    request: Request,
    user: User = Depends(get_current_user),
) -> ItemRead:
    """Add an item by hand, unread and published now."""
    repo = _get_research_repository(request)
    try:
        return await repo.add_item(str(user.id), source_id, body)
    except ValueError:
        raise _source_not_found(source_id)


@router.delete("/sources/{source_id}/items", response_model=CountResponse)
async def clear_source_items(
    source_id: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> CountResponse:
    repo = _get_research_repository(request)
    return CountResponse(count=await repo.clear_items(str(user.id), source_id))


@router.delete("/items", response_model=CountResponse)
async def clear_all_items(
    request: Request,
    user: User = Depends(get_current_user),
) -> CountResponse:
    repo = _get_research_repository(request)
    return CountResponse(count=await repo.clear_items(str(user.id)))


@router.patch("/items/{item_id}/read", status_code=204)
async def mark_item_read(
    item_id: str,
    body: MarkReadRequest,
    request: Request,
    user: User = Depends(get_current_user),
) -> None:
    repo = _get_research_repository(request)
    if not await repo.mark_item_read(str(user.id), item_id, body.is_read):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Item not found: {item_id}",
        )


@router.post("/items/mark-read", response_model=CountResponse)
async def mark_all_read(
    body: MarkAllReadRequest,
    request: Request,
    user: User = Depends(get_current_user),
) -> CountResponse:
    """Mark every unread item read, optionally only for the given sources."""
    repo = _get_research_repository(request)
    return CountResponse(count=await repo.mark_all_read(str(user.id), body.source_ids))


@router.get("/search", response_model=list[SearchResult])
async def search_items(
    request: Request,
    q: str = "",
    category: str | None = None,
    user: User = Depends(get_current_user),
) -> list[SearchResult]:
    repo = _get_research_repository(request)
    return await repo.search_items(str(user.id), q, category)


# ── Sync ─────────────────────────────────────────────────────────────────────


@router.post("/sync", response_model=SyncResult)
async def sync_sources(
    body: SyncRequest,
    request: Request,
    user: User = Depends(get_current_user),
) -> SyncResult:
    """Sync the selected (or all) sources one after another."""
    service = _get_sync_service(request)
    return await service.sync_sources(str(user.id), body.source_ids)


@router.post("/sync/all", response_model=SyncResult)
async def sync_all(
    request: Request,
    user: User = Depends(get_current_user),
) -> SyncResult:
    """Run a full sync in concurrent batches; 409 if one is already running."""
    service = _get_sync_service(request)
    try:
        return await service.sync_all(str(user.id))
    except SyncInProgressError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


@router.get("/sync/progress", response_model=SyncProgress)
async def sync_progress(
    request: Request,
    user: User = Depends(get_current_user),
) -> SyncProgress:
    service = _get_sync_service(request)
    return service.progress(str(user.id))


@router.post("/sync/stop", response_model=StopResponse)
async def stop_sync(
    request: Request,
    user: User = Depends(get_current_user),
) -> StopResponse:
    service = _get_sync_service(request)
    return StopResponse(stopping=service.request_stop(str(user.id)))


# ── Summary ──────────────────────────────────────────────────────────────────


@router.post("/summary")
async def generate_summary(
    body: SummaryRequest,
    request: Request,
    user: User = Depends(get_current_user),
):
    """Stream a research summary as SSE.

    Starting a new summary supersedes the user's run in flight; that
    stream ends with a ``cancelled`` event. The stream is read up to its
    ``streaming`` stage before answering, so a function that fails to open
    answers with an HTTP error instead of a 200 stream.
    """
    service = _get_summary_service(request)
    events = service.stream(
        str(user.id),
        body.source_ids,
        mark_as_read=body.mark_as_read,
        max_items=body.max_items,
    )

    primed: list[dict] = []
    try:
        while not primed or primed[-1].get("stage") == SummaryStage.PREPARING.value:
            primed.append(await events.__anext__())
    except StopAsyncIteration:
        pass
    except (FunctionError, httpx.HTTPError) as exc:
        await events.aclose()
        logger.warning("research.summary_failed", user_id=str(user.id), error=str(exc))
        raise upstream_http_error(exc, DEFAULT_ERROR)

    async def event_generator():
        for event in primed:
            yield f"data: {json.dumps(event, default=str)}\n\n"
        try:
            async for event in events:
                yield f"data: {json.dumps(event, default=str)}\n\n"
        except (FunctionError, httpx.HTTPError) as exc:
            logger.warning("research.summary_failed", user_id=str(user.id), error=str(exc))
            error = {"type": "error", "error": str(exc) or DEFAULT_ERROR}
            yield f"data: {json.dumps(error)}\n\n"
        yield "data: [DONE]\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.post("/summary/cancel", response_model=StopResponse)
async def cancel_summary(
    request: Request,
    user: User = Depends(get_current_user),
) -> StopResponse:
    service = _get_summary_service(request)
    return StopResponse(stopping=service.cancel(str(user.id)))


@router.post("/summary/annotate", response_model=AnnotateResponse)
async def annotate(
    body: AnnotateRequest,
    request: Request,
    user: User = Depends(get_current_user),
) -> AnnotateResponse:
    """Rewrite source citations as tags and resolve them to the user's sources."""
    repo = _get_research_repository(request)
    sources = await repo.list_sources(str(user.id))
    markdown, links = annotate_summary(body.summary, sources)
    return AnnotateResponse(markdown=markdown, sources=links)


@router.get("/summaries", response_model=list[SummaryHistoryRead])
async def list_history(
    request: Request,
    user: User = Depends(get_current_user),
) -> list[SummaryHistoryRead]:
    repo = _get_research_repository(request)
    return await repo.list_history(str(user.id))


@router.patch("/summaries/{history_id}/favorite", response_model=SummaryHistoryRead)
async def set_favorite(
    history_id: str,
    body: FavoriteRequest,
    request: Request,
    user: User = Depends(get_current_user),
) -> SummaryHistoryRead:
    repo = _get_research_repository(request)
    try:
        return await repo.set_favorite(str(user.id), history_id, body.is_favorite)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.delete("/summaries/{history_id}", status_code=204)
async def delete_history(
    history_id: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> None:
    repo = _get_research_repository(request)
    if not await repo.delete_history(str(user.id), history_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Summary not found: {history_id}",
        )
