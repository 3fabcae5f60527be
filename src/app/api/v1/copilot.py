"""REST API endpoints for Copilot (deal analysis).

Generation is relayed as Server-Sent Events: the deal-analysis function's
stream is read as it arrives and re-emitted as ``meta``/``delta`` events,
followed by ``done`` once the analysis has been saved. An error from the
function before any output surfaces as a normal HTTP error; one that
happens mid-stream is sent as an ``error`` event.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel

from src.app.api.deps import get_current_user
from src.app.api.errors import upstream_http_error
from src.app.copilot.analysis import (
    IC_MEMO_SECTIONS,
    can_generate,
    content_disposition,
    export_filename,
    extract_notion_page_id,
)
from src.app.copilot.generator import DEFAULT_ERROR
from src.app.copilot.schemas import (
    AnalysisFields,
    AnalysisResult,
    AnalysisType,
    DealAnalysisCreate,
    DealAnalysisRead,
    RecentAnalysis,
)
from src.app.models.user import User
from src.app.services.functions import FunctionError

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/copilot", tags=["copilot"])


# ── Request / Response Schemas ───────────────────────────────────────────────


class GenerateRequest(AnalysisFields):
    """Generation request: the deal, the analysis type, and its inputs."""

    deal_id: str
    analysis_type: AnalysisType
    save: bool = True


class UpdateAnalysisRequest(BaseModel):
    result_content: str


class NotionStatusResponse(BaseModel):
    connected: bool
    page_id: str | None = None


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _get_state(request: Request, name: str, label: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return value


def _get_analysis_repository(request: Request) -> Any:
    return _get_state(request, "analysis_repository", "Copilot")


def _get_generator(request: Request) -> Any:
    return _get_state(request, "analysis_generator", "Analysis generator")


async def _require_deal(request: Request, user: User, deal_id: str) -> Any:
    deals = _get_state(request, "deal_repository", "Deal management")
    deal = await deals.get_deal(str(user.id), deal_id)
    if deal is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Deal not found: {deal_id}",
        )
    return deal


def _sse(event: dict) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


# ── Generation ───────────────────────────────────────────────────────────────


@router.get("/ic-memo-sections", response_model=list[str])
async def list_ic_memo_sections(user: User = Depends(get_current_user)) -> list[str]:
    return list(IC_MEMO_SECTIONS)


@router.post("/generate")
async def generate_analysis(
    body: GenerateRequest,
    request: Request,
    user: User = Depends(get_current_user),
):
    """Stream a new analysis as SSE and save it when the stream ends."""
    generator = _get_generator(request)
    deal = await _require_deal(request, user, body.deal_id)
    if not can_generate(body.analysis_type, body):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required input for this analysis type",
        )

    events = generator.stream(str(user.id), deal, body.analysis_type, body, save=body.save)
    try:
        first = await events.__anext__()
    except (FunctionError, httpx.HTTPError) as exc:
        await events.aclose()
        logger.warning("copilot.generate_failed", deal_id=deal.id, error=str(exc))
        raise upstream_http_error(exc, DEFAULT_ERROR)

    async def event_generator():
        yield _sse(first)
        try:
            async for event in events:
                yield _sse(event)
        except (FunctionError, httpx.HTTPError) as exc:
            logger.warning("copilot.stream_failed", deal_id=deal.id, error=str(exc))
            yield _sse({"type": "error", "error": str(exc) or DEFAULT_ERROR})
        yield "data: [DONE]\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.post("/generate/sync", response_model=AnalysisResult)
async def generate_analysis_sync(
    body: GenerateRequest,
    request: Request,
    user: User = Depends(get_current_user),
) -> AnalysisResult:
    """Run a generation to completion and return the whole result."""
    generator = _get_generator(request)
    deal = await _require_deal(request, user, body.deal_id)
    if not can_generate(body.analysis_type, body):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required input for this analysis type",
        )
    try:
        return await generator.generate(str(user.id), deal, body.analysis_type, body, save=body.save)
    except (FunctionError, httpx.HTTPError) as exc:
        raise upstream_http_error(exc, DEFAULT_ERROR)


# ── Saved analyses ───────────────────────────────────────────────────────────


@router.get("/analyses/recent", response_model=list[RecentAnalysis])
async def list_recent_analyses(
    request: Request,
    limit: int = 10,
    user: User = Depends(get_current_user),
) -> list[RecentAnalysis]:
    repo = _get_analysis_repository(request)
    return await repo.list_recent(str(user.id), limit=max(1, min(limit, 50)))


@router.get("/deals/{deal_id}/analyses", response_model=list[DealAnalysisRead])
async def list_deal_analyses(
    deal_id: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> list[DealAnalysisRead]:
    repo = _get_analysis_repository(request)
    return await repo.list_for_deal(str(user.id), deal_id)


@router.post("/analyses", response_model=DealAnalysisRead, status_code=201)
async def save_analysis(
    body: DealAnalysisCreate,
    request: Request,
    user: User = Depends(get_current_user),
) -> DealAnalysisRead:
    """Save an analysis explicitly (e.g. after editing an unsaved result)."""
    repo = _get_analysis_repository(request)
    try:
        return await repo.save_analysis(str(user.id), body)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.get("/analyses/{analysis_id}", response_model=DealAnalysisRead)
async def get_analysis(
    analysis_id: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> DealAnalysisRead:
    repo = _get_analysis_repository(request)
    analysis = await repo.get_analysis(str(user.id), analysis_id)
    if analysis is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Analysis not found: {analysis_id}",
        )
    return analysis


@router.patch("/analyses/{analysis_id}", response_model=DealAnalysisRead)
async def update_analysis(
    analysis_id: str,
    body: UpdateAnalysisRequest,
    request: Request,
    user: User = Depends(get_current_user),
) -> DealAnalysisRead:
    repo = _get_analysis_repository(request)
    try:
        return await repo.update_content(str(user.id), analysis_id, body.result_content)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.delete("/analyses/{analysis_id}", status_code=204)
async def delete_analysis(
    analysis_id: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> None:
    repo = _get_analysis_repository(request)
    if not await repo.delete_analysis(str(user.id), analysis_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Analysis not found: {analysis_id}",
        )


@router.get("/analyses/{analysis_id}/export")
async def export_analysis(
    analysis_id: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> Response:
    """Download the analysis as a markdown file."""
    repo = _get_analysis_repository(request)
    analysis = await repo.get_analysis(str(user.id), analysis_id)
    if analysis is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Analysis not found: {analysis_id}",
        )
    deal = await _require_deal(request, user, analysis.deal_id)
    filename = export_filename(deal.project_name, analysis.title)
    return Response(
        content=analysis.result_content,
        media_type="text/markdown; charset=utf-8",
        headers={"Content-Disposition": content_disposition(filename)},
    )


# ── Notion ───────────────────────────────────────────────────────────────────


@router.get("/deals/{deal_id}/notion-status", response_model=NotionStatusResponse)
async def get_notion_status(
    deal_id: str,
    request: Request,
    user: User = Depends(get_current_user),
) -> NotionStatusResponse:
    """Whether the deal's folder link points at a Notion page the integration can read."""
    deal = await _require_deal(request, user, deal_id)
    page_id = extract_notion_page_id(deal.folder_link)
    if page_id is None:
        return NotionStatusResponse(connected=False)

    notion = getattr(request.app.state, "notion_service", None)
    if notion is None:
        return NotionStatusResponse(connected=False, page_id=page_id)
    return NotionStatusResponse(connected=await notion.page_connected(page_id), page_id=page_id)
