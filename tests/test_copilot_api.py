"""Integration tests for the Copilot API.

The real AnalysisGenerator runs against an httpx MockTransport standing in
for the deal-analysis function; analyses and deals live in memory.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock
from urllib.parse import quote

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.app.copilot.generator import AnalysisGenerator
from src.app.copilot.schemas import DealAnalysisCreate, DealAnalysisRead, RecentAnalysis
from src.app.deals.schemas import DealRead
from src.app.services.functions import FunctionsClient


# ── In-Memory Test Doubles ───────────────────────────────────────────────────


class InMemoryAnalysisRepository:
    def __init__(self, deals: dict[str, DealRead]) -> None:
        self._deals = deals
        self._analyses: dict[str, DealAnalysisRead] = {}

    async def save_analysis(self, user_id: str, data: DealAnalysisCreate) -> DealAnalysisRead:
        if data.deal_id not in self._deals:
            raise ValueError(f"Deal not found: {data.deal_id}")
        analysis = DealAnalysisRead(
            id=str(uuid.uuid4()),
            user_id=user_id,
            deal_id=data.deal_id,
            analysis_type=data.analysis_type.value,
            title=data.title,
            result_content=data.result_content,
            input_data=data.input_data,
            notion_connected=data.notion_connected,
            created_at=datetime.now(timezone.utc),
        )
        self._analyses[analysis.id] = analysis
        return analysis

    async def get_analysis(self, user_id: str, analysis_id: str) -> DealAnalysisRead | None:
        analysis = self._analyses.get(analysis_id)
        return analysis if analysis and analysis.user_id == user_id else None

    async def list_for_deal(self, user_id: str, deal_id: str) -> list[DealAnalysisRead]:
        return [a for a in self._analyses.values() if a.user_id == user_id and a.deal_id == deal_id]

    async def list_recent(self, user_id: str, limit: int = 10) -> list[RecentAnalysis]:
        rows = sorted(self._analyses.values(), key=lambda a: a.created_at, reverse=True)
        return [
            RecentAnalysis(
                id=a.id,
                deal_id=a.deal_id,
                title=a.title,
                analysis_type=a.analysis_type,
                project_name=self._deals[a.deal_id].project_name,
                created_at=a.created_at,
            )
            for a in rows
            if a.user_id == user_id
        ][:limit]

    async def update_content(self, user_id: str, analysis_id: str, result_content: str) -> DealAnalysisRead:
        analysis = await self.get_analysis(user_id, analysis_id)
        if analysis is None:
            raise ValueError(f"Analysis not found: {analysis_id}")
        updated = analysis.model_copy(update={"result_content": result_content})
        self._analyses[analysis_id] = updated
        return updated

    async def delete_analysis(self, user_id: str, analysis_id: str) -> bool:
        if await self.get_analysis(user_id, analysis_id) is None:
            return False
        del self._analyses[analysis_id]
        return True


class StubDealRepository:
    def __init__(self, deals: dict[str, DealRead]) -> None:
        self._deals = deals

    async def get_deal(self, user_id: str, deal_id: str) -> DealRead | None:
        return self._deals.get(deal_id)


class FakeFunction:
    """Mutable handler for the mocked deal-analysis function."""

    def __init__(self) -> None:
        self.status_code = 200
        self.body = ""
        self.error: Exception | None = None
        self.stream: httpx.AsyncByteStream | None = None
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        if self.error is not None:
            raise self.error
        if self.stream is not None:
            return httpx.Response(self.status_code, stream=self.stream)
        return httpx.Response(self.status_code, text=self.body)


class DroppedStream(httpx.AsyncByteStream):
    """Sends the given SSE chunks, then fails like a reset connection."""

    def __init__(self, *chunks: str) -> None:
        self._chunks = chunks

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk.encode()
        raise httpx.ReadError("Connection reset by peer")


def sse_body(*events) -> str:
    return "".join(f"data: {json.dumps(e)}\n\n" for e in events) + "data: [DONE]\n\n"


def parse_sse(text: str) -> list:
    events = []
    for line in text.splitlines():
        if line.startswith("data: "):
            payload = line[len("data: "):]
            events.append(payload if payload == "[DONE]" else json.loads(payload))
    return events


# ── Test Fixtures ────────────────────────────────────────────────────────────


def _make_mock_app():
    from fastapi import FastAPI

    from src.app.api.errors import register_error_handlers
    from src.app.api.v1.copilot import router

    app = FastAPI()
    register_error_handlers(app)
    app.include_router(router, prefix="/v1")
    return app


@pytest_asyncio.fixture
async def env(current_user):
    from src.app.api.deps import get_current_user

    deal = DealRead(
        id=str(uuid.uuid4()),
        user_id=str(current_user.id),
        project_name="Orbital: Space",
        sector="Space",
        folder_link="https://www.notion.so/Orbital-0123456789abcdef0123456789abcdef",
    )
    deals = {deal.id: deal}
    function = FakeFunction()
    repo = InMemoryAnalysisRepository(deals)
    client = FunctionsClient("https://functions.test", "key", transport=httpx.MockTransport(function))

    app = _make_mock_app()
    app.dependency_overrides[get_current_user] = lambda: current_user
    app.state.deal_repository = StubDealRepository(deals)
    app.state.analysis_repository = repo
    app.state.analysis_generator = AnalysisGenerator(client, repo)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http, app, deal, function, repo


# ── Generation ───────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_generate_streams_and_saves(env):
    http, _, deal, function, repo = env
    function.body = sse_body(
        {"metadata": {"notionConnected": False, "dealName": "Orbital"}},
        {"choices": [{"delta": {"content": "## Highlights"}}]},
    )

    response = await http.post(
        "/v1/copilot/generate",
        json={"deal_id": deal.id, "analysis_type": "industry_mapping"},
    )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")

    events = parse_sse(response.text)
    assert events[-1] == "[DONE]"
    types = [e["type"] for e in events[:-1]]
    assert types == ["meta", "delta", "done"]
    assert events[2]["analysis"]["title"] == "Industry Mapping - Space"
    assert function.requests[0]["inputData"] == {"sector": "Space"}
    assert len(await repo.list_for_deal(str(deal.user_id), deal.id)) == 1


@pytest.mark.asyncio
async def test_generate_upstream_error_before_output_is_http_error(env):
    http, _, deal, function, _ = env
    function.status_code = 402
    function.body = json.dumps({"error": "Payment required"})

    response = await http.post(
        "/v1/copilot/generate",
        json={"deal_id": deal.id, "analysis_type": "investment_highlights"},
    )
    assert response.status_code == 402
    assert response.json()["detail"] == "Payment required"


@pytest.mark.asyncio
async def test_generate_upstream_server_error_is_502(env):
    http, _, deal, function, _ = env
    function.status_code = 503

    response = await http.post(
        "/v1/copilot/generate/sync",
        json={"deal_id": deal.id, "analysis_type": "investment_highlights"},
    )
    assert response.status_code == 502
    assert response.json()["detail"] == "Failed to generate analysis"


@pytest.mark.asyncio
async def test_generate_connection_failure_is_502(env):
    http, _, deal, function, _ = env
    function.error = httpx.ConnectError("All connection attempts failed")

    response = await http.post(
        "/v1/copilot/generate",
        json={"deal_id": deal.id, "analysis_type": "investment_highlights"},
    )
    assert response.status_code == 502
    assert response.json()["detail"] == "Failed to generate analysis"


@pytest.mark.asyncio
async def test_generate_dropped_stream_ends_with_error_event(env):
    http, _, deal, function, repo = env
    function.stream = DroppedStream(
        'data: {"choices": [{"delta": {"content": "Partial"}}]}\n\n'
    )

    response = await http.post(
        "/v1/copilot/generate",
        json={"deal_id": deal.id, "analysis_type": "investment_highlights"},
    )
    assert response.status_code == 200
    events = parse_sse(response.text)
    assert events[0] == {"type": "delta", "text": "Partial"}
    assert events[1] == {"type": "error", "error": "Connection reset by peer"}
    assert events[-1] == "[DONE]"
    assert await repo.list_for_deal(str(deal.user_id), deal.id) == []


@pytest.mark.asyncio
async def test_generate_requires_ic_memo_section(env):
    http, _, deal, function, _ = env
    response = await http.post(
        "/v1/copilot/generate",
        json={"deal_id": deal.id, "analysis_type": "ic_memo"},
    )
    assert response.status_code == 400
    assert function.requests == []


@pytest.mark.asyncio
async def test_generate_unknown_deal_is_404(env):
    http, _, _, _, _ = env
    response = await http.post(
        "/v1/copilot/generate/sync",
        json={"deal_id": str(uuid.uuid4()), "analysis_type": "investment_highlights"},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_generate_sync_returns_result(env):
    http, _, deal, function, repo = env
    function.body = sse_body({"choices": [{"delta": {"content": "Summary"}}]})

    response = await http.post(
        "/v1/copilot/generate/sync",
        json={
            "deal_id": deal.id,
            "analysis_type": "notes_summary",
            "meeting_notes": "Founders call",
            "save": False,
        },
    )
    assert response.status_code == 200
    assert response.json()["content"] == "Summary"
    assert response.json()["title"] == "Notes Summary"
    assert await repo.list_for_deal(str(deal.user_id), deal.id) == []


# ── Saved analyses ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_saved_analysis_lifecycle(env):
    http, _, deal, _, _ = env
    response = await http.post(
        "/v1/copilot/analyses",
        json={
            "deal_id": deal.id,
            "analysis_type": "ic_memo",
            "title": "IC Memo Draft - Valuation",
            "result_content": "# Valuation",
        },
    )
    assert response.status_code == 201
    analysis_id = response.json()["id"]

    recent = (await http.get("/v1/copilot/analyses/recent")).json()
    assert recent[0]["project_name"] == "Orbital: Space"

    response = await http.patch(
        f"/v1/copilot/analyses/{analysis_id}", json={"result_content": "# Edited"}
    )
    assert response.json()["result_content"] == "# Edited"

    response = await http.get(f"/v1/copilot/analyses/{analysis_id}/export")
    assert response.status_code == 200
    assert response.text == "# Edited"
    assert response.headers["content-disposition"] == (
        'attachment; filename="Orbital- Space-IC Memo Draft - Valuation.md"; '
        "filename*=UTF-8''Orbital-%20Space-IC%20Memo%20Draft%20-%20Valuation.md"
    )

    assert (await http.delete(f"/v1/copilot/analyses/{analysis_id}")).status_code == 204
    assert (await http.get(f"/v1/copilot/analyses/{analysis_id}")).status_code == 404


@pytest.mark.asyncio
async def test_export_with_non_ascii_deal_name(env):
    http, app, _, _, _ = env
    deal = DealRead(id=str(uuid.uuid4()), user_id="u", project_name="北京科技")
    app.state.deal_repository._deals[deal.id] = deal
    created = await http.post(
        "/v1/copilot/analyses",
        json={
            "deal_id": deal.id,
            "analysis_type": "investment_highlights",
            "title": "Investment Highlights",
            "result_content": "# 亮点",
        },
    )

    response = await http.get(f"/v1/copilot/analyses/{created.json()['id']}/export")
    assert response.status_code == 200
    assert response.text == "# 亮点"
    disposition = response.headers["content-disposition"]
    assert 'filename="Investment Highlights.md"' in disposition
    assert disposition.endswith("filename*=UTF-8''" + quote("北京科技-Investment Highlights.md", safe=""))


@pytest.mark.asyncio
async def test_update_missing_analysis_is_404(env):
    http, _, _, _, _ = env
    response = await http.patch(f"/v1/copilot/analyses/{uuid.uuid4()}", json={"result_content": "x"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_ic_memo_sections(env):
    http, _, _, _, _ = env
    sections = (await http.get("/v1/copilot/ic-memo-sections")).json()
    assert sections[0] == "Executive Summary"
    assert len(sections) == 10


# ── Notion ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_notion_status_without_service(env):
    http, _, deal, _, _ = env
    response = await http.get(f"/v1/copilot/deals/{deal.id}/notion-status")
    assert response.json() == {"connected": False, "page_id": "0123456789abcdef0123456789abcdef"}


@pytest.mark.asyncio
async def test_notion_status_checks_page_access(env):
    http, app, deal, _, _ = env
    notion = AsyncMock()
    notion.page_connected.return_value = True
    app.state.notion_service = notion

    response = await http.get(f"/v1/copilot/deals/{deal.id}/notion-status")
    assert response.json()["connected"] is True
    notion.page_connected.assert_awaited_once_with("0123456789abcdef0123456789abcdef")
