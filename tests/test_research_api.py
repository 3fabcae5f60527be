"""Integration tests for the Research API.

Sources, items and summary history live in InMemoryResearchRepository;
the real SummaryService talks to a MockTransport in place of the summary
function, and logo uploads go to a LogoStorage under tmp_path.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.app.research.schemas import (
    ItemCreate,
    ItemRead,
    SearchResult,
    SourceCreate,
    SourceRead,
    SourceUpdate,
    SummaryHistoryRead,
    SyncProgress,
    SyncResult,
)
from src.app.research.summary import SummaryService
from src.app.research.sync import SyncInProgressError
from src.app.services.functions import FunctionsClient
from src.app.services.storage import LogoStorage


# ── In-Memory Test Double ────────────────────────────────────────────────────


class InMemoryResearchRepository:
    """In-memory ResearchRepository for testing without database."""

    def __init__(self) -> None:
        self._sources: dict[str, SourceRead] = {}
        self._items: dict[str, ItemRead] = {}
        self._history: dict[str, SummaryHistoryRead] = {}

    def _with_counts(self, source: SourceRead) -> SourceRead:
        unread = [i for i in self._items.values() if i.source_id == source.id and not i.is_read]
        return source.model_copy(update={"unread_count": len(unread)})

    async def list_sources(self, user_id: str) -> list[SourceRead]:
        sources = [s for s in self._sources.values() if s.user_id == user_id]
        return [self._with_counts(s) for s in sorted(sources, key=lambda s: s.display_order)]

    async def get_source(self, user_id: str, source_id: str) -> SourceRead | None:
        source = self._sources.get(source_id)
        return self._with_counts(source) if source and source.user_id == user_id else None

    async def create_source(self, user_id: str, data: SourceCreate) -> SourceRead:
        source = SourceRead(
            id=str(uuid.uuid4()),
            user_id=user_id,
            display_order=len(self._sources),
            **data.model_dump(mode="json"),
        )
        self._sources[source.id] = source
        return source

    async def update_source(self, user_id: str, source_id: str, data: SourceUpdate) -> SourceRead:
        source = await self.get_source(user_id, source_id)
        if source is None:
            raise ValueError(f"Source not found: {source_id}")
        updated = source.model_copy(update=data.model_dump(mode="json", exclude_none=True))
        self._sources[source_id] = updated
        return updated

    async def delete_source(self, user_id: str, source_id: str) -> bool:
        if await self.get_source(user_id, source_id) is None:
            return False
        del self._sources[source_id]
        self._items = {k: v for k, v in self._items.items() if v.source_id != source_id}
        return True

    async def list_items(self, user_id: str, source_id: str) -> list[ItemRead]:
        return [i for i in self._items.values() if i.source_id == source_id]

    async def add_item(self, user_id: str, source_id: str, data: ItemCreate) -> ItemRead:
        if await self.get_source(user_id, source_id) is None:
            raise ValueError(f"Source not found: {source_id}")
        item = ItemRead(
            id=str(uuid.uuid4()),
            source_id=source_id,
            published_at=datetime.now(timezone.utc),
            **data.model_dump(),
        )
        self._items[item.id] = item
        return item

    async def mark_item_read(self, user_id: str, item_id: str, is_read: bool = True) -> bool:
        item = self._items.get(item_id)
        if item is None:
            return False
        self._items[item_id] = item.model_copy(update={"is_read": is_read})
        return True

    async def mark_all_read(self, user_id: str, source_ids: list[str] | None = None) -> int:
        count = 0
        for key, item in list(self._items.items()):
            if not item.is_read and (not source_ids or item.source_id in source_ids):
                self._items[key] = item.model_copy(update={"is_read": True})
                count += 1
        return count

    async def clear_items(self, user_id: str, source_id: str | None = None) -> int:
        doomed = [k for k, i in self._items.items() if source_id is None or i.source_id == source_id]
        for key in doomed:
            del self._items[key]
        return len(doomed)

    async def search_items(self, user_id: str, query: str, category: str | None = None) -> list[SearchResult]:
        needle = query.strip().lower()
        if not needle:
            return []
        results = []
        for item in self._items.values():
            source = self._sources[item.source_id]
            if category and category != "all" and source.category != category:
                continue
            if needle in item.title.lower() or needle in (item.summary or "").lower():
                results.append(
                    SearchResult(
                        **item.model_dump(),
                        source_name=source.name,
                        source_category=source.category,
                    )
                )
        return results

    async def save_summary(self, user_id: str, **fields) -> SummaryHistoryRead:
        row = SummaryHistoryRead(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=datetime.now(timezone.utc),
            **fields,
        )
        self._history[row.id] = row
        return row

    async def list_history(self, user_id: str) -> list[SummaryHistoryRead]:
        return [h for h in self._history.values() if h.user_id == user_id]

    async def set_favorite(self, user_id: str, history_id: str, is_favorite: bool) -> SummaryHistoryRead:
        row = self._history.get(history_id)
        if row is None or row.user_id != user_id:
            raise ValueError(f"Summary not found: {history_id}")
        updated = row.model_copy(update={"is_favorite": is_favorite})
        self._history[history_id] = updated
        return updated

    async def delete_history(self, user_id: str, history_id: str) -> bool:
        return self._history.pop(history_id, None) is not None


class SummaryFunction:
    def __init__(self) -> None:
        self.status_code = 200
        self.body = ""
        self.error: Exception | None = None
        self.stream: httpx.AsyncByteStream | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.error is not None:
            raise self.error
        headers = {"content-type": "text/event-stream"}
        if self.stream is not None:
            return httpx.Response(self.status_code, headers=headers, stream=self.stream)
        return httpx.Response(self.status_code, text=self.body, headers=headers)


class DroppedStream(httpx.AsyncByteStream):
    """Sends the given SSE chunks, then fails like a reset connection."""

    def __init__(self, *chunks: str) -> None:
        self._chunks = chunks

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk.encode()
        raise httpx.ReadError("Connection reset by peer")


# ── Test Fixtures ────────────────────────────────────────────────────────────


def _make_mock_app():
    from fastapi import FastAPI

    from src.app.api.errors import register_error_handlers
    from src.app.api.v1.research import router

    app = FastAPI()
    register_error_handlers(app)
    app.include_router(router, prefix="/v1")
    return app


@pytest_asyncio.fixture
async def env(current_user, tmp_path):
    from src.app.api.deps import get_current_user

    repo = InMemoryResearchRepository()
    function = SummaryFunction()
    functions = FunctionsClient("https://functions.test", "key", transport=httpx.MockTransport(function))

    app = _make_mock_app()
    app.dependency_overrides[get_current_user] = lambda: current_user
    app.state.research_repository = repo
    app.state.summary_service = SummaryService(functions, repo)
    app.state.research_sync = MagicMock()
    app.state.logo_storage = LogoStorage(tmp_path, "/media")

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, repo, app, function, tmp_path


async def _create_source(client, name: str, **fields) -> dict:
    response = await client.post(
        "/v1/research/sources",
        json={"name": name, "url": f"https://{name.lower()}.example.com", **fields},
    )
    assert response.status_code == 201, response.text
    return response.json()


def parse_sse(text: str) -> list:
    return [
        line[len("data: "):] if line == "data: [DONE]" else json.loads(line[len("data: "):])
        for line in text.splitlines()
        if line.startswith("data: ")
    ]


# ── Sources ──────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_source_crud(env):
    client, _, _, _, _ = env
    source = await _create_source(client, "Stratechery", category="research", priority=5)
    assert source["source_type"] == "rss"
    assert source["priority"] == 5

    response = await client.patch(f"/v1/research/sources/{source['id']}", json={"is_active": False})
    assert response.json()["is_active"] is False

    assert (await client.delete(f"/v1/research/sources/{source['id']}")).status_code == 204
    assert (await client.get(f"/v1/research/sources/{source['id']}")).status_code == 404


@pytest.mark.asyncio
async def test_create_source_validation(env):
    client, _, _, _, _ = env
    response = await client.post("/v1/research/sources", json={"name": " ", "url": "https://x.com"})
    assert response.status_code == 400
    assert response.json()["detail"] == "Name and URL are required"

    response = await client.post(
        "/v1/research/sources", json={"name": "X", "url": "https://x.com", "priority": 9}
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_list_sources_keeps_order_unless_filtered(env):
    client, _, _, _, _ = env
    await _create_source(client, "Zeta", priority=2)
    await _create_source(client, "Alpha", priority=4, tags=["ai"])

    names = [s["name"] for s in (await client.get("/v1/research/sources")).json()]
    assert names == ["Zeta", "Alpha"]

    response = await client.get("/v1/research/sources", params={"category": "all"})
    assert [s["name"] for s in response.json()] == ["Alpha", "Zeta"]

    response = await client.get("/v1/research/sources", params={"tag": "ai"})
    assert [s["name"] for s in response.json()] == ["Alpha"]

    response = await client.get("/v1/research/sources", params={"priority": "high"})
    assert response.status_code == 400


# ── Items ────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_items_read_state_and_clear(env):
    client, _, _, _, _ = env
    source = await _create_source(client, "Axios")
    response = await client.post(
        f"/v1/research/sources/{source['id']}/items",
        json={"title": "Seed round news", "url": "https://axios.com/1"},
    )
    assert response.status_code == 201
    item = response.json()
    assert item["is_read"] is False

    unread = (await client.get("/v1/research/sources", params={"unread_only": True})).json()
    assert [s["name"] for s in unread] == ["Axios"]

    response = await client.patch(f"/v1/research/items/{item['id']}/read", json={"is_read": True})
    assert response.status_code == 204
    response = await client.post("/v1/research/items/mark-read", json={})
    assert response.json() == {"count": 0}

    response = await client.delete(f"/v1/research/sources/{source['id']}/items")
    assert response.json() == {"count": 1}


@pytest.mark.asyncio
async def test_add_item_to_missing_source_is_404(env):
    client, _, _, _, _ = env
    response = await client.post(
        f"/v1/research/sources/{uuid.uuid4()}/items",
        json={"title": "x", "url": "https://x.com"},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_search(env):
    client, _, _, _, _ = env
    source = await _create_source(client, "Axios", category="news")
    await client.post(
        f"/v1/research/sources/{source['id']}/items",
        json={"title": "Fintech funding climbs", "url": "https://axios.com/2"},
    )
    results = (await client.get("/v1/research/search", params={"q": "FINTECH"})).json()
    assert [r["source_name"] for r in results] == ["Axios"]
    results = (await client.get("/v1/research/search", params={"q": "fintech", "category": "podcast"})).json()
    assert results == []


# ── Sync ─────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_sync_endpoints(env):
    client, _, app, _, _ = env
    service = app.state.research_sync
    service.sync_sources = AsyncMock(return_value=SyncResult(checked=2, new_items=5))
    service.progress.return_value = SyncProgress(running=True, current=1, total=3)
    service.request_stop.return_value = True

    response = await client.post("/v1/research/sync", json={"source_ids": ["a"]})
    assert response.json()["new_items"] == 5
    service.sync_sources.assert_awaited_once()

    assert (await client.get("/v1/research/sync/progress")).json()["total"] == 3
    assert (await client.post("/v1/research/sync/stop")).json() == {"stopping": True}


@pytest.mark.asyncio
async def test_sync_all_conflict_is_409(env):
    client, _, app, _, _ = env
    app.state.research_sync.sync_all = AsyncMock(side_effect=SyncInProgressError("busy"))
    response = await client.post("/v1/research/sync/all")
    assert response.status_code == 409


# ── Summary ──────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_summary_stream_saves_history(env):
    client, repo, _, function, _ = env
    function.body = (
        'data: {"type": "meta", "metadata": {"itemCount": 3, "sourceCount": 1}}\n\n'
        'data: {"type": "delta", "text": "# Weekly Brief\\nAll quiet."}\n\n'
        "data: [DONE]\n\n"
    )

    response = await client.post("/v1/research/summary", json={"source_ids": ["s1"]})
    assert response.status_code == 200
    events = parse_sse(response.text)
    assert events[-1] == "[DONE]"
    assert events[-2]["type"] == "done"

    history = (await client.get("/v1/research/summaries")).json()
    assert history[0]["title"] == "Weekly Brief"
    assert history[0]["item_count"] == 3

    response = await client.patch(
        f"/v1/research/summaries/{history[0]['id']}/favorite", json={"is_favorite": True}
    )
    assert response.json()["is_favorite"] is True
    assert (await client.delete(f"/v1/research/summaries/{history[0]['id']}")).status_code == 204


@pytest.mark.asyncio
async def test_summary_function_client_error_keeps_status(env):
    client, repo, _, function, _ = env
    function.status_code = 400
    function.body = json.dumps({"error": "No items to summarize"})

    response = await client.post("/v1/research/summary", json={"source_ids": ["s1"]})
    assert response.status_code == 400
    assert response.json()["detail"] == "No items to summarize"
    assert await repo.list_history("u") == []


@pytest.mark.asyncio
async def test_summary_function_server_error_is_502(env):
    client, _, _, function, _ = env
    function.status_code = 500
    function.body = json.dumps({"error": "Summary backend down"})

    response = await client.post("/v1/research/summary", json={})
    assert response.status_code == 502
    assert response.json()["detail"] == "Summary backend down"


@pytest.mark.asyncio
async def test_summary_connection_failure_is_502(env):
    client, _, _, function, _ = env
    function.error = httpx.ConnectError("All connection attempts failed")

    response = await client.post("/v1/research/summary", json={})
    assert response.status_code == 502
    assert response.json()["detail"] == "Failed to generate summary"

    # the failed run no longer blocks or counts as in flight
    assert (await client.post("/v1/research/summary/cancel")).json() == {"stopping": False}


@pytest.mark.asyncio
async def test_summary_dropped_stream_ends_with_error_event(env):
    client, _, _, function, _ = env
    function.stream = DroppedStream('data: {"type": "delta", "text": "Partial"}\n\n')

    response = await client.post("/v1/research/summary", json={})
    assert response.status_code == 200
    events = parse_sse(response.text)
    assert [e.get("stage") for e in events[:2]] == ["preparing", "streaming"]
    assert {"type": "delta", "text": "Partial"} in events
    assert events[-2] == {"type": "error", "error": "Connection reset by peer"}
    assert events[-1] == "[DONE]"


@pytest.mark.asyncio
async def test_cancel_without_run(env):
    client, _, _, _, _ = env
    assert (await client.post("/v1/research/summary/cancel")).json() == {"stopping": False}


@pytest.mark.asyncio
async def test_annotate_resolves_sources(env):
    client, _, _, _, _ = env
    source = await _create_source(client, "Stratechery")
    response = await client.post(
        "/v1/research/summary/annotate",
        json={"summary": "Aggregators win [SOURCE: Stratechery - P5]"},
    )
    data = response.json()
    assert "[[SOURCE_TAG" in data["markdown"]
    assert data["sources"] == [
        {"source_name": "Stratechery - P5", "url": None, "source_id": source["id"]}
    ]


# ── Logos ────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_logo_upload(env, current_user):
    client, _, _, _, tmp_path = env
    response = await client.post(
        "/v1/research/sources/logo",
        files={"file": ("logo.PNG", b"\x89PNG data", "image/png")},
    )
    assert response.status_code == 201
    url = response.json()["url"]
    assert url.startswith(f"/media/research-logos/{current_user.id}/")
    assert url.endswith(".png")
    stored = list((tmp_path / "research-logos" / str(current_user.id)).iterdir())
    assert stored[0].read_bytes() == b"\x89PNG data"


@pytest.mark.asyncio
async def test_logo_upload_rejects_non_images(env):
    client, _, _, _, _ = env
    response = await client.post(
        "/v1/research/sources/logo",
        files={"file": ("notes.txt", b"hello", "text/plain")},
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Please upload an image file"
