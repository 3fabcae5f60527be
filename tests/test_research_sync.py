"""Tests for research sync, auto-sync scheduling and source filtering."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import pytest

from src.app.research.filters import filter_sources
from src.app.research.scheduler import ResearchSyncScheduler
from src.app.research.schemas import FeedCache, FeedResult, FetchedItem, SourceRead
from src.app.research.sync import ResearchSyncService, SyncInProgressError

NOW = datetime(2026, 3, 31, tzinfo=timezone.utc)


def _source(sid: str, **fields) -> SourceRead:
    defaults = {"name": sid.title(), "url": f"https://{sid}.example.com"}
    defaults.update(fields)
    return SourceRead(id=sid, user_id="u1", **defaults)


def _item(n: int) -> FetchedItem:
    return FetchedItem(title=f"Item {n}", url=f"https://example.com/{n}", published_at=NOW)


# ── Test Doubles ─────────────────────────────────────────────────────────────


class FakeResearchRepository:
    def __init__(self, sources: list[SourceRead]) -> None:
        self.sources = sources
        self.items: dict[str, set[str]] = {}
        self.checked: dict[str, str | None] = {}
        self.feed_urls: dict[str, str] = {}

    async def list_sync_sources(self, user_id: str, source_ids: list[str] | None = None) -> list[SourceRead]:
        return [
            s
            for s in self.sources
            if s.source_type != "manual" and (source_ids is None or s.id in source_ids)
        ]

    async def list_sync_user_ids(self) -> list[str]:
        return sorted({s.user_id for s in self.sources})

    async def set_feed_url(self, source_id: str, feed_url: str) -> None:
        self.feed_urls[source_id] = feed_url

    async def insert_new_items(self, source_id: str, items: list[FetchedItem]) -> int:
        existing = self.items.setdefault(source_id, set())
        fresh = {i.url for i in items} - existing
        existing |= fresh
        return len(fresh)

    async def mark_checked(self, source_id: str, cache: str | None = None) -> None:
        self.checked[source_id] = cache


class StubFetcher:
    def __init__(self, result: FeedResult) -> None:
        self.result = result
        self.calls: list[tuple[str, FeedCache]] = []

    async def fetch(self, feed_url: str, cache: FeedCache) -> FeedResult:
        self.calls.append((feed_url, cache))
        return self.result


class StubCrawler:
    def __init__(self, items: list[FetchedItem]) -> None:
        self.items = items

    async def crawl(self, url: str) -> list[FetchedItem]:
        return self.items


def make_service(repo, fetcher=None, crawler=None, discover=None, concurrency: int = 6):
    async def no_discovery(url: str) -> str | None:
        return None

    return ResearchSyncService(
        repo,
        fetcher or StubFetcher(FeedResult()),
        crawler or StubCrawler([]),
        concurrency=concurrency,
        discover=discover or no_discovery,
    )


# ── Single source ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_rss_sync_stores_items_and_cache():
    source = _source("feed", feed_url="https://feed.example.com/rss")
    repo = FakeResearchRepository([source])
    fetcher = StubFetcher(FeedResult(items=[_item(1), _item(2)], content_hash="h1", etag='"e"'))
    service = make_service(repo, fetcher)

    assert await service.sync_source(source) == 2
    cache = json.loads(repo.checked["feed"])
    assert cache == {
        "hash": "h1",
        "etag": '"e"',
        "lastModified": None,
        "feedUrl": "https://feed.example.com/rss",
    }


@pytest.mark.asyncio
async def test_rss_sync_skips_insert_when_not_modified():
    source = _source("feed", feed_url="https://feed.example.com/rss", last_content_hash="h1")
    repo = FakeResearchRepository([source])
    fetcher = StubFetcher(FeedResult(items=[_item(1)], content_hash="h1", not_modified=True))
    service = make_service(repo, fetcher)

    assert await service.sync_source(source) == 0
    assert "feed" not in repo.items
    assert fetcher.calls[0][1].hash == "h1"


@pytest.mark.asyncio
async def test_rss_sync_discovers_missing_feed_url():
    source = _source("blog")
    repo = FakeResearchRepository([source])
    fetcher = StubFetcher(FeedResult(items=[_item(1)], content_hash="h"))

    async def discover(url: str) -> str | None:
        return f"{url}/feed"

    service = make_service(repo, fetcher, discover=discover)
    assert await service.sync_source(source) == 1
    assert repo.feed_urls == {"blog": "https://blog.example.com/feed"}


@pytest.mark.asyncio
async def test_rss_source_without_any_feed_is_only_marked_checked():
    source = _source("nofeed")
    repo = FakeResearchRepository([source])
    fetcher = StubFetcher(FeedResult())
    service = make_service(repo, fetcher)

    assert await service.sync_source(source) == 0
    assert fetcher.calls == []
    assert repo.checked == {"nofeed": None}


@pytest.mark.asyncio
async def test_crawl_sync_dedupes_by_url():
    source = _source("site", source_type="crawl")
    repo = FakeResearchRepository([source])
    service = make_service(repo, crawler=StubCrawler([_item(1), _item(2)]))

    assert await service.sync_source(source) == 2
    assert await service.sync_source(source) == 0


# ── Runs ─────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_sync_sources_skips_manual_and_survives_failures():
    sources = [
        _source("a", source_type="crawl"),
        _source("b", source_type="manual"),
        _source("c", source_type="crawl"),
    ]
    repo = FakeResearchRepository(sources)

    class FlakyCrawler:
        async def crawl(self, url: str) -> list[FetchedItem]:
            if url.startswith("https://a."):
                raise RuntimeError("boom")
            return [_item(1)]

    service = make_service(repo, crawler=FlakyCrawler())
    result = await service.sync_sources("u1")
    assert result.checked == 2
    assert result.new_items == 1


@pytest.mark.asyncio
async def test_sync_sources_limits_to_selected_ids():
    sources = [_source("a", source_type="crawl"), _source("c", source_type="crawl")]
    repo = FakeResearchRepository(sources)
    service = make_service(repo, crawler=StubCrawler([_item(1)]))

    result = await service.sync_sources("u1", ["c"])
    assert result.checked == 1
    assert list(repo.items) == ["c"]


@pytest.mark.asyncio
async def test_sync_all_reports_progress_and_rejects_second_run():
    sources = [_source(f"s{i}", source_type="crawl") for i in range(3)]
    repo = FakeResearchRepository(sources)
    gate = asyncio.Event()

    class SlowCrawler:
        async def crawl(self, url: str) -> list[FetchedItem]:
            await gate.wait()
            return [_item(1)]

    service = make_service(repo, crawler=SlowCrawler(), concurrency=2)
    task = asyncio.create_task(service.sync_all("u1"))
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    progress = service.progress("u1")
    assert progress.running is True
    assert progress.total == 3
    with pytest.raises(SyncInProgressError):
        await service.sync_all("u1")

    gate.set()
    result = await task
    assert result.checked == 3
    assert result.new_items == 3
    assert result.stopped is False
    assert service.progress("u1").running is False


@pytest.mark.asyncio
async def test_sync_all_stops_between_batches():
    sources = [_source(f"s{i}", source_type="crawl") for i in range(4)]
    repo = FakeResearchRepository(sources)
    service = make_service(repo, concurrency=2)

    class StoppingCrawler:
        async def crawl(self, url: str) -> list[FetchedItem]:
            service.request_stop("u1")
            return []

    service._crawler = StoppingCrawler()
    result = await service.sync_all("u1")
    assert result.stopped is True
    assert result.checked == 1
    assert service.request_stop("u1") is False


# ── Scheduler ────────────────────────────────────────────────────────────────


def test_scheduler_disabled_with_zero_interval():
    repo = FakeResearchRepository([])
    scheduler = ResearchSyncScheduler(make_service(repo), repo, interval_minutes=0)
    assert scheduler.start() is False
    assert scheduler.running is False
    scheduler.shutdown()


@pytest.mark.asyncio
async def test_scheduler_run_once_syncs_every_user():
    sources = [
        _source("a", source_type="crawl"),
        SourceRead(id="b", user_id="u2", name="B", url="https://b.example.com", source_type="crawl"),
    ]
    repo = FakeResearchRepository(sources)
    service = make_service(repo, crawler=StubCrawler([_item(1)]))
    scheduler = ResearchSyncScheduler(service, repo, interval_minutes=15)

    assert await scheduler.run_once() == 2


@pytest.mark.asyncio
async def test_scheduler_start_registers_interval_job():
    repo = FakeResearchRepository([])
    scheduler = ResearchSyncScheduler(make_service(repo), repo, interval_minutes=15)
    try:
        assert scheduler.start() is True
        assert scheduler.running is True
        assert scheduler._scheduler.get_job(ResearchSyncScheduler.JOB_ID) is not None
    finally:
        scheduler.shutdown()
    assert scheduler.running is False


# ── Source filters ───────────────────────────────────────────────────────────


def test_filter_sources_orders_by_priority_then_name():
    sources = [
        _source("zeta", priority=3),
        _source("alpha", priority=3),
        _source("beta", priority=5),
    ]
    assert [s.id for s in filter_sources(sources)] == ["beta", "alpha", "zeta"]


def test_filter_sources_combines_filters():
    sources = [
        _source("a", category="vc", tags=["ai"], unread_count=2, priority=4),
        _source("b", category="vc", tags=["bio"], unread_count=0, priority=4),
        _source("c", category="news", tags=["ai"], unread_count=1, priority=4),
    ]
    assert [s.id for s in filter_sources(sources, category="vc", tag="ai")] == ["a"]
    assert [s.id for s in filter_sources(sources, unread_only=True, priority="4")] == ["a", "c"]
    assert [s.id for s in filter_sources(sources, category="all", query="B.EXAMPLE")] == ["b"]
