"""Research source sync.

ResearchSyncService pulls new items for a user's RSS and crawl sources.
sync_sources() walks the selected sources one after another; sync_all()
runs every syncable source in concurrent batches, reports progress, and
can be stopped between sources. Only one sync_all run per user is allowed
at a time.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from src.app.core.monitoring import research_items_synced_total
from src.app.research.crawler import FirecrawlClient
from src.app.research.discovery import discover_feed_url
from src.app.research.feeds import FeedFetcher, build_feed_cache, parse_feed_cache
from src.app.research.repository import ResearchRepository
from src.app.research.schemas import FeedCache, SourceRead, SourceType, SyncProgress, SyncResult

logger = structlog.get_logger(__name__)


class SyncInProgressError(Exception):
    """A sync_all run is already active for this user."""


class ResearchSyncService:
    """Syncs research sources into research_items.

    Args:
        repository: ResearchRepository for sources and items.
        fetcher: FeedFetcher for RSS sources.
        crawler: FirecrawlClient for crawl sources.
        concurrency: Sources processed at once by sync_all.
        discover: Feed discovery callable (website url -> feed url or None).
    """

    def __init__(
        self,
        repository: ResearchRepository,
        fetcher: FeedFetcher,
        crawler: FirecrawlClient,
        concurrency: int = 6,
        discover: Callable[[str], Awaitable[str | None]] = discover_feed_url,
    ) -> None:
        self._repository = repository
        self._fetcher = fetcher
        self._crawler = crawler
        self._concurrency = max(1, concurrency)
        self._discover = discover
        self._progress: dict[str, SyncProgress] = {}
        self._stop_requested: dict[str, bool] = {}

    # ── Single source ───────────────────────────────────────────────────────

    async def sync_source(self, source: SourceRead) -> int:
        """Fetch one source and store its new items. Returns the number added."""
        cache: str | None = None
        new_items = 0

        if source.source_type == SourceType.RSS.value:
            feed_url = source.feed_url
            if not feed_url:
                feed_url = await self._discover(source.url)
                if feed_url:
                    await self._repository.set_feed_url(source.id, feed_url)

            if feed_url:
                result = await self._fetcher.fetch(feed_url, parse_feed_cache(source.last_content_hash))
                if result.has_cache_data:
                    cache = build_feed_cache(
                        FeedCache(
                            hash=result.content_hash,
                            etag=result.etag,
                            lastModified=result.last_modified,
                            feedUrl=feed_url,
                        )
                    )
                if result.not_modified:
                    logger.debug("research.feed_unchanged", source_id=source.id)
                else:
                    new_items = await self._repository.insert_new_items(source.id, result.items)

        elif source.source_type == SourceType.CRAWL.value:
            items = await self._crawler.crawl(source.url)
            new_items = await self._repository.insert_new_items(source.id, items)

        await self._repository.mark_checked(source.id, cache)
        if new_items:
            research_items_synced_total.labels(source_type=source.source_type).inc(new_items)
        logger.info(
            "research.source_synced",
            source_id=source.id,
            source_type=source.source_type,
            new_items=new_items,
        )
        return new_items

    async def _safe_sync(self, source: SourceRead) -> int:
        try:
            return await self.sync_source(source)
        except Exception as exc:
            logger.warning("research.source_sync_failed", source_id=source.id, error=str(exc))
            return 0

    async def sync_sources(self, user_id: str, source_ids: list[str] | None = None) -> SyncResult:
        """Sync the user's non-manual sources (optionally only some of them), in order."""
        sources = await self._repository.list_sync_sources(user_id, source_ids)
        new_items = 0
        for source in sources:
            new_items += await self._safe_sync(source)
        logger.info(
            "research.sync_completed",
            user_id=user_id,
            checked=len(sources),
            new_items=new_items,
        )
        return SyncResult(checked=len(sources), new_items=new_items)

    # ── Full run ────────────────────────────────────────────────────────────

    def is_running(self, user_id: str) -> bool:
        progress = self._progress.get(user_id)
        return bool(progress and progress.running)

    def progress(self, user_id: str) -> SyncProgress:
        return self._progress.get(user_id, SyncProgress()).model_copy()

    def request_stop(self, user_id: str) -> bool:
        """Ask a running sync_all to stop. Returns False when nothing is running."""
        if not self.is_running(user_id):
            return False
        self._stop_requested[user_id] = True
        self._progress[user_id].is_stopping = True
        logger.info("research.sync_stop_requested", user_id=user_id)
        return True

    async def sync_all(self, user_id: str) -> SyncResult:
        """Sync every non-manual source in batches.

        Raises:
            SyncInProgressError: If a run is already active for this user.
        """
        if self.is_running(user_id):
            raise SyncInProgressError(f"Sync already running for user {user_id}")

        progress = SyncProgress(running=True)
        self._progress[user_id] = progress
        self._stop_requested[user_id] = False

        checked = 0
        new_items = 0
        stopped = False
        try:
            sources = await self._repository.list_sync_sources(user_id)
            progress.total = len(sources)

            async def run(source: SourceRead) -> int:
                nonlocal checked
                if self._stop_requested.get(user_id):
                    return 0
                progress.current += 1
                progress.current_source_id = source.id
                progress.current_source_name = source.name
                checked += 1
                return await self._safe_sync(source)

            for start in range(0, len(sources), self._concurrency):
                if self._stop_requested.get(user_id):
                    stopped = True
                    break
                batch = sources[start:start + self._concurrency]
                results = await asyncio.gather(*(run(s) for s in batch))
                new_items += sum(results)

            stopped = stopped or bool(self._stop_requested.get(user_id))
        finally:
            progress.running = False
            progress.is_stopping = False
            progress.current_source_id = None
            progress.current_source_name = None
            self._stop_requested.pop(user_id, None)

        logger.info(
            "research.sync_all_completed",
            user_id=user_id,
            checked=checked,
            new_items=new_items,
            stopped=stopped,
        )
        return SyncResult(checked=checked, new_items=new_items, stopped=stopped)
