"""Pydantic schemas for the Research module."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

DEFAULT_PRIORITY = 3


class SourceCategory(str, Enum):
    NEWS = "news"
    RESEARCH = "research"
    PODCAST = "podcast"
    REPORT = "report"
    TWITTER = "twitter"


class SourceType(str, Enum):
    RSS = "rss"
    CRAWL = "crawl"
    MANUAL = "manual"


# ── Sources ─────────────────────────────────────────────────────────────────


class SourceCreate(BaseModel):
    """Schema for adding a source."""

    name: str
    url: str
    feed_url: str | None = None
    category: SourceCategory = SourceCategory.NEWS
    source_type: SourceType = SourceType.RSS
    description: str | None = None
    favicon_url: str | None = None
    logo_url: str | None = None
    tags: list[str] = Field(default_factory=list)
    priority: int = Field(default=DEFAULT_PRIORITY, ge=1, le=5)

    @field_validator("name", "url")
    @classmethod
    def _required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Name and URL are required")
        return value.strip()


class SourceUpdate(BaseModel):
    """Partial source update."""

    name: str | None = None
    url: str | None = None
    feed_url: str | None = None
    category: SourceCategory | None = None
    source_type: SourceType | None = None
    description: str | None = None
    favicon_url: str | None = None
    logo_url: str | None = None
    tags: list[str] | None = None
    priority: int | None = Field(default=None, ge=1, le=5)
    display_order: int | None = None
    is_active: bool | None = None


class SourceRead(BaseModel):
    """Persisted source, enriched with its timeline state."""

    id: str
    user_id: str
    name: str
    url: str
    feed_url: str | None = None
    category: str = SourceCategory.NEWS.value
    source_type: str = SourceType.RSS.value
    description: str | None = None
    favicon_url: str | None = None
    logo_url: str | None = None
    tags: list[str] = Field(default_factory=list)
    priority: int = DEFAULT_PRIORITY
    display_order: int = 0
    is_active: bool = True
    last_checked_at: datetime | None = None
    last_content_hash: str | None = None
    unread_count: int = 0
    latest_item_title: str | None = None
    latest_item_date: datetime | None = None
    created_at: datetime | None = None


# ── Items ───────────────────────────────────────────────────────────────────


class ItemCreate(BaseModel):
    """A manually added item."""

    title: str
    url: str
    summary: str | None = None
    content: str | None = None

    @field_validator("title", "url")
    @classmethod
    def _required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Title and URL are required")
        return value.strip()


class ItemRead(BaseModel):
    """Persisted research item."""

    id: str
    source_id: str
    title: str
    url: str
    summary: str | None = None
    content: str | None = None
    published_at: datetime | None = None
    is_read: bool = False
    created_at: datetime | None = None


class SearchResult(ItemRead):
    """Item search hit with its source's name and category."""

    source_name: str | None = None
    source_category: str | None = None


class FetchedItem(BaseModel):
    """An item as produced by a feed parse or crawl, before persistence."""

    title: str
    url: str
    summary: str = ""
    content: str = ""
    published_at: datetime


# ── Sync ────────────────────────────────────────────────────────────────────


class FeedCache(BaseModel):
    """Conditional-GET state stored in ResearchSource.last_content_hash."""

    hash: str | None = None
    etag: str | None = None
    lastModified: str | None = None
    feedUrl: str | None = None


class FeedResult(BaseModel):
    """Outcome of fetching one feed."""

    items: list[FetchedItem] = Field(default_factory=list)
    content_hash: str | None = None
    not_modified: bool = False
    etag: str | None = None
    last_modified: str | None = None

    @property
    def has_cache_data(self) -> bool:
        return bool(self.content_hash or self.etag or self.last_modified)


class SyncResult(BaseModel):
    success: bool = True
    checked: int = 0
    new_items: int = 0
    stopped: bool = False


class SyncProgress(BaseModel):
    """Live progress of a user's sync_all run."""

    running: bool = False
    current: int = 0
    total: int = 0
    current_source_id: str | None = None
    current_source_name: str | None = None
    is_stopping: bool = False


# ── Summaries ───────────────────────────────────────────────────────────────


class SummaryStage(str, Enum):
    PREPARING = "preparing"
    STREAMING = "streaming"
    SAVING = "saving"
    DONE = "done"


class SummaryMetadata(BaseModel):
    """Counts reported by the summary function."""

    itemCount: int = 0
    sourceCount: int = 0
    priorityCounts: dict[str, int] = Field(default_factory=dict)
    extra: dict[str, Any] = Field(default_factory=dict)


class SummaryHistoryRead(BaseModel):
    """Stored summary."""

    id: str
    user_id: str
    summary: str
    title: str | None = None
    preview: str | None = None
    item_count: int = 0
    source_count: int = 0
    source_ids: list[str] = Field(default_factory=list)
    priority_counts: dict[str, int] = Field(default_factory=dict)
    is_favorite: bool = False
    created_at: datetime | None = None


class SourceLink(BaseModel):
    """A source referenced by a summary, resolved to a tracked source when possible."""

    source_name: str
    url: str | None = None
    source_id: str | None = None
