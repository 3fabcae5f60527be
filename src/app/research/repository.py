"""Research repository -- sources, items, and summary history.

Items do not carry a user_id; ownership always goes through the parent
source, so every item query joins research_sources on the caller's id.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.database import LIKE_ESCAPE, escape_like, parse_uuid
from src.app.research.models import ResearchItemModel, ResearchSourceModel, SummaryHistoryModel
from src.app.research.schemas import (
    DEFAULT_PRIORITY,
    FetchedItem,
    ItemCreate,
    ItemRead,
    SearchResult,
    SourceCreate,
    SourceRead,
    SourceType,
    SourceUpdate,
    SummaryHistoryRead,
)

logger = structlog.get_logger(__name__)

HISTORY_LIMIT = 50
SEARCH_LIMIT = 20
MIN_SEARCH_LENGTH = 2


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_source(model: ResearchSourceModel, **extra) -> SourceRead:
    """Convert ResearchSourceModel to SourceRead; extra carries timeline enrichment."""
    return SourceRead(
        id=str(model.id),
        user_id=str(model.user_id),
        name=model.name,
        url=model.url,
        feed_url=model.feed_url,
        category=model.category,
        source_type=model.source_type,
        description=model.description,
        favicon_url=model.favicon_url,
        logo_url=model.logo_url,
        tags=list(model.tags or []),
        priority=model.priority if model.priority is not None else DEFAULT_PRIORITY,
        display_order=model.display_order or 0,
        is_active=model.is_active,
        last_checked_at=model.last_checked_at,
        last_content_hash=model.last_content_hash,
        created_at=model.created_at,
        **extra,
    )


def _model_to_item(model: ResearchItemModel) -> ItemRead:
    return ItemRead(
        id=str(model.id),
        source_id=str(model.source_id),
        title=model.title,
        url=model.url,
        summary=model.summary,
        content=model.content,
        published_at=model.published_at,
        is_read=model.is_read,
        created_at=model.created_at,
    )


def _model_to_history(model: SummaryHistoryModel) -> SummaryHistoryRead:
    return SummaryHistoryRead(
        id=str(model.id),
        user_id=str(model.user_id),
        summary=model.summary,
        title=model.title,
        preview=model.preview,
        item_count=model.item_count or 0,
        source_count=model.source_count or 0,
        source_ids=list(model.source_ids or []),
        priority_counts=dict(model.priority_counts or {}),
        is_favorite=model.is_favorite,
        created_at=model.created_at,
    )


def _owned_source_ids(user_id: str):
    """Subquery of the user's source ids."""
    return select(ResearchSourceModel.id).where(
        ResearchSourceModel.user_id == uuid.UUID(user_id)
    )


class ResearchRepository:
    """Async data access for the Research module.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Sources ─────────────────────────────────────────────────────────────

    async def list_sources(self, user_id: str) -> list[SourceRead]:
        """List sources by display_order, each with unread count and latest item."""
        async for session in self._session_factory():
            owner = uuid.UUID(user_id)
            result = await session.execute(
                select(ResearchSourceModel)
                .where(ResearchSourceModel.user_id == owner)
                .order_by(ResearchSourceModel.display_order, ResearchSourceModel.created_at)
            )
            sources = list(result.scalars().all())
            if not sources:
                return []
            ids = [s.id for s in sources]

            unread_rows = await session.execute(
                select(ResearchItemModel.source_id, func.count())
                .where(
                    ResearchItemModel.source_id.in_(ids),
                    ResearchItemModel.is_read.is_(False),
                )
                .group_by(ResearchItemModel.source_id)
            )
            unread = dict(unread_rows.all())

            latest_rows = await session.execute(
                select(
                    ResearchItemModel.source_id,
                    ResearchItemModel.title,
                    ResearchItemModel.published_at,
                )
                .where(ResearchItemModel.source_id.in_(ids))
                .distinct(ResearchItemModel.source_id)
                .order_by(
                    ResearchItemModel.source_id,
                    ResearchItemModel.published_at.desc().nulls_last(),
                )
            )
            latest = {sid: (title, published) for sid, title, published in latest_rows.all()}

            return [
                _model_to_source(
                    s,
                    unread_count=unread.get(s.id, 0),
                    latest_item_title=latest.get(s.id, (None, None))[0],
                    latest_item_date=latest.get(s.id, (None, None))[1],
                )
                for s in sources
            ]

    async def get_source(self, user_id: str, source_id: str) -> SourceRead | None:
        sid = parse_uuid(source_id)
        if sid is None:
            return None
        async for session in self._session_factory():
            result = await session.execute(
                select(ResearchSourceModel).where(
                    ResearchSourceModel.user_id == uuid.UUID(user_id),
                    ResearchSourceModel.id == sid,
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_source(model) if model else None

    async def list_sync_sources(
        self, user_id: str, source_ids: list[str] | None = None
    ) -> list[SourceRead]:
        """Non-manual sources, optionally restricted to the given ids."""
        async for session in self._session_factory():
            stmt = (
                select(ResearchSourceModel)
                .where(
                    ResearchSourceModel.user_id == uuid.UUID(user_id),
                    ResearchSourceModel.source_type != SourceType.MANUAL.value,
                )
                .order_by(ResearchSourceModel.display_order)
            )
            if source_ids:
                ids = [u for u in (parse_uuid(s) for s in source_ids) if u is not None]
                stmt = stmt.where(ResearchSourceModel.id.in_(ids))
            result = await session.execute(stmt)
            return [_model_to_source(m) for m in result.scalars().all()]

    async def list_sync_user_ids(self) -> list[str]:
        """Users that own at least one syncable source."""
        async for session in self._session_factory():
            result = await session.execute(
                select(ResearchSourceModel.user_id)
                .where(ResearchSourceModel.source_type != SourceType.MANUAL.value)
                .distinct()
            )
            return [str(uid) for uid in result.scalars().all()]

    async def count_active_sources(self, user_id: str) -> int:
        async for session in self._session_factory():
            result = await session.execute(
                select(func.count())
                .select_from(ResearchSourceModel)
                .where(
                    ResearchSourceModel.user_id == uuid.UUID(user_id),
                    ResearchSourceModel.is_active.is_(True),
                )
            )
            return int(result.scalar_one())

    async def create_source(self, user_id: str, data: SourceCreate) -> SourceRead:
        """Add a source at the end of the display order."""
        async for session in self._session_factory():
            owner = uuid.UUID(user_id)
            result = await session.execute(
                select(func.max(ResearchSourceModel.display_order)).where(
                    ResearchSourceModel.user_id == owner
                )
            )
            current_max = result.scalar_one_or_none()
            model = ResearchSourceModel(
                user_id=owner,
                name=data.name,
                url=data.url,
                feed_url=data.feed_url or None,
                category=data.category.value,
                source_type=data.source_type.value,
                description=data.description,
                favicon_url=data.favicon_url,
                logo_url=data.logo_url,
                tags=data.tags or None,
                priority=data.priority,
                display_order=0 if current_max is None else current_max + 1,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info("research.source_created", source_id=str(model.id), name=model.name)
            return _model_to_source(model)

    async def update_source(
        self, user_id: str, source_id: str, data: SourceUpdate
    ) -> SourceRead:
        """Update a source.

        Raises:
            ValueError: If the source is not found.
        """
        sid = parse_uuid(source_id)
        async for session in self._session_factory():
            model = None
            if sid is not None:
                result = await session.execute(
                    select(ResearchSourceModel).where(
                        ResearchSourceModel.user_id == uuid.UUID(user_id),
                        ResearchSourceModel.id == sid,
                    )
                )
                model = result.scalar_one_or_none()
            if model is None:
                raise ValueError(f"Source not found: {source_id}")

            for key, value in data.model_dump(exclude_none=True).items():
                setattr(model, key, value.value if hasattr(value, "value") else value)

            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_source(model)

    async def delete_source(self, user_id: str, source_id: str) -> bool:
        """Delete a source and, by cascade, its items."""
        sid = parse_uuid(source_id)
        if sid is None:
            return False
        async for session in self._session_factory():
            await session.execute(
                delete(ResearchItemModel).where(
                    ResearchItemModel.source_id == sid,
                    ResearchItemModel.source_id.in_(_owned_source_ids(user_id)),
                )
            )
            result = await session.execute(
                delete(ResearchSourceModel).where(
                    ResearchSourceModel.user_id == uuid.UUID(user_id),
                    ResearchSourceModel.id == sid,
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def set_feed_url(self, source_id: str, feed_url: str) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(ResearchSourceModel)
                .where(ResearchSourceModel.id == uuid.UUID(source_id))
                .values(feed_url=feed_url)
            )
            await session.commit()

    async def mark_checked(self, source_id: str, cache: str | None = None) -> None:
        """Stamp last_checked_at, and store the feed cache when one was produced."""
        values: dict = {"last_checked_at": datetime.now(timezone.utc)}
        if cache:
            values["last_content_hash"] = cache
        async for session in self._session_factory():
            await session.execute(
                update(ResearchSourceModel)
                .where(ResearchSourceModel.id == uuid.UUID(source_id))
                .values(**values)
            )
            await session.commit()

    # ── Items ───────────────────────────────────────────────────────────────

    async def list_items(self, user_id: str, source_id: str) -> list[ItemRead]:
        """A source's items, newest published first."""
        sid = parse_uuid(source_id)
        if sid is None:
            return []
        async for session in self._session_factory():
            result = await session.execute(
                select(ResearchItemModel)
                .where(
                    ResearchItemModel.source_id == sid,
                    ResearchItemModel.source_id.in_(_owned_source_ids(user_id)),
                )
                .order_by(ResearchItemModel.published_at.desc().nulls_last())
            )
            return [_model_to_item(m) for m in result.scalars().all()]

    async def add_item(self, user_id: str, source_id: str, data: ItemCreate) -> ItemRead:
        """Manually add an item, published now and unread.

        Raises:
            ValueError: If the source is not found.
        """
        source = await self.get_source(user_id, source_id)
        if source is None:
            raise ValueError(f"Source not found: {source_id}")
        async for session in self._session_factory():
            model = ResearchItemModel(
                source_id=uuid.UUID(source.id),
                title=data.title,
                url=data.url,
                summary=data.summary,
                content=data.content,
                published_at=datetime.now(timezone.utc),
                is_read=False,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_item(model)

    async def insert_new_items(self, source_id: str, items: list[FetchedItem]) -> int:
        """Insert items whose url is not yet stored for this source. Returns the count."""
        if not items:
            return 0
        sid = uuid.UUID(source_id)
        async for session in self._session_factory():
            result = await session.execute(
                select(ResearchItemModel.url).where(
                    ResearchItemModel.source_id == sid,
                    ResearchItemModel.url.in_([i.url for i in items]),
                )
            )
            seen = set(result.scalars().all())
            added = 0
            for item in items:
                if item.url in seen:
                    continue
                seen.add(item.url)
                session.add(
                    ResearchItemModel(
                        source_id=sid,
                        title=item.title,
                        url=item.url,
                        summary=item.summary,
                        content=item.content,
                        published_at=item.published_at,
                        is_read=False,
                    )
                )
                added += 1
            await session.commit()
            return added

    async def mark_item_read(self, user_id: str, item_id: str, is_read: bool = True) -> bool:
        iid = parse_uuid(item_id)
        if iid is None:
            return False
        async for session in self._session_factory():
            result = await session.execute(
                update(ResearchItemModel)
                .where(
                    ResearchItemModel.id == iid,
                    ResearchItemModel.source_id.in_(_owned_source_ids(user_id)),
                )
                .values(is_read=is_read)
            )
            await session.commit()
            return result.rowcount > 0

    async def mark_all_read(self, user_id: str, source_ids: list[str] | None = None) -> int:
        """Mark unread items read, for the given sources or all the user's sources."""
        async for session in self._session_factory():
            stmt = (
                update(ResearchItemModel)
                .where(
                    ResearchItemModel.is_read.is_(False),
                    ResearchItemModel.source_id.in_(_owned_source_ids(user_id)),
                )
                .values(is_read=True)
            )
            if source_ids is not None:
                ids = [u for u in (parse_uuid(s) for s in source_ids) if u is not None]
                if not ids:
                    return 0
                stmt = stmt.where(ResearchItemModel.source_id.in_(ids))
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount

    async def clear_items(self, user_id: str, source_id: str | None = None) -> int:
        """Delete the items of one source, or of every source the user owns."""
        async for session in self._session_factory():
            stmt = delete(ResearchItemModel).where(
                ResearchItemModel.source_id.in_(_owned_source_ids(user_id))
            )
            if source_id is not None:
                sid = parse_uuid(source_id)
                if sid is None:
                    return 0
                stmt = stmt.where(ResearchItemModel.source_id == sid)
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount

    async def search_items(
        self, user_id: str, query: str, category: str | None = None, limit: int = SEARCH_LIMIT
    ) -> list[SearchResult]:
        """Search item title, summary and url. Queries under two characters return []."""
        needle = (query or "").strip()
        if len(needle) < MIN_SEARCH_LENGTH:
            return []
        pattern = f"%{escape_like(needle)}%"
        async for session in self._session_factory():
            stmt = (
                select(ResearchItemModel, ResearchSourceModel.name, ResearchSourceModel.category)
                .join(ResearchSourceModel, ResearchSourceModel.id == ResearchItemModel.source_id)
                .where(
                    ResearchSourceModel.user_id == uuid.UUID(user_id),
                    or_(
                        ResearchItemModel.title.ilike(pattern, escape=LIKE_ESCAPE),
                        ResearchItemModel.summary.ilike(pattern, escape=LIKE_ESCAPE),
                        ResearchItemModel.url.ilike(pattern, escape=LIKE_ESCAPE),
                    ),
                )
                .order_by(ResearchItemModel.published_at.desc().nulls_last())
                .limit(limit)
            )
            if category and category != "all":
                stmt = stmt.where(ResearchSourceModel.category == category)
            result = await session.execute(stmt)
            return [
                SearchResult(
                    **_model_to_item(item).model_dump(),
                    source_name=name,
                    source_category=cat,
                )
                for item, name, cat in result.all()
            ]

    # ── Summary history ─────────────────────────────────────────────────────

    async def save_summary(
        self,
        user_id: str,
        *,
        summary: str,
        title: str | None,
        preview: str | None,
        item_count: int,
        source_count: int,
        source_ids: list[str],
        priority_counts: dict[str, int],
    ) -> SummaryHistoryRead:
        async for session in self._session_factory():
            model = SummaryHistoryModel(
                user_id=uuid.UUID(user_id),
                summary=summary,
                title=title,
                preview=preview,
                item_count=item_count,
                source_count=source_count,
                source_ids=source_ids or None,
                priority_counts=priority_counts or None,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info("research.summary_saved", history_id=str(model.id), item_count=item_count)
            return _model_to_history(model)

    async def list_history(self, user_id: str, limit: int = HISTORY_LIMIT) -> list[SummaryHistoryRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(SummaryHistoryModel)
                .where(SummaryHistoryModel.user_id == uuid.UUID(user_id))
                .order_by(SummaryHistoryModel.created_at.desc())
                .limit(limit)
            )
            return [_model_to_history(m) for m in result.scalars().all()]

    async def set_favorite(self, user_id: str, history_id: str, is_favorite: bool) -> SummaryHistoryRead:
        """Toggle the favourite flag.

        Raises:
            ValueError: If the summary is not found.
        """
        hid = parse_uuid(history_id)
        async for session in self._session_factory():
            model = None
            if hid is not None:
                result = await session.execute(
                    select(SummaryHistoryModel).where(
                        SummaryHistoryModel.user_id == uuid.UUID(user_id),
                        SummaryHistoryModel.id == hid,
                    )
                )
                model = result.scalar_one_or_none()
            if model is None:
                raise ValueError(f"Summary not found: {history_id}")
            model.is_favorite = is_favorite
            await session.commit()
            await session.refresh(model)
            return _model_to_history(model)

    async def delete_history(self, user_id: str, history_id: str) -> bool:
        hid = parse_uuid(history_id)
        if hid is None:
            return False
        async for session in self._session_factory():
            result = await session.execute(
                delete(SummaryHistoryModel).where(
                    SummaryHistoryModel.user_id == uuid.UUID(user_id),
                    SummaryHistoryModel.id == hid,
                )
            )
            await session.commit()
            return result.rowcount > 0
