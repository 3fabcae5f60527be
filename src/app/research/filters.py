"""Source list filtering for the Research view."""

from __future__ import annotations

from src.app.research.schemas import SourceRead


def _matches(query: str, source: SourceRead) -> bool:
    fields = [
        source.name,
        source.description,
        source.url,
        source.feed_url,
        source.category,
        source.source_type,
        *source.tags,
    ]
    return any(query in field.lower() for field in fields if field)


def filter_sources(
    sources: list[SourceRead],
    category: str | None = None,
    priority: int | str | None = None,
    tag: str | None = None,
    unread_only: bool = False,
    query: str | None = None,
) -> list[SourceRead]:
    """Filter sources, then order them by priority (highest first) and name.

    Any filter given as "all" or None is ignored.
    """
    needle = (query or "").strip().lower()
    wanted_priority = None if priority in (None, "all") else int(priority)

    result = [
        s
        for s in sources
        if (not category or category == "all" or s.category == category)
        and (wanted_priority is None or s.priority == wanted_priority)
        and (not tag or tag == "all" or tag in s.tags)
        and (not unread_only or s.unread_count > 0)
        and (not needle or _matches(needle, s))
    ]
    return sorted(result, key=lambda s: (-s.priority, s.name.lower()))
