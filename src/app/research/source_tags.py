"""Post-processing of summary markdown: source citations and implication lines.

The summary model cites sources inline as ``[SOURCE: name | URL: url]``
(full-width colon and bar allowed). preprocess_summary_text() rewrites
those into ``[[SOURCE_TAG name="..." url="..."]]`` placeholders that
survive markdown rendering; strip_source_tags() removes placeholders and
legacy tags from a rendered text run and returns the citations it found.
Citations are matched back to tracked sources by URL or by a normalised
form of the source name.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from urllib.parse import quote, unquote, urlsplit

from src.app.research.schemas import ItemRead, SourceLink, SourceRead

_SOURCE_TAG = re.compile(
    r"\[SOURCE\s*[:：]\s*([^\]|]+?)\s*(?:[|｜]\s*URL\s*[:：]\s*([^\]]+))?\]",
    re.IGNORECASE,
)
_PLACEHOLDER = re.compile(r'\[\[SOURCE_TAG\s+name="([^"]*)"\s+url="([^"]*)"\s*\]\]', re.IGNORECASE)
_LEGACY_TAG = re.compile(
    r"[\[(](?:SOURCE|Source)\s*[:：]\s*([^|\])]+)(?:\s*[|｜]\s*URL\s*[:：]\s*([^\])]+))?[\])]"
)
_NEWLINE_BEFORE_TAG = re.compile(r"[ \t]*\r?\n[ \t]*(\[\[SOURCE_TAG)")
_SPACES_BEFORE_TAG = re.compile(r"[ \t]+(\[\[SOURCE_TAG)")
_IMPLICATION = re.compile(
    r"(\bImplication)\s*[:：]\s*([^\n]*?)(?=\[\[SOURCE_TAG|$)",
    re.IGNORECASE | re.MULTILINE,
)
_EMPTY_URLS = {"", "none", "(none)", "null"}


def _encode(value: str) -> str:
    # Matches encodeURIComponent's unreserved set.
    return quote(value, safe="-_.!~*'()")


def _decode(value: str | None) -> str:
    if not value:
        return ""
    try:
        return unquote(value, errors="strict")
    except UnicodeDecodeError:
        return value


def preprocess_summary_text(value: str | None) -> str:
    """Rewrite source citations into placeholders and emphasise implication lines."""
    if not value:
        return ""

    def to_placeholder(match: re.Match) -> str:
        name = _encode((match.group(1) or "").strip())
        url = _encode((match.group(2) or "").strip())
        return f'[[SOURCE_TAG name="{name}" url="{url}"]]'

    def emphasise(match: re.Match) -> str:
        detail = (match.group(2) or "").strip()
        if not detail:
            return match.group(0)
        return f"**{match.group(1)}:** *{detail}*"

    text = _SOURCE_TAG.sub(to_placeholder, value)
    text = _NEWLINE_BEFORE_TAG.sub(r" \1", text)
    text = _SPACES_BEFORE_TAG.sub(r" \1", text)
    return _IMPLICATION.sub(emphasise, text)


def normalize_tag_url(value: str | None) -> str | None:
    cleaned = (value or "").strip()
    return None if cleaned.lower() in _EMPTY_URLS else cleaned


def strip_source_tags(text: str) -> tuple[str, list[SourceLink]]:
    """Remove placeholder and legacy source tags, returning the cleaned text and citations."""
    found: list[SourceLink] = []

    def from_placeholder(match: re.Match) -> str:
        name = _decode(match.group(1)).strip()
        if name:
            found.append(SourceLink(source_name=name, url=normalize_tag_url(_decode(match.group(2)))))
        return ""

    def from_legacy(match: re.Match) -> str:
        name = (match.group(1) or "").strip()
        if name:
            found.append(SourceLink(source_name=name, url=normalize_tag_url(match.group(2))))
        return ""

    cleaned = _PLACEHOLDER.sub(from_placeholder, text)
    cleaned = _LEGACY_TAG.sub(from_legacy, cleaned)
    return re.sub(r" {2,}", " ", cleaned).rstrip(), found


def normalize_source_name(name: str) -> str:
    """Canonical comparison key for a source name.

    "  Stratechery | P5 " and "\"Stratechery\" - P5" both become "stratechery".
    """
    trimmed = re.sub(r"\s+", " ", name.strip())
    without_meta = trimmed.split("|")[0].strip() or trimmed
    without_priority = re.sub(r"\s*-\s*P\d+\s*$", "", without_meta, flags=re.IGNORECASE).strip()
    without_quotes = re.sub(r"^[“\"']|[”\"']$", "", without_priority)
    without_punct = re.sub(r"[。.,，:：;；]+$", "", without_quotes).strip()
    return without_punct.lower()


def compact_source_key(name: str) -> str:
    return re.sub(r"[\W_]+", "", normalize_source_name(name))


def resolve_source_by_name(name: str, sources: Iterable[SourceRead]) -> SourceRead | None:
    """Match a cited name to a tracked source.

    Exact match on the normalised or compact key first. Failing that, and
    only for compact keys of four or more characters, a source whose key
    contains (or is contained in) the cited one; ties go to the longest key
    and an unresolved tie yields None.
    """
    key = normalize_source_name(name)
    compact = compact_source_key(name)
    if not key and not compact:
        return None

    entries = [(s, normalize_source_name(s.name), compact_source_key(s.name)) for s in sources]
    for source, entry_key, entry_compact in entries:
        if entry_key == key or entry_compact == compact:
            return source

    if len(compact) < 4:
        return None

    fuzzy = [
        (source, entry_compact)
        for source, _, entry_compact in entries
        if entry_compact and (entry_compact in compact or compact in entry_compact)
    ]
    if len(fuzzy) == 1:
        return fuzzy[0][0]
    if len(fuzzy) > 1:
        fuzzy.sort(key=lambda pair: len(pair[1]), reverse=True)
        if len(fuzzy[0][1]) > len(fuzzy[1][1]):
            return fuzzy[0][0]
    return None


def normalize_url(value: str) -> str | None:
    """origin + path without trailing slash; None when the value is not a URL."""
    parts = urlsplit(value.strip())
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}{parts.path}".rstrip("/")


def resolve_source_by_url(
    url: str | None, items: Iterable[ItemRead], sources: Iterable[SourceRead]
) -> SourceRead | None:
    """Find the source that owns an item with the same normalised URL."""
    target = normalize_url(url) if url else None
    if target is None:
        return None
    source_id = next(
        (item.source_id for item in items if item.url and normalize_url(item.url) == target),
        None,
    )
    if source_id is None:
        return None
    return next((s for s in sources if s.id == source_id), None)


def annotate_summary(
    text: str, sources: list[SourceRead], items: list[ItemRead] | None = None
) -> tuple[str, list[SourceLink]]:
    """Preprocess a summary and resolve every citation it contains.

    Returns the preprocessed markdown (placeholders intact, for the client
    to render as badges) and the deduplicated citations with source ids.
    """
    processed = preprocess_summary_text(text)
    _, links = strip_source_tags(processed)
    items = items or []

    resolved: list[SourceLink] = []
    seen: set[tuple[str, str | None]] = set()
    for link in links:
        key = (link.source_name, link.url)
        if key in seen:
            continue
        seen.add(key)
        source = resolve_source_by_url(link.url, items, sources) or resolve_source_by_name(
            link.source_name, sources
        )
        resolved.append(link.model_copy(update={"source_id": source.id if source else None}))
    return processed, resolved
