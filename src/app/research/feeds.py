"""RSS/Atom fetching with conditional GET and a content-hash cache.

Each RSS source keeps a small JSON cache in last_content_hash:
``{"hash", "etag", "lastModified", "feedUrl"}``. FeedFetcher sends the
stored validators, treats 304 or an unchanged SHA-256 of the decoded body
as "not modified", and otherwise parses entries with feedparser.

Twitter mirrors on rss.xcancel.com reject unknown readers with a
"not yet whitelisted" page; those feeds are retried once via RSSHub.
"""

from __future__ import annotations

import codecs
import hashlib
import json
import re
from datetime import datetime, timezone

import feedparser
import httpx
import structlog
from bs4 import BeautifulSoup

from src.app.research.schemas import FeedCache, FeedResult, FetchedItem

logger = structlog.get_logger(__name__)

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
FEED_HEADERS = {
    "User-Agent": BROWSER_USER_AGENT,
    "Accept": "application/rss+xml, application/xml, text/xml, */*",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
}

SUMMARY_LENGTH = 500
WHITELIST_MARKER = "not yet whitelist"

_XCANCEL_FEED = re.compile(r"rss\.xcancel\.com/([^/]+)/rss", re.IGNORECASE)
_XML_ENCODING = re.compile(r"<\?xml[^>]*encoding=[\"']([^\"']+)[\"']", re.IGNORECASE)
_HEADER_CHARSET = re.compile(r"charset=([^;]+)", re.IGNORECASE)
_WHITESPACE = re.compile(r"[ \t]+")


# ── Feed cache ──────────────────────────────────────────────────────────────


def parse_feed_cache(value: str | None) -> FeedCache:
    """Read the stored cache. A legacy non-JSON value is treated as the bare hash."""
    if not value:
        return FeedCache()
    trimmed = value.strip()
    if trimmed.startswith("{"):
        try:
            data = json.loads(trimmed)
        except ValueError:
            return FeedCache(hash=value)
        if isinstance(data, dict):
            return FeedCache(
                hash=data.get("hash"),
                etag=data.get("etag"),
                lastModified=data.get("lastModified"),
                feedUrl=data.get("feedUrl"),
            )
    return FeedCache(hash=value)


def cache_for_url(cache: FeedCache, feed_url: str) -> FeedCache:
    """Drop the cache when it was recorded for a different feed URL."""
    if cache.feedUrl and cache.feedUrl != feed_url:
        return FeedCache()
    return cache


def build_feed_cache(cache: FeedCache) -> str:
    return json.dumps(cache.model_dump())


def alternative_feed_url(feed_url: str) -> str | None:
    """RSSHub equivalent of an xcancel Twitter feed, if this is one."""
    match = _XCANCEL_FEED.search(feed_url)
    if match is None:
        return None
    return f"https://rsshub.app/twitter/user/{match.group(1)}"


# ── Decoding ────────────────────────────────────────────────────────────────


def normalize_encoding(value: str | None) -> str:
    if not value:
        return "utf-8"
    cleaned = value.replace('"', "").replace("'", "").strip().lower()
    if cleaned == "utf8":
        return "utf-8"
    if cleaned in ("gb2312", "gbk"):
        return "gb18030"
    return cleaned


def decode_body(content: bytes, content_type: str | None = None) -> str:
    """Decode a feed body.

    The XML declaration wins over the Content-Type charset; utf-8 is the
    default and the fallback for codecs Python does not know.
    """
    preview = content[:2048].decode("utf-8", errors="replace")
    xml_match = _XML_ENCODING.search(preview)
    header_match = _HEADER_CHARSET.search(content_type or "")
    declared = (xml_match.group(1) if xml_match else None) or (
        header_match.group(1) if header_match else None
    )
    encoding = normalize_encoding(declared)
    try:
        codecs.lookup(encoding)
    except LookupError:
        logger.warning("research.feed_unknown_encoding", encoding=encoding)
        encoding = "utf-8"
    return content.decode(encoding, errors="replace")


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def strip_html(html: str | None) -> str:
    """Drop tags and decode entities."""
    if not html:
        return ""
    text = BeautifulSoup(html, "html.parser").get_text()
    return _WHITESPACE.sub(" ", text.replace("\xa0", " ")).strip()


# ── Parsing ─────────────────────────────────────────────────────────────────


def _entry_datetime(entry) -> datetime | None:
    for key in ("published_parsed", "updated_parsed"):
        value = entry.get(key)
        if value:
            return datetime(*value[:6], tzinfo=timezone.utc)
    return None


def _is_error_item(item: FetchedItem) -> bool:
    title = item.title.lower()
    body = (item.content or item.summary or "").lower()
    return (
        "whitelist" in title
        or "not yet whitelisted" in body
        or "please send an email" in body
    )


def parse_feed(text: str, now: datetime | None = None) -> list[FetchedItem]:
    """Parse RSS items or Atom entries into FetchedItems.

    Entries without a title are skipped. RSS items take content:encoded (or
    the description) as content and the description as summary; Atom
    entries take content (or summary) for both, summary truncated.
    """
    now = now or datetime.now(timezone.utc)
    parsed = feedparser.parse(text)
    is_atom = (parsed.get("version") or "").startswith("atom")

    items = []
    for entry in parsed.entries:
        title = strip_html(entry.get("title"))
        if not title:
            continue
        contents = entry.get("content") or []
        content_raw = contents[0].get("value", "") if contents else ""
        summary_raw = entry.get("summary", "")

        full = strip_html(content_raw or summary_raw)
        summary = full if is_atom else strip_html(summary_raw)
        items.append(
            FetchedItem(
                title=title,
                url=entry.get("link") or entry.get("id") or "",
                summary=summary[:SUMMARY_LENGTH],
                content=full,
                published_at=_entry_datetime(entry) or now,
            )
        )

    return [item for item in items if not _is_error_item(item)]


# ── Fetching ────────────────────────────────────────────────────────────────


class FeedFetcher:
    """Fetches and parses feeds.

    Args:
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests inject a MockTransport).
    """

    def __init__(
        self, timeout: float = 20.0, transport: httpx.AsyncBaseTransport | None = None
    ) -> None:
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout,
            follow_redirects=True,
            transport=self._transport,
        )

    async def fetch(self, feed_url: str, cache: FeedCache, *, is_retry: bool = False) -> FeedResult:
        """Fetch one feed. Failures are logged and produce an empty result."""
        current = cache_for_url(cache, feed_url)
        headers = dict(FEED_HEADERS)
        if current.etag:
            headers["If-None-Match"] = current.etag
        if current.lastModified:
            headers["If-Modified-Since"] = current.lastModified

        try:
            async with self._client() as client:
                response = await client.get(feed_url, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("research.feed_fetch_failed", feed_url=feed_url, error=str(exc))
            return FeedResult()

        if response.status_code == 304:
            return FeedResult(
                content_hash=current.hash,
                not_modified=True,
                etag=current.etag,
                last_modified=current.lastModified,
            )

        if not response.is_success:
            logger.warning("research.feed_bad_status", feed_url=feed_url, status=response.status_code)
            return await self._retry_alternative(feed_url, cache, is_retry)

        text = decode_body(response.content, response.headers.get("content-type"))
        if WHITELIST_MARKER in text:
            logger.info("research.feed_whitelist_blocked", feed_url=feed_url)
            return await self._retry_alternative(feed_url, cache, is_retry)

        digest = content_hash(text)
        etag = response.headers.get("etag")
        last_modified = response.headers.get("last-modified")
        if current.hash and digest == current.hash:
            return FeedResult(
                content_hash=digest,
                not_modified=True,
                etag=etag,
                last_modified=last_modified,
            )

        return FeedResult(
            items=parse_feed(text),
            content_hash=digest,
            etag=etag,
            last_modified=last_modified,
        )

    async def _retry_alternative(self, feed_url: str, cache: FeedCache, is_retry: bool) -> FeedResult:
        alt = None if is_retry else alternative_feed_url(feed_url)
        if alt is None:
            return FeedResult()
        logger.info("research.feed_trying_alternative", feed_url=feed_url, alternative=alt)
        return await self.fetch(alt, cache, is_retry=True)
