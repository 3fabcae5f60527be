"""Article extraction for crawl sources via the Firecrawl scrape API.

The primary path asks Firecrawl for a structured ``articles`` list. When
that call fails or extracts nothing, the page's links are filtered down to
article-looking URLs on the same site, titled from the markdown link text
or the URL slug.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from urllib.parse import urljoin, urlsplit

import httpx
import structlog
from dateutil import parser as date_parser
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.app.research.schemas import FetchedItem

logger = structlog.get_logger(__name__)

FIRECRAWL_SCRAPE_URL = "https://api.firecrawl.dev/v1/scrape"
MAX_LINK_ARTICLES = 20

_firecrawl_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)

ARTICLE_SCHEMA = {
    "type": "object",
    "properties": {
        "articles": {
            "type": "array",
            "description": "List of news articles or blog posts found on the page",
            "items": {
                "type": "object",
                "properties": {
                    "title": {"type": "string", "description": "The headline or title of the article"},
                    "url": {
                        "type": "string",
                        "description": "The full URL link to the article. Must be absolute URL starting with http",
                    },
                    "summary": {
                        "type": "string",
                        "description": "Brief summary, excerpt or description of the article (1-3 sentences)",
                    },
                    "date": {
                        "type": "string",
                        "description": 'Publication date in any format (e.g., "2024-01-15", "Jan 15, 2024")',
                    },
                },
                "required": ["title", "url"],
            },
        }
    },
    "required": ["articles"],
}

EXTRACT_PROMPT = (
    "Extract all news articles, blog posts, or content items from this page.\n"
    "For each article, find:\n"
    "- The title/headline\n"
    "- The URL (must be a complete absolute URL, not relative)\n"
    "- A summary or excerpt if available\n"
    "- The publication date if shown\n\n"
    "Only extract actual content items, not navigation links, ads, or site sections.\n"
    "If URLs are relative, convert them to absolute URLs using the page's base URL."
)

ARTICLE_PATTERNS = (
    re.compile(r"/\d{4}/\d{2}/"),
    re.compile(r"/article/", re.IGNORECASE),
    re.compile(r"/post/", re.IGNORECASE),
    re.compile(r"/blog/", re.IGNORECASE),
    re.compile(r"/news/", re.IGNORECASE),
    re.compile(r"/story/", re.IGNORECASE),
    re.compile(r"/p/[a-z0-9-]+$", re.IGNORECASE),
    re.compile(r"-\d+\.html$", re.IGNORECASE),
    re.compile(r"/[a-z0-9-]+-[a-z0-9-]+$", re.IGNORECASE),
)


def _parse_date(value: str | None, default: datetime) -> datetime:
    if not value:
        return default
    try:
        parsed = date_parser.parse(value)
    except (ValueError, OverflowError):
        return default
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def items_from_extract(articles: list[dict], page_url: str, now: datetime | None = None) -> list[FetchedItem]:
    """Turn Firecrawl's extracted articles into items, deduplicated by url."""
    now = now or datetime.now(timezone.utc)
    parts = urlsplit(page_url)
    origin = f"{parts.scheme}://{parts.netloc}"

    items: list[FetchedItem] = []
    seen: set[str] = set()
    for article in articles:
        if not isinstance(article, dict):
            continue
        title, url = article.get("title"), article.get("url")
        if not title or not url:
            continue
        if not url.startswith("http"):
            url = urljoin(origin + "/", url)
        if not url.startswith("http") or url in seen:
            continue
        seen.add(url)
        summary = article.get("summary") or ""
        items.append(
            FetchedItem(
                title=title[:500],
                url=url,
                summary=summary[:1000],
                content=summary,
                published_at=_parse_date(article.get("date"), now),
            )
        )
    return items


def _same_site(link_host: str, base_host: str) -> bool:
    return link_host == base_host or link_host.endswith("." + base_host)


def _slug_title(url: str) -> str:
    slug = urlsplit(url).path.rstrip("/").split("/")[-1]
    slug = re.sub(r"\.\w+$", "", slug.replace("-", " ").replace("_", " "))
    return " ".join(w[:1].upper() + w[1:] for w in slug.split(" "))[:200]


def items_from_links(
    links: list[str], markdown: str, page_url: str, now: datetime | None = None
) -> list[FetchedItem]:
    """Pick article-looking same-site links and title them."""
    now = now or datetime.now(timezone.utc)
    parts = urlsplit(page_url)
    origin = f"{parts.scheme}://{parts.netloc}"

    candidates = []
    for link in links:
        if not isinstance(link, str):
            continue
        host = urlsplit(urljoin(origin + "/", link)).hostname or ""
        if not _same_site(host, parts.hostname or ""):
            continue
        if any(p.search(link) for p in ARTICLE_PATTERNS):
            candidates.append(link)
    candidates = candidates[:MAX_LINK_ARTICLES]

    items = []
    for link in candidates:
        absolute = urljoin(origin + "/", link)
        match = re.search(rf"\[([^\]]+)\]\({re.escape(link)}\)", markdown, re.IGNORECASE)
        title = match.group(1) if match else _slug_title(absolute)
        if not title or len(title) < 3:
            title = "Article"
        items.append(FetchedItem(title=title, url=absolute, published_at=now))
    return [item for item in items if len(item.title) >= 3]


class FirecrawlClient:
    """Thin async wrapper around Firecrawl's scrape endpoint.

    Args:
        api_key: Firecrawl API key. Without one, crawl() returns nothing.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport (tests inject a MockTransport).
    """

    TIMEOUT = 60.0

    def __init__(
        self,
        api_key: str | None,
        timeout: float = TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            timeout=self._timeout,
            transport=self._transport,
        )

    @_firecrawl_retry
    async def scrape(self, payload: dict) -> httpx.Response:
        async with self._client() as client:
            return await client.post(FIRECRAWL_SCRAPE_URL, json=payload)

    async def crawl(self, url: str) -> list[FetchedItem]:
        """Extract articles from a page. Errors are logged and yield []."""
        if not self.configured:
            logger.info("research.crawl_skipped", url=url, reason="no_api_key")
            return []

        try:
            response = await self.scrape(
                {
                    "url": url,
                    "formats": ["extract", "markdown", "links"],
                    "onlyMainContent": True,
                    "extract": {"schema": ARTICLE_SCHEMA, "prompt": EXTRACT_PROMPT},
                }
            )
            if not response.is_success:
                logger.warning(
                    "research.crawl_extract_failed",
                    url=url,
                    status=response.status_code,
                    body=response.text[:500],
                )
                return await self._links_fallback(url)

            data = response.json().get("data") or {}
            articles = (data.get("extract") or {}).get("articles") or []
            if articles:
                items = items_from_extract(articles, url)
                logger.info("research.crawl_extracted", url=url, count=len(items))
                return items

            logger.info("research.crawl_no_articles", url=url)
            return await self._links_fallback(url, data)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("research.crawl_failed", url=url, error=str(exc))
            return []

    async def _links_fallback(self, url: str, data: dict | None = None) -> list[FetchedItem]:
        if data is None:
            response = await self.scrape(
                {"url": url, "formats": ["markdown", "links"], "onlyMainContent": True}
            )
            if not response.is_success:
                logger.warning("research.crawl_links_failed", url=url, status=response.status_code)
                return []
            data = response.json().get("data") or {}
        return items_from_links(data.get("links") or [], data.get("markdown") or "", url)
