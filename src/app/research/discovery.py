"""Feed URL discovery for RSS sources added without a feed_url."""

from __future__ import annotations

from urllib.parse import urljoin, urlsplit

import httpx
import structlog
from bs4 import BeautifulSoup

logger = structlog.get_logger(__name__)

DISCOVERY_USER_AGENT = "Mozilla/5.0 (compatible; ResearchBot/1.0)"

COMMON_FEED_PATHS = (
    "/feed",
    "/feed.xml",
    "/rss",
    "/rss.xml",
    "/atom.xml",
    "/feed/atom",
    "/blog/feed",
    "/blog/rss.xml",
)
FEED_LINK_TYPES = ("application/rss+xml", "application/atom+xml")


def site_origin(url: str) -> str | None:
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}"


def find_feed_link(html: str, origin: str) -> str | None:
    """First <link type="application/rss+xml|atom+xml" href> in a page, made absolute."""
    soup = BeautifulSoup(html, "html.parser")
    for link in soup.find_all("link", href=True):
        link_type = (link.get("type") or "").strip().lower()
        if link_type in FEED_LINK_TYPES:
            href = link["href"].strip()
            return href if href.startswith("http") else urljoin(origin + "/", href)
    return None


async def discover_feed_url(
    website_url: str,
    *,
    timeout: float = 20.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str | None:
    """Find a feed for a website.

    Tries the usual feed paths with HEAD first, accepting any OK response
    whose content type mentions xml, rss or atom, then falls back to the
    page's feed <link> tag.
    """
    origin = site_origin(website_url)
    if origin is None:
        return None

    headers = {"User-Agent": DISCOVERY_USER_AGENT}
    async with httpx.AsyncClient(
        headers=headers, timeout=timeout, follow_redirects=True, transport=transport
    ) as client:
        for path in COMMON_FEED_PATHS:
            candidate = f"{origin}{path}"
            try:
                response = await client.head(candidate)
            except httpx.HTTPError:
                continue
            content_type = response.headers.get("content-type", "").lower()
            if response.is_success and any(k in content_type for k in ("xml", "rss", "atom")):
                logger.info("research.feed_discovered", url=website_url, feed_url=candidate)
                return candidate

        try:
            response = await client.get(website_url)
        except httpx.HTTPError as exc:
            logger.warning("research.feed_discovery_failed", url=website_url, error=str(exc))
            return None

    if not response.is_success:
        return None
    feed_url = find_feed_link(response.text, origin)
    if feed_url:
        logger.info("research.feed_discovered", url=website_url, feed_url=feed_url)
    return feed_url
