"""Notion sync for notes, page-access checks, and integration key tests.

Key implementation details:
- Notes are stored as editor HTML; html_to_notion_blocks() turns paragraphs,
  headings and lists into Notion blocks with bold/italic/underline runs
- Pages are created with at most 100 children (Notion API limit)
- Page creation is wrapped with tenacity retry on rate limits, 5xx and timeouts
- One failing note is logged and skipped; the rest of the run continues

Exports:
    html_to_notion_blocks: Convert note HTML into Notion block dicts.
    NotionService: Server-side Notion client for the notes databases.
    check_api_key: Validate a user-supplied integration key via users.me.
"""

from __future__ import annotations

import asyncio
import html as html_lib
import re
from collections.abc import Callable, Iterable
from typing import Any

import structlog
from notion_client import AsyncClient
from notion_client.errors import HTTPResponseError, RequestTimeoutError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.app.notes.schemas import DailyNoteRead, NotionSyncResult
from src.app.stocks.schemas import StockNoteRead

logger = structlog.get_logger(__name__)

MAX_CHILDREN = 100
MAX_TEXT = 2000
PAGE_CHECK_TIMEOUT = 10.0
KEY_PREFIXES = ("secret_", "ntn_")

_FORMAT = re.compile(r"<(strong|b|em|i|u)>(.*?)</\1>")
_TAG = re.compile(r"<[^>]*>")
_BLOCK_TAG = re.compile(r"<(p|h[1-6]|ul|ol)(?:[^>]*)>|</(p|h[1-6]|ul|ol)>")
_LIST_ITEM = re.compile(r"<li[^>]*>(.*?)</li>", re.DOTALL)
_HEADINGS = {"h1": "heading_1", "h2": "heading_2"}


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, RequestTimeoutError):
        return True
    if isinstance(exc, HTTPResponseError):
        return exc.status == 429 or exc.status >= 500
    return False


_notion_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)


# ── HTML -> Notion blocks ────────────────────────────────────────────────


def _plain(fragment: str) -> str:
    return html_lib.unescape(_TAG.sub("", fragment).replace("&nbsp;", " "))


def _rich_text(fragment: str) -> list[dict]:
    """Split an inline HTML fragment into Notion rich text runs."""
    parts: list[tuple[str, str | None]] = []
    last = 0
    for match in _FORMAT.finditer(fragment):
        if match.start() > last:
            parts.append((_plain(fragment[last:match.start()]), None))
        parts.append((_plain(match.group(2)), match.group(1)))
        last = match.end()
    if last < len(fragment):
        parts.append((_plain(fragment[last:]), None))

    runs = []
    for text, tag in parts:
        if not text.strip():
            continue
        run: dict[str, Any] = {"type": "text", "text": {"content": text}}
        if tag is not None:
            run["annotations"] = {
                "bold": tag in ("strong", "b"),
                "italic": tag in ("em", "i"),
                "underline": tag == "u",
            }
        runs.append(run)
    return runs


def _block(block_type: str, rich_text: list[dict]) -> dict:
    return {"object": "block", "type": block_type, block_type: {"rich_text": rich_text}}


def _paragraph_block(text: str) -> dict:
    return _block("paragraph", [{"type": "text", "text": {"content": text[:MAX_TEXT]}}])


def html_to_notion_blocks(html: str | None) -> list[dict]:
    """Convert note HTML into Notion blocks.

    ``<p>`` becomes a paragraph, ``<h1>``/``<h2>`` heading_1/heading_2 and
    ``<h3>``-``<h6>`` heading_3; ``<ul>``/``<ol>`` items become bulleted or
    numbered list items. When nothing block-level is found the stripped text
    (if any) becomes a single paragraph of at most 2000 characters.
    """
    if not html:
        return []

    blocks: list[dict] = []
    in_list = False
    for match in _BLOCK_TAG.finditer(html):
        closing = match.group(0).startswith("</")
        tag = match.group(2) if closing else match.group(1)

        if closing:
            if tag in ("ul", "ol"):
                in_list = False
            continue

        if tag in ("ul", "ol"):
            in_list = True
            end = html.find(f"</{tag}>", match.start())
            body = html[match.start():] if end < 0 else html[match.start():end]
            block_type = "bulleted_list_item" if tag == "ul" else "numbered_list_item"
            for item in _LIST_ITEM.finditer(body):
                runs = _rich_text(item.group(1))
                if runs:
                    blocks.append(_block(block_type, runs))
        elif tag.startswith("h"):
            end = html.find(f"</{tag}>", match.start())
            runs = _rich_text(html[match.end():end] if end >= 0 else html[match.end():])
            if runs:
                blocks.append(_block(_HEADINGS.get(tag, "heading_3"), runs))
        elif tag == "p" and not in_list:
            end = html.find("</p>", match.start())
            runs = _rich_text(html[match.end():end] if end >= 0 else html[match.end():])
            if runs:
                blocks.append(_block("paragraph", runs))

    if not blocks:
        text = _plain(html).strip()
        if text:
            blocks.append(_paragraph_block(text))
    return blocks


def _title(text: str) -> dict:
    return {"title": [{"text": {"content": text}}]}


def _date(value: str) -> dict:
    return {"date": {"start": value}}


# ── Service ──────────────────────────────────────────────────────────────


class NotionService:
    """Creates notes pages in the configured Notion databases.

    Args:
        token: Notion integration token.
        market_db_id: Database for daily market notes.
        stock_db_id: Database for per-symbol stock notes.
        weekly_db_id: Database for weekly additional notes.
        client: Pre-built AsyncClient (tests pass a mock).
    """

    def __init__(
        self,
        token: str,
        market_db_id: str = "",
        stock_db_id: str = "",
        weekly_db_id: str = "",
        client: Any | None = None,
    ) -> None:
        self._client = client if client is not None else AsyncClient(auth=token)
        self._market_db_id = market_db_id
        self._stock_db_id = stock_db_id
        self._weekly_db_id = weekly_db_id

    async def aclose(self) -> None:
        await self._client.aclose()

    @_notion_retry
    async def _create_page(self, database_id: str, properties: dict, children: list[dict]) -> str:
        page = await self._client.pages.create(
            parent={"database_id": database_id},
            properties=properties,
            children=children[:MAX_CHILDREN],
        )
        return page.get("id", "")

    async def test_page_access(self, page_id: str) -> dict[str, Any]:
        """Check the integration can read a page. Never raises."""
        clean_id = page_id.replace("-", "")
        try:
            await self._client.pages.retrieve(page_id=clean_id)
        except Exception as exc:
            logger.warning("notion.page_check_failed", page_id=clean_id, error=str(exc))
            return {"success": False, "message": "Cannot access Notion page"}
        logger.info("notion.page_check_ok", page_id=clean_id)
        return {"success": True, "message": "Notion page accessible"}

    async def page_connected(self, page_id: str, timeout: float = PAGE_CHECK_TIMEOUT) -> bool:
        """test_page_access bounded by ``timeout`` seconds; a timeout counts as disconnected."""
        try:
            result = await asyncio.wait_for(self.test_page_access(page_id), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("notion.page_check_timeout", page_id=page_id, timeout=timeout)
            return False
        return bool(result["success"])

    async def sync_notes(
        self,
        daily_notes: Iterable[DailyNoteRead],
        stock_notes: Iterable[StockNoteRead],
    ) -> NotionSyncResult:
        """Create one Notion page per daily note and per stock note.

        Raises:
            ValueError: If the market or stock database id is not configured.
        """
        if not self._market_db_id or not self._stock_db_id:
            raise ValueError("Missing Notion database IDs for daily/stock notes")

        result = NotionSyncResult()
        for note in daily_notes:
            day = note.date.isoformat()
            blocks = html_to_notion_blocks(note.content)
            if not blocks:
                continue
            try:
                page_id = await self._create_page(
                    self._market_db_id,
                    {"Title": _title(f"Market Notes - {day}"), "Date": _date(day)},
                    blocks,
                )
            except Exception as exc:
                logger.error("notion.market_note_failed", date=day, error=str(exc))
                continue
            result.market_notes += 1
            logger.info("notion.page_created", kind="market_note", date=day, page_id=page_id)

        for note in stock_notes:
            day = note.date.isoformat()
            try:
                page_id = await self._create_page(
                    self._stock_db_id,
                    {
                        "Title": _title(f"{note.symbol} - {day}"),
                        "Symbol": {"rich_text": [{"text": {"content": note.symbol}}]},
                        "Date": _date(day),
                    },
                    [_paragraph_block(note.note)],
                )
            except Exception as exc:
                logger.error("notion.stock_note_failed", symbol=note.symbol, date=day, error=str(exc))
                continue
            result.stock_notes += 1
            logger.info(
                "notion.page_created",
                kind="stock_note",
                symbol=note.symbol,
                date=day,
                page_id=page_id,
            )

        logger.info(
            "notion.sync_completed",
            market_notes=result.market_notes,
            stock_notes=result.stock_notes,
        )
        return result

    async def sync_weekly_notes(self, day: str, content: str) -> NotionSyncResult:
        """Create the "Weekly Notes - {day}" page.

        Raises:
            ValueError: If the weekly database is not configured, an input is
                missing, or the content converts to no blocks.
        """
        if not self._weekly_db_id:
            raise ValueError("Missing NOTION_WEEKLY_NOTES_DB_ID")
        if not day or not content:
            raise ValueError("Missing date or content for weekly_notes sync")

        blocks = html_to_notion_blocks(content)
        if not blocks:
            raise ValueError("No content to sync")

        page_id = await self._create_page(
            self._weekly_db_id,
            {"Title": _title(f"Weekly Notes - {day}"), "Date": _date(day)},
            blocks,
        )
        logger.info("notion.page_created", kind="weekly_note", date=day, page_id=page_id)
        return NotionSyncResult(weekly_notes=1)


async def check_api_key(
    api_key: str | None,
    client_factory: Callable[..., Any] = AsyncClient,
) -> dict[str, Any]:
    """Validate a Notion integration key by calling users.me.

    Returns ``{"success": True, "user": name}`` where name is the user's
    name, else the bot owner's name, else "Connected"; otherwise
    ``{"success": False, "error": ...}``.
    """
    if not api_key or not api_key.startswith(KEY_PREFIXES):
        return {
            "success": False,
            "error": "Invalid API key format. Must start with 'secret_' or 'ntn_'",
        }

    client = client_factory(auth=api_key)
    try:
        me = await client.users.me()
    except HTTPResponseError as exc:
        logger.info("notion.key_test_failed", status=exc.status)
        return {"success": False, "error": f"API error: {exc.status}"}
    except RequestTimeoutError:
        return {"success": False, "error": "Request to Notion timed out"}
    finally:
        await client.aclose()

    owner = ((me.get("bot") or {}).get("owner") or {}).get("user") or {}
    name = me.get("name") or owner.get("name") or "Connected"
    logger.info("notion.key_test_ok")
    return {"success": True, "user": name}
