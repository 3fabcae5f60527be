"""Research summary generation and history.

SummaryService calls the external generate-research-summary function,
relays its Server-Sent Events as they arrive, and stores the finished
summary in research_summary_history. Starting a new run for a user
supersedes the one already in flight: the older stream stops at its next
chunk and saves nothing.

The function sends ``{"type": "meta", "metadata": {...}}`` first, then
``{"type": "delta", "text": "..."}`` chunks, then ``[DONE]``. A plain JSON
``{"summary", "metadata"}`` body is accepted too.
"""

from __future__ import annotations

import itertools
import json
import re
from collections.abc import AsyncIterator
from typing import Any

import structlog

from src.app.research.repository import ResearchRepository
from src.app.research.schemas import SummaryMetadata, SummaryStage
from src.app.services.functions import DONE, FunctionsClient

logger = structlog.get_logger(__name__)

FUNCTION_NAME = "generate-research-summary"
DEFAULT_ERROR = "Failed to generate summary"
DEFAULT_TITLE = "Research Summary"
TITLE_MAX = 120
PREVIEW_MAX = 160

_MARKDOWN_RULES = (
    (re.compile(r"`{1,3}[^`]*`{1,3}"), " "),
    (re.compile(r"\*\*([^*]+)\*\*"), r"\1"),
    (re.compile(r"__([^_]+)__"), r"\1"),
    (re.compile(r"\*([^*]+)\*"), r"\1"),
    (re.compile(r"_([^_]+)_"), r"\1"),
    (re.compile(r"!\[([^\]]*)\]\([^)]+\)"), r"\1"),
    (re.compile(r"\[([^\]]+)\]\([^)]+\)"), r"\1"),
    (re.compile(r"^#{1,6}\s+", re.MULTILINE), ""),
    (re.compile(r"^\s*[-*+]\s+", re.MULTILINE), ""),
    (re.compile(r"^\s*\d+\.\s+", re.MULTILINE), ""),
    (re.compile(r"\s+"), " "),
)


def strip_markdown(value: str) -> str:
    for pattern, replacement in _MARKDOWN_RULES:
        value = pattern.sub(replacement, value)
    return value.strip()


def _truncate(value: str, limit: int) -> str:
    return f"{value[:limit]}..." if len(value) > limit else value


def derive_title(summary: str) -> str:
    """Title from the summary's first non-blank line (usually its heading)."""
    lines = [line.strip() for line in summary.split("\n") if line.strip()]
    if not lines:
        return DEFAULT_TITLE
    first = re.sub(r"^#+\s*", "", strip_markdown(lines[0]))
    return _truncate(first, TITLE_MAX) if first else DEFAULT_TITLE


def derive_preview(summary: str) -> str:
    return _truncate(strip_markdown(summary), PREVIEW_MAX)


class SSEBuffer:
    """Incremental SSE splitter.

    Feed it decoded text chunks; it returns the ``data:`` payloads of every
    complete event (events end at a blank line). flush() drains whatever is
    left when the body ends without a final blank line.
    """

    def __init__(self) -> None:
        self._buffer = ""

    @staticmethod
    def _payloads(block: str) -> list[str]:
        return [
            line[len("data:"):].strip()
            for line in block.split("\n")
            if line.startswith("data:")
        ]

    def feed(self, chunk: str) -> list[str]:
        self._buffer = (self._buffer + chunk).replace("\r\n", "\n")
        payloads: list[str] = []
        while "\n\n" in self._buffer:
            block, self._buffer = self._buffer.split("\n\n", 1)
            payloads.extend(self._payloads(block))
        return payloads

    def flush(self) -> list[str]:
        block, self._buffer = self._buffer.replace("\r\n", "\n"), ""
        return self._payloads(block)


class SummaryService:
    """Runs summary generations and manages their history.

    Args:
        functions: Client for the hosted functions.
        repository: ResearchRepository for history and read flags.
    """

    def __init__(self, functions: FunctionsClient, repository: ResearchRepository) -> None:
        self._functions = functions
        self._repository = repository
        self._run_ids = itertools.count(1)
        self._active: dict[str, int] = {}

    def is_current(self, user_id: str, run_id: int) -> bool:
        return self._active.get(user_id) == run_id

    def cancel(self, user_id: str) -> bool:
        """Cancel the user's in-flight run, if any."""
        return self._active.pop(user_id, None) is not None

    async def stream(
        self,
        user_id: str,
        source_ids: list[str],
        *,
        mark_as_read: bool = False,
        max_items: int | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield stage, meta and delta events, then done with the saved history row.

        Raises:
            FunctionError: If the function answers with a non-success status.
            httpx.HTTPError: If the connection fails or drops mid-stream.
        """
        run_id = next(self._run_ids)
        previous = self._active.get(user_id)
        self._active[user_id] = run_id
        if previous is not None:
            logger.info("research.summary_superseded", user_id=user_id, previous_run=previous)

        payload: dict[str, Any] = {"sourceIds": source_ids, "markAsRead": mark_as_read}
        if max_items is not None:
            payload["maxItems"] = max_items

        metadata = SummaryMetadata()
        chunks: list[str] = []
        superseded = False

        yield {"type": "stage", "stage": SummaryStage.PREPARING.value}
        try:
            async with self._functions.stream(
                FUNCTION_NAME, payload, default_error=DEFAULT_ERROR, params={"stream": "1"}
            ) as response:
                yield {"type": "stage", "stage": SummaryStage.STREAMING.value}

                if "application/json" in response.headers.get("content-type", ""):
                    body = json.loads(await response.aread())
                    metadata = self._metadata(body.get("metadata"))
                    yield {"type": "meta", "metadata": metadata.model_dump(exclude={"extra"})}
                    if body.get("summary"):
                        chunks.append(body["summary"])
                        yield {"type": "delta", "text": body["summary"]}
                else:
                    buffer = SSEBuffer()
                    done = False
                    async for chunk in response.aiter_text():
                        if not self.is_current(user_id, run_id):
                            superseded = True
                            break
                        for event in self._events(buffer.feed(chunk)):
                            if event is None:
                                done = True
                                break
                            if event["type"] == "meta":
                                metadata = self._metadata(event.get("metadata"))
                            else:
                                chunks.append(event["text"])
                            yield event
                        if done:
                            break
                    if not done and not superseded:
                        for event in self._events(buffer.flush()):
                            if event is None:
                                break
                            if event["type"] == "meta":
                                metadata = self._metadata(event.get("metadata"))
                            else:
                                chunks.append(event["text"])
                            yield event
        finally:
            if self.is_current(user_id, run_id):
                self._active.pop(user_id, None)

        if superseded:
            logger.info("research.summary_run_stopped", user_id=user_id, run_id=run_id)
            yield {"type": "cancelled"}
            return

        summary = "".join(chunks)
        history = None
        if summary.strip():
            yield {"type": "stage", "stage": SummaryStage.SAVING.value}
            history = await self.save(user_id, summary, metadata, source_ids)
            if mark_as_read:
                marked = await self._repository.mark_all_read(user_id, source_ids or None)
                logger.info("research.summary_marked_read", user_id=user_id, count=marked)

        yield {"type": "stage", "stage": SummaryStage.DONE.value}
        yield {
            "type": "done",
            "summary": summary,
            "history": history.model_dump(mode="json") if history else None,
        }

    @staticmethod
    def _events(payloads: list[str]):
        """Map raw payloads to meta/delta events; None marks [DONE]."""
        for payload in payloads:
            if not payload:
                continue
            if payload == DONE:
                yield None
                return
            try:
                parsed = json.loads(payload)
            except ValueError:
                continue
            if not isinstance(parsed, dict):
                continue
            if parsed.get("type") == "meta":
                yield {"type": "meta", "metadata": parsed.get("metadata") or {}}
            elif parsed.get("type") == "delta" and parsed.get("text"):
                yield {"type": "delta", "text": parsed["text"]}

    @staticmethod
    def _metadata(raw: Any) -> SummaryMetadata:
        if not isinstance(raw, dict):
            return SummaryMetadata()
        counts = raw.get("priorityCounts") or {}
        return SummaryMetadata(
            itemCount=int(raw.get("itemCount") or 0),
            sourceCount=int(raw.get("sourceCount") or 0),
            priorityCounts={str(k): int(v) for k, v in counts.items()} if isinstance(counts, dict) else {},
            extra={k: v for k, v in raw.items() if k not in ("itemCount", "sourceCount", "priorityCounts")},
        )

    async def save(
        self, user_id: str, summary: str, metadata: SummaryMetadata, source_ids: list[str]
    ):
        return await self._repository.save_summary(
            user_id,
            summary=summary,
            title=derive_title(summary),
            preview=derive_preview(summary),
            item_count=metadata.itemCount,
            source_count=metadata.sourceCount or len(source_ids),
            source_ids=source_ids,
            priority_counts=metadata.priorityCounts,
        )
