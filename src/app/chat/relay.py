"""Streaming relay to the ai-chat function.

The function answers with OpenAI-style SSE chunks. A chunk whose delta
carries ``thinking: true`` is the model's reasoning; anything else is the
answer. ChatRelay.stream() turns those into events for the caller to
forward:

- ``{"type": "thinking", "text": str}``
- ``{"type": "delta", "text": str}``
- ``{"type": "done", "reply": {...}}`` with the collected answer, the
  reasoning, and the source tags the answer cites
"""

from __future__ import annotations

import re
from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

from src.app.chat.schemas import ChatMessage, ChatReply, ChatStatus, SourceTag
from src.app.services.functions import FunctionError, FunctionsClient, iter_sse_json

logger = structlog.get_logger(__name__)

FUNCTION_NAME = "ai-chat"
STATUS_FUNCTION = "ai-chat-status"
DEFAULT_ERROR = "Failed to send message"

_SOURCE_TAG = re.compile(r"\[(DB|NOTION|RESEARCH|WEB)\]", re.IGNORECASE)


def cited_sources(text: str) -> list[SourceTag]:
    """Source tags used in ``text``, in order of first use."""
    seen: dict[SourceTag, None] = {}
    for match in _SOURCE_TAG.finditer(text):
        seen.setdefault(SourceTag(match.group(1).upper()), None)
    return list(seen)


def _delta(event: dict[str, Any]) -> tuple[str, bool] | None:
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if not isinstance(content, str) or not content:
        return None
    return content, delta.get("thinking") is True


class ChatRelay:
    """Sends conversations to the ai-chat function.

    Args:
        functions: Client for the hosted functions.
    """

    def __init__(self, functions: FunctionsClient) -> None:
        self._functions = functions

    async def stream(self, user_id: str, messages: list[ChatMessage]) -> AsyncIterator[dict[str, Any]]:
        """Yield thinking/delta events, then done with the whole reply.

        Nothing is yielded before the function has answered, so a rejected
        request raises before the first event.

        Raises:
            FunctionError: If the function answers with a non-success status.
            httpx.HTTPError: If the connection fails or drops mid-stream.
        """
        payload = {"messages": [m.model_dump(mode="json") for m in messages]}
        answer: list[str] = []
        thinking: list[str] = []

        logger.info("chat.started", user_id=user_id, turns=len(messages))
        async with self._functions.stream(FUNCTION_NAME, payload, default_error=DEFAULT_ERROR) as response:
            async for event in iter_sse_json(response.aiter_lines()):
                delta = _delta(event)
                if delta is None:
                    continue
                text, is_thinking = delta
                if is_thinking:
                    thinking.append(text)
                    yield {"type": "thinking", "text": text}
                else:
                    answer.append(text)
                    yield {"type": "delta", "text": text}

        content = "".join(answer)
        reply = ChatReply(content=content, thinking="".join(thinking), sources=cited_sources(content))
        logger.info("chat.completed", user_id=user_id, length=len(content), sources=len(reply.sources))
        yield {"type": "done", "reply": reply.model_dump(mode="json")}

    async def reply(self, user_id: str, messages: list[ChatMessage]) -> ChatReply:
        """Run a chat turn to completion."""
        final = ChatReply()
        async for event in self.stream(user_id, messages):
            if event["type"] == "done":
                final = ChatReply.model_validate(event["reply"])
        return final

    async def status(self, notion_connected: bool) -> ChatStatus:
        """Report the sources available to the assistant.

        Notion comes from the user's own profile; web search is whatever
        ai-chat-status reports, and off when it cannot be reached.
        """
        try:
            body = await self._functions.invoke(STATUS_FUNCTION, {})
        except (FunctionError, httpx.HTTPError) as exc:
            logger.warning("chat.status_failed", error=str(exc))
            return ChatStatus(hasNotion=notion_connected)
        return ChatStatus(hasNotion=notion_connected, hasWeb=bool(body.get("hasWeb")))
