"""REST API endpoints for the research assistant chat.

Replies are relayed as Server-Sent Events: ``thinking`` and ``delta``
events as the ai-chat function produces them, then ``done`` with the whole
reply. Conversations are not stored; the client sends the full history
with every turn.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from src.app.api.deps import get_current_user
from src.app.api.errors import upstream_http_error
from src.app.chat.relay import DEFAULT_ERROR
from src.app.chat.schemas import ChatReply, ChatRequest, ChatStatus
from src.app.models.user import User
from src.app.services.functions import FunctionError

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


def _get_relay(request: Request) -> Any:
    relay = getattr(request.app.state, "chat_relay", None)
    if relay is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Chat not initialized",
        )
    return relay


def _sse(event: dict) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


@router.post("")
async def chat(
    body: ChatRequest,
    request: Request,
    user: User = Depends(get_current_user),
):
    """Stream the assistant's reply to the conversation as SSE."""
    relay = _get_relay(request)
    events = relay.stream(str(user.id), body.messages)
    try:
        first = await events.__anext__()
    except StopAsyncIteration:
        first = None
    except (FunctionError, httpx.HTTPError) as exc:
        await events.aclose()
        logger.warning("chat.failed", user_id=str(user.id), error=str(exc))
        raise upstream_http_error(exc, DEFAULT_ERROR)

    async def event_generator():
        if first is not None:
            yield _sse(first)
        try:
            async for event in events:
                yield _sse(event)
        except (FunctionError, httpx.HTTPError) as exc:
            logger.warning("chat.stream_failed", user_id=str(user.id), error=str(exc))
            yield _sse({"type": "error", "error": str(exc) or DEFAULT_ERROR})
        yield "data: [DONE]\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.post("/sync", response_model=ChatReply)
async def chat_sync(
    body: ChatRequest,
    request: Request,
    user: User = Depends(get_current_user),
) -> ChatReply:
    relay = _get_relay(request)
    try:
        return await relay.reply(str(user.id), body.messages)
    except (FunctionError, httpx.HTTPError) as exc:
        raise upstream_http_error(exc, DEFAULT_ERROR)


@router.get("/status", response_model=ChatStatus)
async def chat_status(
    request: Request,
    user: User = Depends(get_current_user),
) -> ChatStatus:
    """Whether the assistant can search the user's Notion and the web."""
    relay = _get_relay(request)
    return await relay.status(bool(user.notion_api_key))
