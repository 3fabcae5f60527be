"""Integration tests for the Chat API.

The real ChatRelay runs against an httpx MockTransport standing in for the
ai-chat and ai-chat-status functions.
"""

from __future__ import annotations

import json

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.app.chat.relay import ChatRelay, cited_sources
from src.app.chat.schemas import SourceTag
from src.app.services.functions import FunctionsClient


class ChatFunctions:
    """Answers ai-chat with a canned stream and ai-chat-status with flags."""

    def __init__(self) -> None:
        self.chat_status = 200
        self.chat_body = ""
        self.chat_error: Exception | None = None
        self.chat_stream: httpx.AsyncByteStream | None = None
        self.status_code = 200
        self.has_web = True
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        name = request.url.path.rsplit("/", 1)[-1]
        if name == "ai-chat-status":
            if self.status_code != 200:
                return httpx.Response(self.status_code, json={"error": "Unauthorized"})
            return httpx.Response(200, json={"hasNotion": True, "hasWeb": self.has_web})

        self.requests.append(json.loads(request.content))
        if self.chat_error is not None:
            raise self.chat_error
        if self.chat_stream is not None:
            return httpx.Response(self.chat_status, stream=self.chat_stream)
        return httpx.Response(self.chat_status, text=self.chat_body)


class DroppedStream(httpx.AsyncByteStream):
    """Sends the given SSE chunks, then fails like a reset connection."""

    def __init__(self, *chunks: str) -> None:
        self._chunks = chunks

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk.encode()
        raise httpx.ReadError("Connection reset by peer")


def chunk(text: str, thinking: bool = False) -> str:
    delta = {"content": text, "thinking": True} if thinking else {"content": text}
    return f"data: {json.dumps({'choices': [{'delta': delta}]})}\n\n"


def parse_sse(text: str) -> list:
    events = []
    for line in text.splitlines():
        if line.startswith("data: "):
            payload = line[len("data: "):]
            events.append(payload if payload == "[DONE]" else json.loads(payload))
    return events


CONVERSATION = {
    "messages": [
        {"role": "user", "content": "How did NVDA do?"},
        {"role": "assistant", "content": "Up 5% on the week."},
        {"role": "user", "content": "Why?"},
    ]
}


# ── Test Fixtures ────────────────────────────────────────────────────────────


def _make_mock_app():
    from fastapi import FastAPI

    from src.app.api.errors import register_error_handlers
    from src.app.api.v1.chat import router

    app = FastAPI()
    register_error_handlers(app)
    app.include_router(router, prefix="/v1")
    return app


@pytest_asyncio.fixture
async def env(current_user):
    from src.app.api.deps import get_current_user

    app = _make_mock_app()
    functions = ChatFunctions()
    client = FunctionsClient("https://functions.test", "key", transport=httpx.MockTransport(functions))
    app.dependency_overrides[get_current_user] = lambda: current_user
    app.state.chat_relay = ChatRelay(client)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http, app, functions


# ── Source tags ──────────────────────────────────────────────────────────────


def test_cited_sources_in_first_use_order():
    text = "[NOTION] Your memo says X. [web] Reuters adds Y. [NOTION]: again. [DBX] is not a tag."
    assert cited_sources(text) == [SourceTag.NOTION, SourceTag.WEB]
    assert cited_sources("Plain answer.") == []


# ── Streaming ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_chat_streams_thinking_then_answer(env):
    client, _, functions = env
    functions.chat_body = (
        chunk("Checking notes", thinking=True)
        + ": keep-alive\n\n"
        + chunk("[DB] You noted the beat. ")
        + chunk("[WEB] Guidance was raised.")
        + "data: [DONE]\n\n"
    )

    response = await client.post("/v1/chat", json=CONVERSATION)
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")

    events = parse_sse(response.text)
    assert events[0] == {"type": "thinking", "text": "Checking notes"}
    assert [e["text"] for e in events if isinstance(e, dict) and e["type"] == "delta"] == [
        "[DB] You noted the beat. ",
        "[WEB] Guidance was raised.",
    ]
    done = events[-2]
    assert done["type"] == "done"
    assert done["reply"] == {
        "content": "[DB] You noted the beat. [WEB] Guidance was raised.",
        "thinking": "Checking notes",
        "sources": ["DB", "WEB"],
    }
    assert events[-1] == "[DONE]"
    assert functions.requests[0] == CONVERSATION


@pytest.mark.asyncio
async def test_chat_sync_returns_whole_reply(env):
    client, _, functions = env
    functions.chat_body = chunk("[RESEARCH] Axios covered it.") + "data: [DONE]\n\n"

    response = await client.post("/v1/chat/sync", json=CONVERSATION)
    assert response.status_code == 200
    assert response.json() == {
        "content": "[RESEARCH] Axios covered it.",
        "thinking": "",
        "sources": ["RESEARCH"],
    }


@pytest.mark.asyncio
async def test_rate_limit_keeps_status(env):
    client, _, functions = env
    functions.chat_status = 429
    functions.chat_body = json.dumps({"error": "Rate limits exceeded, please try again later."})

    response = await client.post("/v1/chat", json=CONVERSATION)
    assert response.status_code == 429
    assert response.json()["detail"] == "Rate limits exceeded, please try again later."


@pytest.mark.asyncio
async def test_function_server_error_is_502(env):
    client, _, functions = env
    functions.chat_status = 500
    functions.chat_body = json.dumps({"error": "Gemini API error: overloaded"})

    response = await client.post("/v1/chat", json=CONVERSATION)
    assert response.status_code == 502
    assert response.json()["detail"] == "Gemini API error: overloaded"


@pytest.mark.asyncio
async def test_connection_failure_is_502(env):
    client, _, functions = env
    functions.chat_error = httpx.ConnectError("All connection attempts failed")

    response = await client.post("/v1/chat", json=CONVERSATION)
    assert response.status_code == 502
    assert response.json()["detail"] == "Failed to send message"


@pytest.mark.asyncio
async def test_dropped_stream_ends_with_error_event(env):
    client, _, functions = env
    functions.chat_stream = DroppedStream(chunk("Partial"))

    response = await client.post("/v1/chat", json=CONVERSATION)
    assert response.status_code == 200
    events = parse_sse(response.text)
    assert events == [
        {"type": "delta", "text": "Partial"},
        {"type": "error", "error": "Connection reset by peer"},
        "[DONE]",
    ]


@pytest.mark.asyncio
async def test_conversation_must_end_with_user_turn(env):
    client, _, functions = env
    response = await client.post(
        "/v1/chat", json={"messages": [{"role": "assistant", "content": "Hello"}]}
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "The last message must be a non-empty user message"

    assert (await client.post("/v1/chat", json={"messages": []})).status_code == 422
    assert functions.requests == []


# ── Status ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_status_uses_profile_for_notion(env, current_user):
    client, _, functions = env
    current_user.notion_api_key = None

    response = await client.get("/v1/chat/status")
    assert response.json() == {"hasNotion": False, "hasWeb": True}

    current_user.notion_api_key = "ntn_abc"
    functions.has_web = False
    response = await client.get("/v1/chat/status")
    assert response.json() == {"hasNotion": True, "hasWeb": False}


@pytest.mark.asyncio
async def test_status_turns_web_off_when_unreachable(env, current_user):
    client, _, functions = env
    current_user.notion_api_key = "ntn_abc"
    functions.status_code = 401

    response = await client.get("/v1/chat/status")
    assert response.status_code == 200
    assert response.json() == {"hasNotion": True, "hasWeb": False}


@pytest.mark.asyncio
async def test_missing_relay_is_503(env):
    client, app, _ = env
    app.state.chat_relay = None
    assert (await client.post("/v1/chat", json=CONVERSATION)).status_code == 503
    assert (await client.get("/v1/chat/status")).status_code == 503
