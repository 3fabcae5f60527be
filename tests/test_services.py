"""Tests for the hosted functions client and local logo storage."""

from __future__ import annotations

import httpx
import pytest

from src.app.services.functions import (
    FunctionError,
    FunctionsClient,
    error_message,
    iter_sse_json,
    parse_sse_payload,
)
from src.app.services.storage import (
    MAX_LOGO_BYTES,
    InvalidUploadError,
    LogoStorage,
    file_extension,
)


# ── Functions client ─────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "body,expected",
    [
        ('{"error": "Quota exceeded"}', "Quota exceeded"),
        ('{"message": "no error key"}', "fallback"),
        ("upstream exploded", "upstream exploded"),
        ("", "fallback"),
    ],
)
def test_error_message(body, expected):
    assert error_message(body, "fallback") == expected


def test_parse_sse_payload():
    assert parse_sse_payload('data: {"a": 1}') == '{"a": 1}'
    assert parse_sse_payload("data:") is None
    assert parse_sse_payload(": keep-alive") is None
    assert parse_sse_payload("event: message") is None


@pytest.mark.asyncio
async def test_iter_sse_json_stops_at_done():
    async def lines():
        for line in ['data: {"n": 1}', "", "data: not json", "data: [1, 2]", "data: [DONE]", 'data: {"n": 2}']:
            yield line

    assert [e async for e in iter_sse_json(lines())] == [{"n": 1}]


def test_url_and_configured():
    client = FunctionsClient("https://functions.test/")
    assert client.url("summarize") == "https://functions.test/functions/v1/summarize"
    assert client.configured
    assert not FunctionsClient("").configured


@pytest.mark.asyncio
async def test_invoke_returns_json_body():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    client = FunctionsClient("https://functions.test", "key", transport=httpx.MockTransport(handler))
    assert await client.invoke("ping", {"x": 1}) == {"ok": True}
    assert seen[0].headers["Authorization"] == "Bearer key"


@pytest.mark.asyncio
async def test_invoke_client_error_raises_once():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(422, json={"error": "Missing symbols"})

    client = FunctionsClient("https://functions.test", transport=httpx.MockTransport(handler))
    with pytest.raises(FunctionError) as excinfo:
        await client.invoke("fetch-stock-data", {})
    assert str(excinfo.value) == "Missing symbols"
    assert excinfo.value.status_code == 422
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_stream_error_uses_default_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="")

    client = FunctionsClient("https://functions.test", transport=httpx.MockTransport(handler))
    with pytest.raises(FunctionError, match="Failed to summarize"):
        async with client.stream("summarize", {}, default_error="Failed to summarize"):
            pass


# ── Logo storage ─────────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "filename,content_type,expected",
    [
        ("logo.PNG", "image/png", "png"),
        ("logo", "image/jpeg", "jpg"),
        (None, "image/svg+xml", "svg"),
        (None, "image/webp; charset=binary", "webp"),
        (None, None, "bin"),
    ],
)
def test_file_extension(filename, content_type, expected):
    assert file_extension(filename, content_type) == expected


@pytest.mark.asyncio
async def test_save_logo_writes_file(tmp_path):
    storage = LogoStorage(tmp_path, "https://media.test/")
    url = await storage.save_logo("u1", b"\x89PNG", "logo.png", "image/png")

    assert url.startswith("https://media.test/research-logos/u1/")
    assert url.endswith(".png")
    name = url.rsplit("/", 1)[-1]
    assert (tmp_path / "research-logos" / "u1" / name).read_bytes() == b"\x89PNG"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "data,content_type,message",
    [
        (b"abc", "text/plain", "Please upload an image file"),
        (b"", "image/png", "Uploaded file is empty"),
        (b"x" * (MAX_LOGO_BYTES + 1), "image/png", "Logo must be 5MB or smaller"),
    ],
)
async def test_save_logo_rejects_bad_uploads(tmp_path, data, content_type, message):
    storage = LogoStorage(tmp_path, "/media")
    with pytest.raises(InvalidUploadError, match=message):
        await storage.save_logo("u1", data, "file.png", content_type)
    assert not (tmp_path / "research-logos").exists()
