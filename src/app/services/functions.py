"""Async HTTP client for the hosted serverless functions.

The analysis, summary and stock functions live outside this service and are
called as black boxes at ``{FUNCTIONS_BASE_URL}/functions/v1/{name}``.
invoke() is a plain JSON call with tenacity retry (3 attempts, exponential
backoff 1-10s). stream() opens a Server-Sent Events response and yields the
decoded ``data:`` payloads; streams are not retried since a partial body may
already have been forwarded.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.app.core.monitoring import track_function_call

logger = structlog.get_logger(__name__)

_functions_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.HTTPStatusError, httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)

DONE = "[DONE]"


class FunctionError(Exception):
    """A function call returned a non-success response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def error_message(body: str, default: str) -> str:
    """Pull the ``error`` field out of a JSON error body, else fall back."""
    if not body:
        return default
    try:
        data = json.loads(body)
    except ValueError:
        return body.strip() or default
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return default


def parse_sse_payload(line: str) -> str | None:
    """Return the payload of a ``data:`` line, or None for any other line."""
    line = line.strip()
    if not line.startswith("data:"):
        return None
    return line[len("data:"):].strip() or None


async def iter_sse_json(lines: AsyncIterator[str]) -> AsyncIterator[dict]:
    """Yield each JSON object sent as an SSE ``data:`` line.

    ``[DONE]`` ends the stream. Malformed payloads are skipped.
    """
    async for line in lines:
        payload = parse_sse_payload(line)
        if payload is None:
            continue
        if payload == DONE:
            return
        try:
            data = json.loads(payload)
        except ValueError:
            logger.debug("functions.sse_malformed_chunk", payload=payload[:200])
            continue
        if isinstance(data, dict):
            yield data


class FunctionsClient:
    """Client for the hosted functions endpoint.

    Args:
        base_url: Project base URL; calls go to ``{base_url}/functions/v1/{name}``.
        api_key: Bearer token sent with every call.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport (tests inject a MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"

    @property
    def configured(self) -> bool:
        return bool(self._base_url)

    def url(self, name: str) -> str:
        return f"{self._base_url}/functions/v1/{name}"

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client for one call."""
        return httpx.AsyncClient(
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    @_functions_retry
    async def invoke(self, name: str, payload: dict) -> dict:
        """POST a JSON payload to a function and return its JSON body.

        Raises:
            FunctionError: For 4xx responses (not retried).
            httpx.HTTPStatusError: For 5xx responses after retries.
        """
        async with self._client() as client, track_function_call(name):
            response = await client.post(self.url(name), json=payload)
            if 400 <= response.status_code < 500:
                raise FunctionError(
                    error_message(response.text, f"Function {name} failed"),
                    status_code=response.status_code,
                )
            response.raise_for_status()
            logger.debug("functions.invoked", function=name, status=response.status_code)
            return response.json()

    @asynccontextmanager
    async def stream(
        self, name: str, payload: dict, *, default_error: str, params: dict | None = None
    ) -> AsyncIterator[httpx.Response]:
        """Open a streaming POST to a function.

        Yields the open response. A non-2xx status raises FunctionError with
        the body's ``error`` field or ``default_error``.
        """
        headers = {"Accept": "text/event-stream"}
        async with self._client() as client:
            async with client.stream(
                "POST", self.url(name), json=payload, params=params, headers=headers
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    logger.warning(
                        "functions.stream_failed",
                        function=name,
                        status=response.status_code,
                    )
                    raise FunctionError(
                        error_message(body, default_error),
                        status_code=response.status_code,
                    )
                yield response
