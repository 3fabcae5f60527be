"""Integration tests for the Stocks API.

Uses in-memory repositories and a StockQuoteService backed by an httpx
MockTransport, so no database or hosted functions are needed.
"""

from __future__ import annotations

import json
import uuid
from datetime import date

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.app.services.functions import FunctionsClient
from src.app.stocks.quotes import StockQuoteService
from src.app.stocks.schemas import (
    StockCreate,
    StockExplanationRead,
    StockGroupCreate,
    StockGroupRead,
    StockGroupUpdate,
    StockNoteRead,
    StockNoteUpsert,
    StockQuote,
    StockRead,
    StockUpdate,
)


# ── In-Memory Test Doubles ───────────────────────────────────────────────────


class InMemoryStockRepository:
    def __init__(self) -> None:
        self._groups: dict[str, StockGroupRead] = {}
        self._stocks: dict[str, StockRead] = {}
        self._notes: dict[tuple[str, date], StockNoteRead] = {}
        self._explanations: list[StockExplanationRead] = []
        self._quotes: dict[tuple[str, date], StockQuote] = {}

    async def list_groups(self, user_id: str) -> list[StockGroupRead]:
        groups = sorted(self._groups.values(), key=lambda g: g.display_order)
        result = []
        for group in groups:
            stocks = sorted(
                (s for s in self._stocks.values() if s.group_id == group.id),
                key=lambda s: s.display_order,
            )
            result.append(group.model_copy(update={"stocks": stocks}))
        return result

    async def create_group(self, user_id: str, data: StockGroupCreate) -> StockGroupRead:
        group = StockGroupRead(
            id=str(uuid.uuid4()),
            name=data.name,
            display_order=data.display_order if data.display_order is not None else len(self._groups),
            index_symbol=data.index_symbol,
        )
        self._groups[group.id] = group
        return group

    async def update_group(self, user_id: str, group_id: str, data: StockGroupUpdate) -> StockGroupRead:
        group = self._groups.get(group_id)
        if group is None:
            raise ValueError(f"Stock group not found: {group_id}")
        updated = group.model_copy(update=data.model_dump(exclude_unset=True))
        self._groups[group_id] = updated
        return updated

    async def delete_group(self, user_id: str, group_id: str) -> bool:
        if self._groups.pop(group_id, None) is None:
            return False
        self._stocks = {k: s for k, s in self._stocks.items() if s.group_id != group_id}
        return True

    async def add_stock(self, user_id: str, data: StockCreate) -> StockRead:
        if data.group_id not in self._groups:
            raise ValueError(f"Stock group not found: {data.group_id}")
        order = data.display_order
        if order is None:
            order = sum(1 for s in self._stocks.values() if s.group_id == data.group_id)
        stock = StockRead(id=str(uuid.uuid4()), group_id=data.group_id, symbol=data.symbol, display_order=order)
        self._stocks[stock.id] = stock
        return stock

    async def update_stock(self, user_id: str, stock_id: str, data: StockUpdate) -> StockRead:
        stock = self._stocks.get(stock_id)
        if stock is None:
            raise ValueError(f"Stock not found: {stock_id}")
        updated = stock.model_copy(update=data.model_dump(exclude_unset=True))
        self._stocks[stock_id] = updated
        return updated

    async def delete_stock(self, user_id: str, stock_id: str) -> bool:
        return self._stocks.pop(stock_id, None) is not None

    async def list_notes(self, user_id: str, day: date | None = None, symbol: str | None = None):
        return [
            n
            for n in self._notes.values()
            if (day is None or n.date == day) and (symbol is None or n.symbol == symbol.upper())
        ]

    async def save_note(self, user_id: str, data: StockNoteUpsert) -> StockNoteRead:
        key = (data.symbol.upper(), data.date)
        existing = self._notes.get(key)
        note = StockNoteRead(
            id=existing.id if existing else str(uuid.uuid4()),
            symbol=key[0],
            date=data.date,
            note=data.note,
        )
        self._notes[key] = note
        return note

    async def delete_note(self, user_id: str, symbol: str, day: date) -> bool:
        return self._notes.pop((symbol.upper(), day), None) is not None

    async def list_explanations(self, user_id: str, day: date, symbols: list[str] | None = None):
        return [e for e in self._explanations if e.date == day and (not symbols or e.symbol in symbols)]

    async def save_explanation(
        self, user_id: str, symbol: str, day: date, change_percent: float, explanation: str
    ) -> StockExplanationRead:
        row = StockExplanationRead(
            id=str(uuid.uuid4()),
            symbol=symbol,
            date=day,
            change_percent=change_percent,
            explanation=explanation,
        )
        self._explanations.append(row)
        return row

    async def cached_quotes(self, symbols: list[str], day: date) -> dict[str, StockQuote]:
        return {s: self._quotes[(s, day)] for s in symbols if (s, day) in self._quotes}

    async def cache_quotes(self, quotes: list[StockQuote], day: date) -> int:
        for quote in quotes:
            self._quotes[(quote.symbol, day)] = quote
        return len(quotes)


class StockFunctions:
    """Answers the stock data, weekly, performance and explain functions."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.explain_status = 200
        self.weekly_payloads: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        name = request.url.path.rsplit("/", 1)[-1]
        payload = json.loads(request.content)
        self.calls.append(name)
        if name == "fetch-stock-data":
            data = [
                {
                    "symbol": s,
                    "companyName": f"{s} Inc",
                    "currentPrice": 110.0,
                    "previousClose": 100.0,
                    "change": 10.0,
                    "changePercent": 10.0,
                }
                for s in payload["symbols"]
            ]
            return httpx.Response(200, json={"stockData": data})
        if name == "fetch-weekly-stock-data":
            self.weekly_payloads.append(payload)
            moves = {"NVDA": (5.0, 12.0), "AMD": (-2.0, None), "QQQ": (1.0, 3.0), "IWM": (0.5, 1.0)}
            data = [
                {
                    "symbol": s,
                    "weekStartPrice": 100.0,
                    "weekEndPrice": 100.0 + moves[s][0],
                    "change": moves[s][0],
                    "changePercent": moves[s][0],
                    "weekEndDate": payload["weekEndDate"],
                    "ytdChangePercent": moves[s][1],
                }
                for s in payload["symbols"]
                if s in moves
            ]
            return httpx.Response(200, json={"stockData": data})
        if name == "fetch-stock-performance":
            if payload["symbol"] == "NOPE":
                return httpx.Response(404, json={"error": "No chart data available"})
            return httpx.Response(
                200,
                json={"symbol": payload["symbol"], "currentPrice": 120.5, "daily": 1.2, "weekly": -0.4, "ytd": None},
            )
        if self.explain_status != 200:
            return httpx.Response(self.explain_status, json={"error": "Model quota exceeded"})
        return httpx.Response(200, json={"explanation": f"{payload['symbol']} rallied on earnings."})


# ── Test Fixtures ────────────────────────────────────────────────────────────


def _make_mock_app():
    from fastapi import FastAPI

    from src.app.api.errors import register_error_handlers
    from src.app.api.v1.stocks import router

    app = FastAPI()
    register_error_handlers(app)
    app.include_router(router, prefix="/v1")
    return app


@pytest_asyncio.fixture
async def env(current_user):
    from src.app.api.deps import get_current_user

    app = _make_mock_app()
    repo = InMemoryStockRepository()
    functions = StockFunctions()
    client = FunctionsClient("https://functions.test", "key", transport=httpx.MockTransport(functions))
    app.dependency_overrides[get_current_user] = lambda: current_user
    app.state.stock_repository = repo
    app.state.stock_quotes = StockQuoteService(client, repo)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http, app, repo, functions


# ── Groups and symbols ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_groups_and_symbols(env):
    client, _, _, _ = env
    tech = (await client.post("/v1/stocks/groups", json={"name": " Tech ", "index_symbol": "QQQ"})).json()
    assert tech["name"] == "Tech"

    first = await client.post("/v1/stocks/symbols", json={"group_id": tech["id"], "symbol": " nvda "})
    assert first.status_code == 201
    assert first.json()["symbol"] == "NVDA"
    await client.post("/v1/stocks/symbols", json={"group_id": tech["id"], "symbol": "amd"})

    groups = (await client.get("/v1/stocks/groups")).json()
    assert [s["symbol"] for s in groups[0]["stocks"]] == ["NVDA", "AMD"]

    moved = await client.patch(f"/v1/stocks/symbols/{first.json()['id']}", json={"display_order": 5})
    assert moved.json()["display_order"] == 5

    renamed = await client.patch(f"/v1/stocks/groups/{tech['id']}", json={"name": "Semis"})
    assert renamed.json()["name"] == "Semis"

    assert (await client.delete(f"/v1/stocks/groups/{tech['id']}")).status_code == 204
    assert (await client.get("/v1/stocks/groups")).json() == []


@pytest.mark.asyncio
async def test_group_and_symbol_validation(env):
    client, _, _, _ = env
    response = await client.post("/v1/stocks/groups", json={"name": "  "})
    assert response.status_code == 400
    assert response.json()["detail"] == "Group name is required"

    group = (await client.post("/v1/stocks/groups", json={"name": "Core"})).json()
    response = await client.post("/v1/stocks/symbols", json={"group_id": group["id"], "symbol": ""})
    assert response.status_code == 400
    assert response.json()["detail"] == "Symbol is required"


@pytest.mark.asyncio
async def test_missing_group_or_stock_is_404(env):
    client, _, _, _ = env
    response = await client.post("/v1/stocks/symbols", json={"group_id": "nope", "symbol": "AAPL"})
    assert response.status_code == 404
    assert (await client.patch("/v1/stocks/groups/nope", json={"name": "x"})).status_code == 404
    assert (await client.delete("/v1/stocks/groups/nope")).status_code == 404
    assert (await client.patch("/v1/stocks/symbols/nope", json={"display_order": 1})).status_code == 404
    assert (await client.delete("/v1/stocks/symbols/nope")).status_code == 404


# ── Notes ────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_stock_notes(env):
    client, _, _, _ = env
    await client.put("/v1/stocks/notes", json={"symbol": "NVDA", "date": "2026-03-02", "note": "Beat"})
    await client.put("/v1/stocks/notes", json={"symbol": "AMD", "date": "2026-03-03", "note": "Flat"})

    day = (await client.get("/v1/stocks/notes", params={"date": "2026-03-02"})).json()
    assert [n["symbol"] for n in day] == ["NVDA"]
    by_symbol = (await client.get("/v1/stocks/notes", params={"symbol": "amd"})).json()
    assert [n["note"] for n in by_symbol] == ["Flat"]

    assert (await client.delete("/v1/stocks/notes/NVDA/2026-03-02")).status_code == 204
    assert (await client.delete("/v1/stocks/notes/NVDA/2026-03-02")).status_code == 404


# ── Quotes and explanations ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_quotes_are_cached_per_day(env):
    client, _, _, functions = env
    body = {"symbols": ["nvda", "AMD"], "date": "2026-03-02"}

    first = await client.post("/v1/stocks/quotes", json=body)
    assert first.status_code == 200
    assert set(first.json()) == {"NVDA", "AMD"}
    assert first.json()["NVDA"]["changePercent"] == 10.0

    await client.post("/v1/stocks/quotes", json=body)
    assert functions.calls == ["fetch-stock-data"]

    await client.post("/v1/stocks/quotes", json={**body, "force_refresh": True})
    assert functions.calls == ["fetch-stock-data", "fetch-stock-data"]


@pytest.mark.asyncio
async def test_explain_and_list_explanations(env):
    client, _, _, _ = env
    response = await client.post(
        "/v1/stocks/explain", json={"symbol": "nvda", "change_percent": 8.2, "date": "2026-03-02"}
    )
    assert response.status_code == 200
    assert response.json()["explanation"] == "NVDA rallied on earnings."

    listed = await client.get(
        "/v1/stocks/explanations", params=[("date", "2026-03-02"), ("symbols", "nvda")]
    )
    assert [e["symbol"] for e in listed.json()] == ["NVDA"]
    other_day = await client.get("/v1/stocks/explanations", params={"date": "2026-03-03"})
    assert other_day.json() == []


@pytest.mark.asyncio
async def test_explain_function_error_is_502(env):
    client, _, _, functions = env
    functions.explain_status = 402
    response = await client.post(
        "/v1/stocks/explain", json={"symbol": "NVDA", "change_percent": 1.0, "date": "2026-03-02"}
    )
    assert response.status_code == 502
    assert response.json()["detail"] == "Model quota exceeded"


@pytest.mark.asyncio
async def test_missing_state_returns_503(env):
    client, app, _, _ = env
    app.state.stock_repository = None
    app.state.stock_quotes = None
    assert (await client.get("/v1/stocks/groups")).status_code == 503
    response = await client.post("/v1/stocks/quotes", json={"symbols": ["A"], "date": "2026-03-02"})
    assert response.status_code == 503


# ── Weekly stats and performance ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_weekly_stats_ranks_groups_by_timeframe(env):
    client, _, _, functions = env
    tech = (await client.post("/v1/stocks/groups", json={"name": "Tech"})).json()
    for symbol in ("amd", "nvda", "tsla"):
        await client.post("/v1/stocks/symbols", json={"group_id": tech["id"], "symbol": symbol})

    response = await client.post("/v1/stocks/weekly", json={"week_end_date": "2026-03-06"})
    assert response.status_code == 200
    data = response.json()
    assert functions.weekly_payloads == [
        {"symbols": ["AMD", "NVDA", "TSLA", "QQQ", "IWM"], "weekEndDate": "2026-03-06"}
    ]
    group = data["groups"][0]
    # TSLA was not priced, so it is left out of the ranking and the mean
    assert [s["symbol"] for s in group["stocks"]] == ["NVDA", "AMD"]
    assert group["average_change_percent"] == 1.5
    assert [b["symbol"] for b in data["benchmarks"]] == ["QQQ", "IWM"]

    ytd = await client.post(
        "/v1/stocks/weekly",
        json={"week_end_date": "2026-03-06", "timeframe": "ytd", "ascending": True},
    )
    group = ytd.json()["groups"][0]
    # AMD has no YTD figure and ranks as 0
    assert [s["symbol"] for s in group["stocks"]] == ["AMD", "NVDA"]
    assert group["average_change_percent"] == 6.0


@pytest.mark.asyncio
async def test_stock_performance(env):
    client, _, _, _ = env
    response = await client.get("/v1/stocks/performance/nvda")
    assert response.status_code == 200
    assert response.json() == {
        "symbol": "NVDA",
        "currentPrice": 120.5,
        "daily": 1.2,
        "weekly": -0.4,
        "monthly": None,
        "ytd": None,
        "yearly": None,
    }


@pytest.mark.asyncio
async def test_stock_performance_keeps_function_status(env):
    client, _, _, _ = env
    response = await client.get("/v1/stocks/performance/NOPE")
    assert response.status_code == 404
    assert response.json()["detail"] == "No chart data available"
