"""Quote lookup with a per-day cache, and movement explanations.

Quotes for a trading day are read from stock_price_cache first; only the
missing symbols (all of them on a forced refresh) are requested from the
fetch-stock-data function, and whatever it returns is written back to the
cache. A failed refresh never hides data that is already cached. Weekly
multi-period moves and per-symbol performance come straight from their
functions without caching.
"""

from __future__ import annotations

import datetime as dt

import structlog
from pydantic import ValidationError

from src.app.services.functions import FunctionsClient
from src.app.stocks.repository import StockRepository
from src.app.stocks.schemas import (
    StockExplanationRead,
    StockPerformance,
    StockQuote,
    WeeklyStockData,
)

logger = structlog.get_logger(__name__)

FETCH_FUNCTION = "fetch-stock-data"
EXPLAIN_FUNCTION = "explain-stock-movement"
WEEKLY_FUNCTION = "fetch-weekly-stock-data"
PERFORMANCE_FUNCTION = "fetch-stock-performance"


class StockQuoteService:
    """Resolves quotes and explanations through the hosted stock functions.

    Args:
        functions: Client for the hosted functions.
        repository: StockRepository for the cache and explanations.
    """

    def __init__(self, functions: FunctionsClient, repository: StockRepository) -> None:
        self._functions = functions
        self._repository = repository

    async def get_quotes(
        self, symbols: list[str], day: dt.date, force_refresh: bool = False
    ) -> dict[str, StockQuote]:
        """Return a symbol -> quote map for ``day``.

        Symbols the function does not return (and that were not cached) are
        absent from the result.
        """
        wanted = list(dict.fromkeys(s.strip().upper() for s in symbols if s and s.strip()))
        if not wanted:
            return {}

        quotes = await self._repository.cached_quotes(wanted, day)
        missing = wanted if force_refresh else [s for s in wanted if s not in quotes]
        if not missing:
            logger.debug("stocks.quotes_cache_hit", count=len(quotes), date=day.isoformat())
            return quotes

        try:
            body = await self._functions.invoke(
                FETCH_FUNCTION, {"symbols": missing, "date": day.isoformat()}
            )
        except Exception as exc:
            logger.warning(
                "stocks.quotes_fetch_failed",
                symbols=missing,
                date=day.isoformat(),
                error=str(exc),
            )
            return quotes

        fresh: list[StockQuote] = []
        for raw in body.get("stockData") or []:
            try:
                fresh.append(StockQuote.model_validate(raw))
            except ValidationError:
                logger.debug("stocks.quote_malformed", payload=raw)

        if not fresh:
            logger.warning("stocks.quotes_empty_response", symbols=missing)
            return quotes

        for quote in fresh:
            quotes[quote.symbol] = quote
        try:
            await self._repository.cache_quotes(fresh, day)
        except Exception as exc:
            logger.warning("stocks.quotes_cache_failed", error=str(exc))

        logger.info(
            "stocks.quotes_fetched",
            requested=len(missing),
            received=len(fresh),
            date=day.isoformat(),
        )
        return quotes

    async def explain_movement(
        self, user_id: str, symbol: str, change_percent: float, day: dt.date
    ) -> StockExplanationRead:
        """Ask explain-stock-movement why a symbol moved, then store the answer.

        Raises:
            ValueError: If the function returned no explanation.
        """
        symbol = symbol.strip().upper()
        body = await self._functions.invoke(
            EXPLAIN_FUNCTION,
            {"symbol": symbol, "changePercent": change_percent, "date": day.isoformat()},
        )
        explanation = (body.get("explanation") or "").strip()
        if not explanation:
            raise ValueError(f"No explanation returned for {symbol}")

        saved = await self._repository.save_explanation(
            user_id, symbol, day, change_percent, explanation
        )
        logger.info("stocks.movement_explained", symbol=symbol, date=day.isoformat())
        return saved

    async def weekly_data(self, symbols: list[str], week_end: dt.date) -> dict[str, WeeklyStockData]:
        """Week, month, YTD and year moves up to ``week_end``, by symbol.

        Not cached. Symbols the function could not price are absent.

        Raises:
            FunctionError: If the function rejects the request.
            httpx.HTTPError: If the function stays unreachable or failing after retries.
        """
        wanted = list(dict.fromkeys(s.strip().upper() for s in symbols if s and s.strip()))
        if not wanted:
            return {}

        body = await self._functions.invoke(
            WEEKLY_FUNCTION, {"symbols": wanted, "weekEndDate": week_end.isoformat()}
        )
        data: dict[str, WeeklyStockData] = {}
        for raw in body.get("stockData") or []:
            try:
                row = WeeklyStockData.model_validate(raw)
            except ValidationError:
                logger.debug("stocks.weekly_malformed", payload=raw)
                continue
            data[row.symbol] = row

        logger.info(
            "stocks.weekly_fetched",
            requested=len(wanted),
            received=len(data),
            week_end=week_end.isoformat(),
        )
        return data

    async def performance(self, symbol: str) -> StockPerformance:
        """Daily, weekly, monthly, YTD and yearly percent change for one symbol.

        Raises:
            FunctionError: If the function rejects the symbol or has no chart data.
            httpx.HTTPError: If the function stays unreachable or failing after retries.
        """
        symbol = symbol.strip().upper()
        body = await self._functions.invoke(PERFORMANCE_FUNCTION, {"symbol": symbol})
        return StockPerformance.model_validate({"symbol": symbol, **body})
