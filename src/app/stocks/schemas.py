"""Pydantic schemas for the Stocks module."""

from __future__ import annotations

import datetime as dt
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class StockGroupCreate(BaseModel):
    name: str
    display_order: int | None = None
    index_symbol: str | None = None

    @field_validator("name")
    @classmethod
    def _name_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Group name is required")
        return value.strip()


class StockGroupUpdate(BaseModel):
    name: str | None = None
    display_order: int | None = None
    index_symbol: str | None = None


class StockRead(BaseModel):
    id: str
    group_id: str
    symbol: str
    display_order: int = 0


class StockGroupRead(BaseModel):
    """Group with its symbols in display order."""

    id: str
    name: str
    display_order: int = 0
    index_symbol: str | None = None
    stocks: list[StockRead] = Field(default_factory=list)
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None


class StockCreate(BaseModel):
    group_id: str
    symbol: str
    display_order: int | None = None

    @field_validator("symbol")
    @classmethod
    def _normalize_symbol(cls, value: str) -> str:
        symbol = (value or "").strip().upper()
        if not symbol:
            raise ValueError("Symbol is required")
        return symbol


class StockUpdate(BaseModel):
    group_id: str | None = None
    display_order: int | None = None


class StockNoteUpsert(BaseModel):
    symbol: str
    date: dt.date
    note: str


class StockNoteRead(BaseModel):
    id: str
    symbol: str
    date: dt.date
    note: str
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None


class StockExplanationRead(BaseModel):
    id: str
    symbol: str
    date: dt.date
    change_percent: float
    explanation: str
    created_at: dt.datetime | None = None


class StockQuote(BaseModel):
    """One symbol's quote, in the camelCase shape fetch-stock-data returns."""

    symbol: str
    companyName: str | None = None
    currentPrice: float
    previousClose: float
    change: float
    changePercent: float


class QuotesRequest(BaseModel):
    symbols: list[str]
    date: dt.date
    force_refresh: bool = False


class ExplainRequest(BaseModel):
    symbol: str
    change_percent: float
    date: dt.date


class Timeframe(str, Enum):
    """Period a weekly view is ranked by."""

    WEEK = "week"
    MONTH = "month"
    YTD = "ytd"
    YEAR = "year"


class WeeklyStockData(BaseModel):
    """One symbol's multi-period moves, as fetch-weekly-stock-data returns them.

    month, ytd and year figures are null when the history does not reach back
    far enough.
    """

    symbol: str
    companyName: str | None = None
    weekStartPrice: float
    weekEndPrice: float
    change: float
    changePercent: float
    weekStartDate: dt.date | None = None
    weekEndDate: dt.date | None = None
    monthChange: float | None = None
    monthChangePercent: float | None = None
    ytdChange: float | None = None
    ytdChangePercent: float | None = None
    yearChange: float | None = None
    yearChangePercent: float | None = None


class WeeklyRequest(BaseModel):
    week_end_date: dt.date
    timeframe: Timeframe = Timeframe.WEEK
    ascending: bool = False


class WeeklyGroup(BaseModel):
    group_id: str
    name: str
    average_change_percent: float = 0.0
    stocks: list[WeeklyStockData] = Field(default_factory=list)


class WeeklyStats(BaseModel):
    """Tracked groups ranked by one timeframe, plus the benchmark indexes."""

    week_end_date: dt.date
    timeframe: Timeframe
    groups: list[WeeklyGroup] = Field(default_factory=list)
    benchmarks: list[WeeklyStockData] = Field(default_factory=list)


class StockPerformance(BaseModel):
    """Percent change over each period, from fetch-stock-performance."""

    symbol: str
    currentPrice: float | None = None
    daily: float | None = None
    weekly: float | None = None
    monthly: float | None = None
    ytd: float | None = None
    yearly: float | None = None
