"""Pydantic schemas for daily and weekly notes."""

from __future__ import annotations

import datetime as dt

from pydantic import BaseModel


class DailyNoteUpsert(BaseModel):
    date: dt.date
    content: str | None = None


class DailyNoteRead(BaseModel):
    id: str
    date: dt.date
    content: str | None = None
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None


class WeeklyNoteUpsert(BaseModel):
    week_end_date: dt.date
    content: str = ""


class WeeklyNoteRead(BaseModel):
    id: str
    week_end_date: dt.date
    content: str = ""
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None


class NotionSyncResult(BaseModel):
    """Pages created by one sync run."""

    market_notes: int = 0
    stock_notes: int = 0
    weekly_notes: int = 0
