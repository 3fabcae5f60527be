"""Pydantic schemas for the Copilot (deal analysis) module."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class AnalysisType(str, Enum):
    """Kinds of analysis the deal-analysis function can produce."""

    INTERVIEW_OUTLINE = "interview_outline"
    INVESTMENT_HIGHLIGHTS = "investment_highlights"
    IC_MEMO = "ic_memo"
    INDUSTRY_MAPPING = "industry_mapping"
    NOTES_SUMMARY = "notes_summary"


class AnalysisFields(BaseModel):
    """Free-form inputs the user fills in before generating."""

    interviewee: str | None = None
    focus_areas: str | None = None
    section: str | None = None
    sector: str | None = None
    meeting_notes: str | None = None


class DealAnalysisCreate(BaseModel):
    """Schema for saving an analysis."""

    deal_id: str
    analysis_type: AnalysisType
    title: str
    result_content: str
    input_data: dict[str, Any] = Field(default_factory=dict)
    notion_connected: bool = False


class DealAnalysisRead(BaseModel):
    """Persisted analysis."""

    id: str
    user_id: str
    deal_id: str
    analysis_type: str
    title: str
    result_content: str
    input_data: dict[str, Any] = Field(default_factory=dict)
    notion_connected: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


class RecentAnalysis(BaseModel):
    """Row in the cross-deal "recent analyses" list."""

    id: str
    deal_id: str
    title: str
    analysis_type: str
    project_name: str
    logo_url: str | None = None
    created_at: datetime | None = None


class AnalysisResult(BaseModel):
    """Outcome of one generation run."""

    content: str = ""
    notion_connected: bool = False
    deal_name: str = ""
    title: str = ""
