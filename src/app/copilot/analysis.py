"""Analysis request building, titles, and export naming.

Everything the generate endpoint needs before and after it talks to the
deal-analysis function: which inputs each analysis type sends, whether the
user has supplied enough to generate, what the saved analysis is called,
and how the markdown export is named.
"""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import quote

from src.app.copilot.schemas import AnalysisFields, AnalysisType
from src.app.deals.schemas import DealRead

ANALYSIS_LABELS: dict[AnalysisType, str] = {
    AnalysisType.INTERVIEW_OUTLINE: "Interview Outline",
    AnalysisType.INVESTMENT_HIGHLIGHTS: "Investment Highlights",
    AnalysisType.IC_MEMO: "IC Memo Draft",
    AnalysisType.INDUSTRY_MAPPING: "Industry Mapping",
    AnalysisType.NOTES_SUMMARY: "Notes Summary",
}

IC_MEMO_SECTIONS = (
    "Executive Summary",
    "Industry Overview",
    "Company Overview",
    "Business Model",
    "Competitive Analysis",
    "Financial Analysis",
    "Management Team",
    "Investment Thesis",
    "Risk Factors",
    "Valuation",
)

_UNSAFE_FILENAME = re.compile(r'[/\\?%*:|"<>]')
_NOTION_PAGE_ID = re.compile(
    r"([a-f0-9]{32})|([a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12})",
    re.IGNORECASE,
)


def build_input_data(
    analysis_type: AnalysisType, fields: AnalysisFields, deal: DealRead | None = None
) -> dict[str, Any]:
    """Select the inputs the function expects for this analysis type."""
    if analysis_type == AnalysisType.INTERVIEW_OUTLINE:
        return {"interviewee": fields.interviewee, "focusAreas": fields.focus_areas}
    if analysis_type == AnalysisType.IC_MEMO:
        return {"section": fields.section}
    if analysis_type == AnalysisType.INDUSTRY_MAPPING:
        return {"sector": fields.sector or (deal.sector if deal else None)}
    if analysis_type == AnalysisType.NOTES_SUMMARY:
        return {"meetingNotes": fields.meeting_notes}
    return {}


def can_generate(analysis_type: AnalysisType, fields: AnalysisFields) -> bool:
    if analysis_type == AnalysisType.IC_MEMO:
        return bool(fields.section)
    if analysis_type == AnalysisType.NOTES_SUMMARY:
        return bool(fields.meeting_notes and fields.meeting_notes.strip())
    return True


def analysis_title(
    analysis_type: AnalysisType, fields: AnalysisFields, deal: DealRead | None = None
) -> str:
    """Title for a generated analysis, e.g. "IC Memo Draft - Valuation"."""
    label = ANALYSIS_LABELS[analysis_type]
    if analysis_type == AnalysisType.INTERVIEW_OUTLINE:
        return f"{label} - {fields.interviewee or 'General'}"
    if analysis_type == AnalysisType.IC_MEMO:
        return f"{label} - {fields.section}"
    if analysis_type == AnalysisType.INDUSTRY_MAPPING:
        sector = fields.sector or (deal.sector if deal else None) or "General"
        return f"{label} - {sector}"
    return label


def export_filename(deal_name: str, title: str) -> str:
    """Markdown download name with path and shell-hostile characters replaced."""
    return _UNSAFE_FILENAME.sub("-", f"{deal_name}-{title}.md")


def content_disposition(filename: str) -> str:
    """Attachment header with an ASCII fallback name and the UTF-8 name (RFC 5987).

    Header values go out as latin-1, so non-ASCII deal names only travel in
    the percent-encoded ``filename*`` parameter.
    """
    fallback = filename.encode("ascii", "ignore").decode("ascii").strip(" -")
    if not fallback.removesuffix(".md").strip():
        fallback = "analysis.md"
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


def extract_notion_page_id(link: str | None) -> str | None:
    """Pull a Notion page id out of a URL, normalised to 32 hex chars."""
    if not link:
        return None
    match = _NOTION_PAGE_ID.search(link)
    if match is None:
        return None
    return (match.group(1) or match.group(2)).replace("-", "")
