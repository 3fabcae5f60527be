"""Pydantic schemas for the Pipeline module.

Deal fields are mostly free text. key_contacts is a list of contact ids at
this layer; the repository stores it as a JSON string.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from src.app.access.schemas import ContactRead, InteractionRead


class DealStatus(str, Enum):
    """Pipeline status of a deal."""

    INVESTED = "Invested"
    PASS = "Pass"
    REJECT = "Reject"
    FOLLOW = "Follow"
    DUE_DILIGENCE = "Due Diligence"
    DD = "DD"


ACTIVE_STATUSES = frozenset({DealStatus.DUE_DILIGENCE.value, DealStatus.DD.value})
NOTABLE_STATUSES = ACTIVE_STATUSES | {DealStatus.INVESTED.value}


class DealFields(BaseModel):
    """Every editable deal column except project_name."""

    hq_location: str | None = None
    sector: str | None = None
    funding_round: str | None = None
    funding_amount: str | None = None
    valuation_terms: str | None = None
    source: str | None = None
    bu_category: str | None = None
    description: str | None = None
    benchmark_companies: str | None = None
    followers: str | None = None
    feedback_notes: str | None = None
    financials: str | None = None
    deal_date: date | None = None
    leads: str | None = None
    folder_link: str | None = None
    pre_investors: str | None = None
    logo_url: str | None = None


class DealCreate(DealFields):
    """Schema for creating a deal."""

    project_name: str
    status: DealStatus = DealStatus.FOLLOW
    key_contacts: list[str] = Field(default_factory=list)

    @field_validator("project_name")
    @classmethod
    def _project_name_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Project name is required")
        return value.strip()


class DealUpdate(DealFields):
    """Partial deal update.

    Omitted fields stay unchanged; an explicit null clears an optional
    column. project_name and status cannot be cleared, so a null there is
    ignored, and a null key_contacts empties the list.
    """

    project_name: str | None = None
    status: DealStatus | None = None
    key_contacts: list[str] | None = None

    @field_validator("project_name")
    @classmethod
    def _project_name_not_blank(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            raise ValueError("Project name is required")
        return value.strip() if value is not None else None

    def changes(self) -> dict:
        """Column values the client actually sent."""
        updates = self.model_dump(exclude_unset=True)
        for key in ("project_name", "status"):
            if updates.get(key, "") is None:
                del updates[key]
        if "key_contacts" in updates and updates["key_contacts"] is None:
            updates["key_contacts"] = []
        if "status" in updates:
            updates["status"] = updates["status"].value
        return updates


class DealRead(DealFields):
    """Persisted deal."""

    id: str
    user_id: str
    project_name: str
    status: str | None = DealStatus.FOLLOW.value
    key_contacts: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DealStats(BaseModel):
    """Pipeline headline counts."""

    total: int = 0
    following: int = 0
    active: int = 0
    closed: int = 0


class FilterOptions(BaseModel):
    """Distinct values present in the fetched deals, for filter dropdowns."""

    sectors: list[str] = Field(default_factory=list)
    statuses: list[str] = Field(default_factory=list)
    rounds: list[str] = Field(default_factory=list)


class DashboardCounts(BaseModel):
    contacts: int = 0
    deals: int = 0
    active_sources: int = 0
    contacts_this_week: int = 0
    deals_this_week: int = 0
    contacts_percent_change: int | None = None
    deals_percent_change: int | None = None


class Dashboard(BaseModel):
    """Home view: headline counts, latest activity and notable deals."""

    counts: DashboardCounts
    recent_deals: list[DealRead] = Field(default_factory=list)
    recent_contacts: list[ContactRead] = Field(default_factory=list)
    recent_interactions: list[InteractionRead] = Field(default_factory=list)
    notable_deals: list[DealRead] = Field(default_factory=list)
