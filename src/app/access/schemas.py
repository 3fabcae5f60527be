"""Pydantic schemas for the Access module -- contacts, interactions, map nodes."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class ContactType(str, Enum):
    """Relationship category of a contact."""

    INVESTOR = "investor"
    FA = "fa"
    PORTCO = "portco"
    EXPERT = "expert"


class ViewMode(str, Enum):
    """Grouping used by the connection map."""

    ALL = "all"
    COMPANY = "company"
    TAG = "tag"
    PROJECT = "project"


# ── Contacts ────────────────────────────────────────────────────────────────


class ContactCreate(BaseModel):
    """Schema for creating a contact."""

    name: str
    company: str | None = None
    role: str | None = None
    contact_type: ContactType = ContactType.INVESTOR
    email: str | None = None
    tags: list[str] = Field(default_factory=list)
    notes: str | None = None

    @field_validator("name")
    @classmethod
    def _name_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Name is required")
        return value.strip()


class ContactUpdate(BaseModel):
    """Partial contact update (None fields are left unchanged)."""

    name: str | None = None
    company: str | None = None
    role: str | None = None
    contact_type: ContactType | None = None
    email: str | None = None
    tags: list[str] | None = None
    notes: str | None = None

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            raise ValueError("Name is required")
        return value.strip() if value is not None else None


class ContactRead(BaseModel):
    """Persisted contact."""

    id: str
    user_id: str
    name: str
    company: str | None = None
    role: str | None = None
    contact_type: str = ContactType.INVESTOR.value
    email: str | None = None
    tags: list[str] = Field(default_factory=list)
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Interactions ────────────────────────────────────────────────────────────


class DealRef(BaseModel):
    """Minimal deal reference embedded in an interaction."""

    id: str
    project_name: str = "Unknown"


class InteractionCreate(BaseModel):
    """Schema for logging an interaction."""

    contact_id: str
    deal_id: str | None = None
    interaction_date: date = Field(default_factory=date.today)
    notes: str | None = None


class InteractionUpdate(BaseModel):
    """Partial interaction update."""

    deal_id: str | None = None
    interaction_date: date | None = None
    notes: str | None = None


class InteractionRead(BaseModel):
    """Persisted interaction, with its deal resolved when linked."""

    id: str
    user_id: str
    contact_id: str
    deal_id: str | None = None
    interaction_date: date
    notes: str | None = None
    deal: DealRef | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Derived views ───────────────────────────────────────────────────────────


class LastInteraction(BaseModel):
    """Most recent interaction date and how long ago it was."""

    date: date
    days_ago: int
    is_stale: bool = False


class ContactStats(BaseModel):
    """Headline numbers for the Access view."""

    total: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    stale: int = 0
    interactions_last_7_days: int = 0


class MapNode(BaseModel):
    """A circle on the connection map (contact or group hub)."""

    id: str
    label: str
    x: float
    y: float
    size: float
    color: str
    kind: str = "contact"  # contact | group
    contact_type: str | None = None


class MapEdge(BaseModel):
    """Link between two map nodes."""

    source: str
    target: str
    strength: int = 1


class ConnectionMap(BaseModel):
    """Laid-out connection map for one view mode."""

    view_mode: ViewMode
    nodes: list[MapNode] = Field(default_factory=list)
    edges: list[MapEdge] = Field(default_factory=list)
