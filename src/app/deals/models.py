"""Pipeline persistence model -- one row per tracked deal.

Most columns are free text entered by the investment team. key_contacts
holds a JSON-encoded array of contact ids as text; DealRepository owns
the parse/serialize round trip.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import Date, DateTime, ForeignKey, Index, String, Text, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base


class DealModel(Base):
    """Deal (project) in the investment pipeline."""

    __tablename__ = "deals"
    __table_args__ = (Index("ix_deals_user_deal_date", "user_id", "deal_date"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("profiles.id", ondelete="CASCADE"),
        nullable=False,
    )
    project_name: Mapped[str] = mapped_column(String(300), nullable=False)
    hq_location: Mapped[str | None] = mapped_column(String(200), nullable=True)
    sector: Mapped[str | None] = mapped_column(String(200), nullable=True)
    funding_round: Mapped[str | None] = mapped_column(String(100), nullable=True)
    funding_amount: Mapped[str | None] = mapped_column(String(100), nullable=True)
    valuation_terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str | None] = mapped_column(String(200), nullable=True)
    bu_category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    benchmark_companies: Mapped[str | None] = mapped_column(Text, nullable=True)
    followers: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str | None] = mapped_column(
        String(50), nullable=True, default="Follow", server_default=text("'Follow'")
    )
    feedback_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    financials: Mapped[str | None] = mapped_column(Text, nullable=True)
    deal_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    leads: Mapped[str | None] = mapped_column(Text, nullable=True)
    folder_link: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    key_contacts: Mapped[str | None] = mapped_column(Text, nullable=True)
    pre_investors: Mapped[str | None] = mapped_column(Text, nullable=True)
    logo_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
