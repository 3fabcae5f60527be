"""Stocks persistence models.

stock_groups and stocks hold the user's watchlist layout. stock_notes and
stock_explanations are keyed by (symbol, date) per user. stock_price_cache
is shared across users: a quote for a symbol on a day is the same for all.
"""

from __future__ import annotations

import datetime as dt
import uuid

from sqlalchemy import (
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base


def _id_column() -> Mapped[uuid.UUID]:
    return mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )


def _owner_column() -> Mapped[uuid.UUID]:
    return mapped_column(
        UUID(as_uuid=True),
        ForeignKey("profiles.id", ondelete="CASCADE"),
        nullable=False,
    )


class StockGroupModel(Base):
    """Named group of symbols, optionally benchmarked against an index."""

    __tablename__ = "stock_groups"

    id: Mapped[uuid.UUID] = _id_column()
    user_id: Mapped[uuid.UUID] = _owner_column()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    index_symbol: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )


class StockModel(Base):
    __tablename__ = "stocks"

    id: Mapped[uuid.UUID] = _id_column()
    user_id: Mapped[uuid.UUID] = _owner_column()
    group_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("stock_groups.id", ondelete="CASCADE"),
        nullable=False,
    )
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )


class StockNoteModel(Base):
    __tablename__ = "stock_notes"
    __table_args__ = (
        UniqueConstraint("user_id", "symbol", "date", name="uq_stock_notes_user_symbol_date"),
    )

    id: Mapped[uuid.UUID] = _id_column()
    user_id: Mapped[uuid.UUID] = _owner_column()
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    note: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )


class StockExplanationModel(Base):
    __tablename__ = "stock_explanations"
    __table_args__ = (
        UniqueConstraint("user_id", "symbol", "date", name="uq_stock_explanations_user_symbol_date"),
    )

    id: Mapped[uuid.UUID] = _id_column()
    user_id: Mapped[uuid.UUID] = _owner_column()
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    change_percent: Mapped[float] = mapped_column(Float, nullable=False)
    explanation: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )


class StockPriceCacheModel(Base):
    """Daily quote snapshot returned by fetch-stock-data."""

    __tablename__ = "stock_price_cache"
    __table_args__ = (UniqueConstraint("symbol", "date", name="uq_stock_price_cache_symbol_date"),)

    id: Mapped[uuid.UUID] = _id_column()
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    company_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    current_price: Mapped[float] = mapped_column(Float, nullable=False)
    previous_close: Mapped[float] = mapped_column(Float, nullable=False)
    change_amount: Mapped[float] = mapped_column(Float, nullable=False)
    change_percent: Mapped[float] = mapped_column(Float, nullable=False)
    cached_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )
