"""Initial schema: profiles, access, pipeline, copilot, research, stocks, notes.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

Every user-owned table references profiles(id) ON DELETE CASCADE.
stock_price_cache is shared across users and has no owner column.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, JSON, UUID

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()"))


def _owner() -> sa.Column:
    return sa.Column(
        "user_id",
        UUID(as_uuid=True),
        sa.ForeignKey("profiles.id", ondelete="CASCADE"),
        nullable=False,
    )


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now())


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True)


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    # ── Accounts ────────────────────────────────────────────────────────

    op.create_table(
        "profiles",
        _id(),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("display_name", sa.String(200), nullable=True),
        sa.Column("identity", sa.Text(), nullable=True),
        sa.Column("notion_api_key", sa.String(255), nullable=True),
        sa.Column("onboarding_completed", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("hashed_password", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        _created_at(),
        _updated_at(),
    )
    op.create_table(
        "user_roles",
        _id(),
        _owner(),
        sa.Column("role", sa.String(20), nullable=False),
        _created_at(),
        sa.UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),
    )
    op.create_table(
        "api_keys",
        _id(),
        _owner(),
        sa.Column("key_hash", sa.String(255), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )

    # ── Pipeline & Access ───────────────────────────────────────────────

    op.create_table(
        "deals",
        _id(),
        _owner(),
        sa.Column("project_name", sa.String(300), nullable=False),
        sa.Column("hq_location", sa.String(200), nullable=True),
        sa.Column("sector", sa.String(200), nullable=True),
        sa.Column("funding_round", sa.String(100), nullable=True),
        sa.Column("funding_amount", sa.String(100), nullable=True),
        sa.Column("valuation_terms", sa.Text(), nullable=True),
        sa.Column("source", sa.String(200), nullable=True),
        sa.Column("bu_category", sa.String(100), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("benchmark_companies", sa.Text(), nullable=True),
        sa.Column("followers", sa.Text(), nullable=True),
        sa.Column("status", sa.String(50), server_default=sa.text("'Follow'"), nullable=True),
        sa.Column("feedback_notes", sa.Text(), nullable=True),
        sa.Column("financials", sa.Text(), nullable=True),
        sa.Column("deal_date", sa.Date(), nullable=True),
        sa.Column("leads", sa.Text(), nullable=True),
        sa.Column("folder_link", sa.String(1000), nullable=True),
        sa.Column("key_contacts", sa.Text(), nullable=True),
        sa.Column("pre_investors", sa.Text(), nullable=True),
        sa.Column("logo_url", sa.String(1000), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_deals_user_deal_date", "deals", ["user_id", "deal_date"])

    op.create_table(
        "contacts",
        _id(),
        _owner(),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("company", sa.String(300), nullable=True),
        sa.Column("role", sa.String(200), nullable=True),
        sa.Column("contact_type", sa.String(20), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("tags", ARRAY(sa.String()), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_contacts_user_created", "contacts", ["user_id", "created_at"])

    op.create_table(
        "interactions",
        _id(),
        _owner(),
        sa.Column(
            "contact_id",
            UUID(as_uuid=True),
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "deal_id",
            UUID(as_uuid=True),
            sa.ForeignKey("deals.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("interaction_date", sa.Date(), server_default=sa.func.current_date(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_interactions_contact_date", "interactions", ["contact_id", "interaction_date"])

    # ── Copilot ─────────────────────────────────────────────────────────

    op.create_table(
        "deal_analyses",
        _id(),
        _owner(),
        sa.Column(
            "deal_id",
            UUID(as_uuid=True),
            sa.ForeignKey("deals.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("analysis_type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("result_content", sa.Text(), nullable=False),
        sa.Column("input_data", JSON(), server_default=sa.text("'{}'::json"), nullable=False),
        sa.Column("notion_connected", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_deal_analyses_deal_created", "deal_analyses", ["deal_id", "created_at"])

    # ── Research ────────────────────────────────────────────────────────

    op.create_table(
        "research_sources",
        _id(),
        _owner(),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("url", sa.String(2000), nullable=False),
        sa.Column("feed_url", sa.String(2000), nullable=True),
        sa.Column("category", sa.String(20), nullable=False),
        sa.Column("source_type", sa.String(20), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("favicon_url", sa.String(2000), nullable=True),
        sa.Column("logo_url", sa.String(2000), nullable=True),
        sa.Column("tags", ARRAY(sa.String()), nullable=True),
        sa.Column("priority", sa.Integer(), server_default=sa.text("3"), nullable=True),
        sa.Column("display_order", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_content_hash", sa.Text(), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_research_sources_user_order", "research_sources", ["user_id", "display_order"])

    op.create_table(
        "research_items",
        _id(),
        sa.Column(
            "source_id",
            UUID(as_uuid=True),
            sa.ForeignKey("research_sources.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("title", sa.String(1000), nullable=False),
        sa.Column("url", sa.String(2000), nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_read", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        _created_at(),
        sa.UniqueConstraint("source_id", "url", name="uq_research_items_source_url"),
    )
    op.create_index(
        "ix_research_items_source_published", "research_items", ["source_id", "published_at"]
    )

    op.create_table(
        "research_summary_history",
        _id(),
        _owner(),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("title", sa.String(500), nullable=True),
        sa.Column("preview", sa.String(500), nullable=True),
        sa.Column("item_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("source_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("source_ids", ARRAY(sa.String()), nullable=True),
        sa.Column("priority_counts", JSON(), nullable=True),
        sa.Column("is_favorite", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        _created_at(),
    )
    op.create_index(
        "ix_summary_history_user_created", "research_summary_history", ["user_id", "created_at"]
    )

    # ── Stocks ──────────────────────────────────────────────────────────

    op.create_table(
        "stock_groups",
        _id(),
        _owner(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("display_order", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("index_symbol", sa.String(32), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_table(
        "stocks",
        _id(),
        _owner(),
        sa.Column(
            "group_id",
            UUID(as_uuid=True),
            sa.ForeignKey("stock_groups.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("symbol", sa.String(32), nullable=False),
        sa.Column("display_order", sa.Integer(), server_default=sa.text("0"), nullable=False),
        _created_at(),
        _updated_at(),
    )
    op.create_table(
        "stock_notes",
        _id(),
        _owner(),
        sa.Column("symbol", sa.String(32), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("note", sa.Text(), nullable=False),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("user_id", "symbol", "date", name="uq_stock_notes_user_symbol_date"),
    )
    op.create_table(
        "stock_explanations",
        _id(),
        _owner(),
        sa.Column("symbol", sa.String(32), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("change_percent", sa.Float(), nullable=False),
        sa.Column("explanation", sa.Text(), nullable=False),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint(
            "user_id", "symbol", "date", name="uq_stock_explanations_user_symbol_date"
        ),
    )
    op.create_table(
        "stock_price_cache",
        _id(),
        sa.Column("symbol", sa.String(32), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("company_name", sa.String(255), nullable=True),
        sa.Column("current_price", sa.Float(), nullable=False),
        sa.Column("previous_close", sa.Float(), nullable=False),
        sa.Column("change_amount", sa.Float(), nullable=False),
        sa.Column("change_percent", sa.Float(), nullable=False),
        _created_at("cached_at"),
        _updated_at(),
        sa.UniqueConstraint("symbol", "date", name="uq_stock_price_cache_symbol_date"),
    )

    # ── Notes ───────────────────────────────────────────────────────────

    op.create_table(
        "daily_notes",
        _id(),
        _owner(),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("user_id", "date", name="uq_daily_notes_user_date"),
    )
    op.create_table(
        "weekly_additional_notes",
        _id(),
        _owner(),
        sa.Column("week_end_date", sa.Date(), nullable=False),
        sa.Column("content", sa.Text(), server_default="", nullable=False),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("user_id", "week_end_date", name="uq_weekly_notes_user_week"),
    )


def downgrade() -> None:
    for table in (
        "weekly_additional_notes",
        "daily_notes",
        "stock_price_cache",
        "stock_explanations",
        "stock_notes",
        "stocks",
        "stock_groups",
        "research_summary_history",
        "research_items",
        "research_sources",
        "deal_analyses",
        "interactions",
        "contacts",
        "deals",
        "api_keys",
        "user_roles",
        "profiles",
    ):
        op.drop_table(table)
