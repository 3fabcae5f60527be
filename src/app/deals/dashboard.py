"""Dashboard aggregation over already-fetched contacts, interactions and deals."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from src.app.access.schemas import ContactRead, InteractionRead
from src.app.deals.schemas import (
    NOTABLE_STATUSES,
    Dashboard,
    DashboardCounts,
    DealRead,
    DealStatus,
)

RECENT_LIMIT = 5
WEEK = timedelta(days=7)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def percent_change(this_week: int, last_week: int) -> int | None:
    """Week-over-week change in percent; None when there is nothing to compare."""
    if last_week == 0:
        return 100 if this_week > 0 else None
    return round((this_week - last_week) / last_week * 100)


def _created(row: ContactRead | DealRead) -> datetime:
    return row.created_at or _EPOCH


def _weekly_counts(rows: list, now: datetime) -> tuple[int, int]:
    this_week = sum(1 for r in rows if r.created_at and r.created_at >= now - WEEK)
    last_week = sum(
        1 for r in rows if r.created_at and now - 2 * WEEK <= r.created_at < now - WEEK
    )
    return this_week, last_week


def build_dashboard(
    contacts: list[ContactRead],
    interactions: list[InteractionRead],
    deals: list[DealRead],
    active_sources: int = 0,
    now: datetime | None = None,
) -> Dashboard:
    """Headline counts, the five newest deals/contacts/interactions, and notable deals.

    Rejected deals are not counted. Notable deals are those in due diligence
    or invested, newest first.
    """
    now = now or datetime.now(timezone.utc)
    open_deals = [d for d in deals if d.status != DealStatus.REJECT.value]

    contacts_this_week, contacts_last_week = _weekly_counts(contacts, now)
    deals_this_week, deals_last_week = _weekly_counts(open_deals, now)

    by_created = sorted(deals, key=_created, reverse=True)
    recent_interactions = sorted(
        interactions,
        key=lambda i: (i.interaction_date or date.min, i.created_at or _EPOCH),
        reverse=True,
    )

    return Dashboard(
        counts=DashboardCounts(
            contacts=len(contacts),
            deals=len(open_deals),
            active_sources=active_sources,
            contacts_this_week=contacts_this_week,
            deals_this_week=deals_this_week,
            contacts_percent_change=percent_change(contacts_this_week, contacts_last_week),
            deals_percent_change=percent_change(deals_this_week, deals_last_week),
        ),
        recent_deals=by_created[:RECENT_LIMIT],
        recent_contacts=sorted(contacts, key=_created, reverse=True)[:RECENT_LIMIT],
        recent_interactions=recent_interactions[:RECENT_LIMIT],
        notable_deals=[d for d in by_created if d.status in NOTABLE_STATUSES][:RECENT_LIMIT],
    )
