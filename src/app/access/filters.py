"""Contact filtering, stats and staleness helpers for the Access view.

These run over already-fetched rows, so they are plain functions with no
database access. The API layer loads contacts and interactions once and
passes them through here.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import date, timedelta

from src.app.access.schemas import (
    ContactRead,
    ContactStats,
    ContactType,
    InteractionRead,
    LastInteraction,
)

# A contact whose newest interaction is older than this is stale.
STALE_AFTER_DAYS = 30
RECENT_WINDOW_DAYS = 7


def _matches(query: str, contact: ContactRead, interactions: Iterable[InteractionRead]) -> bool:
    haystack = [
        contact.name,
        contact.company,
        contact.email,
        contact.notes,
        *contact.tags,
        *(i.notes for i in interactions),
    ]
    return any(query in value.lower() for value in haystack if value)


def filter_contacts(
    contacts: list[ContactRead],
    interactions_by_contact: Mapping[str, list[InteractionRead]] | None = None,
    active_type: str | None = None,
    query: str | None = None,
) -> list[ContactRead]:
    """Filter contacts by type and a free-text query.

    The query is case-insensitive and matches name, company, email, notes,
    any tag, or the notes of any of the contact's interactions. An
    active_type of "all" (or None) disables the type filter.
    """
    interactions_by_contact = interactions_by_contact or {}
    needle = (query or "").strip().lower()

    result = []
    for contact in contacts:
        if active_type and active_type != "all" and contact.contact_type != active_type:
            continue
        if needle and not _matches(needle, contact, interactions_by_contact.get(contact.id, [])):
            continue
        result.append(contact)
    return result


def last_interaction_info(
    interactions: Iterable[InteractionRead], today: date | None = None
) -> LastInteraction | None:
    """Return the newest interaction date and its age in days, or None."""
    dates = [i.interaction_date for i in interactions]
    if not dates:
        return None
    today = today or date.today()
    newest = max(dates)
    days_ago = (today - newest).days
    return LastInteraction(date=newest, days_ago=days_ago, is_stale=days_ago > STALE_AFTER_DAYS)


def group_interactions(interactions: Iterable[InteractionRead]) -> dict[str, list[InteractionRead]]:
    """Bucket interactions by contact_id, preserving input order."""
    grouped: dict[str, list[InteractionRead]] = {}
    for interaction in interactions:
        grouped.setdefault(interaction.contact_id, []).append(interaction)
    return grouped


def contact_stats(
    contacts: list[ContactRead],
    interactions: list[InteractionRead],
    today: date | None = None,
) -> ContactStats:
    """Compute headline numbers: totals, per-type counts, stale contacts, recent activity."""
    today = today or date.today()
    by_type = {t.value: 0 for t in ContactType}
    for contact in contacts:
        by_type[contact.contact_type] = by_type.get(contact.contact_type, 0) + 1

    grouped = group_interactions(interactions)
    stale = 0
    for contact in contacts:
        info = last_interaction_info(grouped.get(contact.id, []), today=today)
        if info is not None and info.is_stale:
            stale += 1

    window_start = today - timedelta(days=RECENT_WINDOW_DAYS)
    recent = sum(1 for i in interactions if i.interaction_date >= window_start)

    return ContactStats(
        total=len(contacts),
        by_type=by_type,
        stale=stale,
        interactions_last_7_days=recent,
    )
