"""Pipeline list helpers: search, filter, sort, stats, and filter options."""

from __future__ import annotations

from src.app.deals.schemas import ACTIVE_STATUSES, DealRead, DealStats, DealStatus, FilterOptions

SORT_FIELDS = ("deal_date", "valuation_terms", "project_name", "updated_at")


def _enabled(value: str | None) -> bool:
    return bool(value) and value != "all"


def filter_deals(
    deals: list[DealRead],
    search: str | None = None,
    sector: str | None = None,
    status: str | None = None,
    funding_round: str | None = None,
) -> list[DealRead]:
    """Filter deals. Each filter set to "all" or None is ignored.

    search is case-insensitive over project_name, description and sector.
    """
    needle = (search or "").strip().lower()
    result = []
    for deal in deals:
        if needle and not any(
            needle in field.lower()
            for field in (deal.project_name, deal.description, deal.sector)
            if field
        ):
            continue
        if _enabled(sector) and deal.sector != sector:
            continue
        if _enabled(status) and deal.status != status:
            continue
        if _enabled(funding_round) and deal.funding_round != funding_round:
            continue
        result.append(deal)
    return result


def sort_deals(deals: list[DealRead], sort_by: str = "deal_date", order: str = "desc") -> list[DealRead]:
    """Sort by one of SORT_FIELDS. Deals missing the field always go last.

    project_name compares case-insensitively.
    """
    if sort_by not in SORT_FIELDS:
        raise ValueError(f"Unsupported sort field: {sort_by}")
    if order not in ("asc", "desc"):
        raise ValueError(f"Unsupported sort order: {order}")

    def key(deal: DealRead):
        value = getattr(deal, sort_by)
        return value.lower() if sort_by == "project_name" else value

    present = [d for d in deals if getattr(d, sort_by)]
    missing = [d for d in deals if not getattr(d, sort_by)]
    present.sort(key=key, reverse=order == "desc")
    return present + missing


def deal_stats(deals: list[DealRead]) -> DealStats:
    return DealStats(
        total=len(deals),
        following=sum(1 for d in deals if d.status == DealStatus.FOLLOW.value),
        active=sum(1 for d in deals if d.status in ACTIVE_STATUSES),
        closed=sum(1 for d in deals if d.status == DealStatus.INVESTED.value),
    )


def filter_options(deals: list[DealRead]) -> FilterOptions:
    """Sorted distinct non-empty sectors, statuses and rounds."""
    return FilterOptions(
        sectors=sorted({d.sector for d in deals if d.sector}),
        statuses=sorted({d.status for d in deals if d.status}),
        rounds=sorted({d.funding_round for d in deals if d.funding_round}),
    )
