"""Deal repository -- async CRUD for the investment pipeline.

Provides DealRepository with the session_factory callable pattern. All
methods take user_id as first argument for user-scoped queries.

key_contacts is stored as a JSON text array of contact ids and parsed back
into a list on read; a malformed stored value reads as an empty list.
Saving a deal that adds contacts to key_contacts logs an interaction for
each newly linked contact. That follow-up write is a separate commit: if it
fails the deal write stands and the failure is only logged.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import date, datetime, timezone

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.access.models import ContactModel, InteractionModel
from src.app.core.database import parse_uuid
from src.app.deals.models import DealModel
from src.app.deals.schemas import DealCreate, DealRead, DealUpdate

logger = structlog.get_logger(__name__)

AUTO_INTERACTION_NOTE = "Initiated interaction automatically (linked from project)"


# ── Serialization Helpers ───────────────────────────────────────────────────


def parse_key_contacts(raw: str | None) -> list[str]:
    """Parse the stored key_contacts JSON. Anything malformed yields []."""
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v]


def serialize_key_contacts(ids: list[str] | None) -> str | None:
    """Store the id list as a JSON string, or NULL when empty."""
    if not ids:
        return None
    return json.dumps(list(dict.fromkeys(ids)))


def _model_to_deal(model: DealModel) -> DealRead:
    """Convert DealModel to DealRead schema."""
    return DealRead(
        id=str(model.id),
        user_id=str(model.user_id),
        project_name=model.project_name,
        hq_location=model.hq_location,
        sector=model.sector,
        funding_round=model.funding_round,
        funding_amount=model.funding_amount,
        valuation_terms=model.valuation_terms,
        source=model.source,
        bu_category=model.bu_category,
        description=model.description,
        benchmark_companies=model.benchmark_companies,
        followers=model.followers,
        status=model.status,
        feedback_notes=model.feedback_notes,
        financials=model.financials,
        deal_date=model.deal_date,
        leads=model.leads,
        folder_link=model.folder_link,
        key_contacts=parse_key_contacts(model.key_contacts),
        pre_investors=model.pre_investors,
        logo_url=model.logo_url,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


class DealRepository:
    """Async CRUD operations for deals.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def create_deal(self, user_id: str, data: DealCreate) -> DealRead:
        """Create a deal and log interactions for its key contacts."""
        async for session in self._session_factory():
            fields = data.model_dump(exclude={"key_contacts", "status"})
            model = DealModel(
                user_id=uuid.UUID(user_id),
                status=data.status.value,
                key_contacts=serialize_key_contacts(data.key_contacts),
                **fields,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            deal = _model_to_deal(model)

        logger.info("deals.deal_created", deal_id=deal.id, project_name=deal.project_name)
        await self._log_auto_interactions(user_id, deal.id, [], deal.key_contacts)
        return deal

    async def get_deal(self, user_id: str, deal_id: str) -> DealRead | None:
        """Get a deal by ID."""
        did = parse_uuid(deal_id)
        if did is None:
            return None
        async for session in self._session_factory():
            result = await session.execute(
                select(DealModel).where(
                    DealModel.user_id == uuid.UUID(user_id),
                    DealModel.id == did,
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_deal(model) if model else None

    async def list_deals(self, user_id: str, limit: int | None = None) -> list[DealRead]:
        """List deals by deal_date descending, undated deals last."""
        async for session in self._session_factory():
            stmt = (
                select(DealModel)
                .where(DealModel.user_id == uuid.UUID(user_id))
                .order_by(DealModel.deal_date.desc().nulls_last(), DealModel.created_at.desc())
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return [_model_to_deal(m) for m in result.scalars().all()]

    async def list_recent_deals(
        self, user_id: str, statuses: frozenset[str] | None = None, limit: int = 5
    ) -> list[DealRead]:
        """Most recently created deals, optionally restricted to some statuses."""
        async for session in self._session_factory():
            stmt = select(DealModel).where(DealModel.user_id == uuid.UUID(user_id))
            if statuses:
                stmt = stmt.where(DealModel.status.in_(sorted(statuses)))
            stmt = stmt.order_by(DealModel.created_at.desc()).limit(limit)
            result = await session.execute(stmt)
            return [_model_to_deal(m) for m in result.scalars().all()]

    async def deal_names(self, user_id: str) -> dict[str, str]:
        """Map deal_id -> project_name for every deal the user owns."""
        async for session in self._session_factory():
            result = await session.execute(
                select(DealModel.id, DealModel.project_name).where(
                    DealModel.user_id == uuid.UUID(user_id)
                )
            )
            return {str(did): name for did, name in result.all()}

    async def update_deal(self, user_id: str, deal_id: str, data: DealUpdate) -> DealRead:
        """Update a deal.

        Contacts added to key_contacts by this update get an automatic
        interaction.

        Raises:
            ValueError: If the deal is not found.
        """
        did = parse_uuid(deal_id)
        async for session in self._session_factory():
            model = None
            if did is not None:
                result = await session.execute(
                    select(DealModel).where(
                        DealModel.user_id == uuid.UUID(user_id),
                        DealModel.id == did,
                    )
                )
                model = result.scalar_one_or_none()
            if model is None:
                raise ValueError(f"Deal not found: {deal_id}")

            previous = parse_key_contacts(model.key_contacts)
            changes = data.changes()
            for key, value in changes.items():
                if key == "key_contacts":
                    value = serialize_key_contacts(value)
                setattr(model, key, value)

            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            deal = _model_to_deal(model)

        if "key_contacts" in changes:
            await self._log_auto_interactions(user_id, deal.id, previous, deal.key_contacts)
        return deal

    async def delete_deal(self, user_id: str, deal_id: str) -> bool:
        """Delete a deal. Linked interactions keep their row with deal_id NULL."""
        did = parse_uuid(deal_id)
        if did is None:
            return False
        async for session in self._session_factory():
            result = await session.execute(
                delete(DealModel).where(
                    DealModel.user_id == uuid.UUID(user_id),
                    DealModel.id == did,
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def _log_auto_interactions(
        self,
        user_id: str,
        deal_id: str,
        previous: list[str],
        current: list[str],
    ) -> int:
        """Insert one interaction per newly linked contact. Returns rows written."""
        added = [cid for cid in current if cid not in set(previous)]
        contact_ids = [u for u in (parse_uuid(c) for c in added) if u is not None]
        if not contact_ids:
            return 0

        try:
            async for session in self._session_factory():
                owner = uuid.UUID(user_id)
                result = await session.execute(
                    select(ContactModel.id).where(
                        ContactModel.user_id == owner,
                        ContactModel.id.in_(contact_ids),
                    )
                )
                owned = set(result.scalars().all())
                today = date.today()
                for cid in contact_ids:
                    if cid not in owned:
                        continue
                    session.add(
                        InteractionModel(
                            user_id=owner,
                            contact_id=cid,
                            deal_id=uuid.UUID(deal_id),
                            interaction_date=today,
                            notes=AUTO_INTERACTION_NOTE,
                        )
                    )
                await session.commit()
                logger.info("deals.auto_interactions_logged", deal_id=deal_id, count=len(owned))
                return len(owned)
        except Exception as exc:
            logger.warning(
                "deals.auto_interactions_failed",
                deal_id=deal_id,
                error=str(exc),
            )
        return 0
