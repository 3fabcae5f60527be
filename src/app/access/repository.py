"""Access repository -- async CRUD for contacts and interactions.

Provides AccessRepository with the session_factory callable pattern used
by every repository in the app. All methods take user_id as first argument
and only ever touch that user's rows.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.access.models import ContactModel, InteractionModel
from src.app.access.schemas import (
    ContactCreate,
    ContactRead,
    ContactUpdate,
    DealRef,
    InteractionCreate,
    InteractionRead,
    InteractionUpdate,
)
from src.app.core.database import parse_uuid
from src.app.deals.models import DealModel

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_contact(model: ContactModel) -> ContactRead:
    """Convert ContactModel to ContactRead schema."""
    return ContactRead(
        id=str(model.id),
        user_id=str(model.user_id),
        name=model.name,
        company=model.company,
        role=model.role,
        contact_type=model.contact_type,
        email=model.email,
        tags=list(model.tags or []),
        notes=model.notes,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_interaction(
    model: InteractionModel, project_name: str | None = None
) -> InteractionRead:
    """Convert InteractionModel to InteractionRead, attaching the deal ref."""
    deal = None
    if model.deal_id is not None:
        deal = DealRef(id=str(model.deal_id), project_name=project_name or "Unknown")
    return InteractionRead(
        id=str(model.id),
        user_id=str(model.user_id),
        contact_id=str(model.contact_id),
        deal_id=str(model.deal_id) if model.deal_id else None,
        interaction_date=model.interaction_date,
        notes=model.notes,
        deal=deal,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


class AccessRepository:
    """Async CRUD operations for contacts and interactions.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Contacts ────────────────────────────────────────────────────────────

    async def create_contact(self, user_id: str, data: ContactCreate) -> ContactRead:
        """Create a new contact."""
        async for session in self._session_factory():
            model = ContactModel(
                user_id=uuid.UUID(user_id),
                name=data.name,
                company=data.company,
                role=data.role,
                contact_type=data.contact_type.value,
                email=data.email,
                tags=data.tags or None,
                notes=data.notes,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info("access.contact_created", contact_id=str(model.id))
            return _model_to_contact(model)

    async def get_contact(self, user_id: str, contact_id: str) -> ContactRead | None:
        """Get a contact by ID, None if missing or owned by someone else."""
        cid = parse_uuid(contact_id)
        if cid is None:
            return None
        async for session in self._session_factory():
            result = await session.execute(
                select(ContactModel).where(
                    ContactModel.user_id == uuid.UUID(user_id),
                    ContactModel.id == cid,
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_contact(model) if model else None

    async def list_contacts(self, user_id: str) -> list[ContactRead]:
        """List the user's contacts, newest first."""
        async for session in self._session_factory():
            result = await session.execute(
                select(ContactModel)
                .where(ContactModel.user_id == uuid.UUID(user_id))
                .order_by(ContactModel.created_at.desc())
            )
            return [_model_to_contact(m) for m in result.scalars().all()]

    async def update_contact(
        self, user_id: str, contact_id: str, data: ContactUpdate
    ) -> ContactRead:
        """Update an existing contact.

        Raises:
            ValueError: If the contact is not found.
        """
        cid = parse_uuid(contact_id)
        async for session in self._session_factory():
            model = None
            if cid is not None:
                result = await session.execute(
                    select(ContactModel).where(
                        ContactModel.user_id == uuid.UUID(user_id),
                        ContactModel.id == cid,
                    )
                )
                model = result.scalar_one_or_none()
            if model is None:
                raise ValueError(f"Contact not found: {contact_id}")

            for key, value in data.model_dump(exclude_none=True).items():
                if key == "contact_type":
                    value = value.value if hasattr(value, "value") else value
                setattr(model, key, value)

            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_contact(model)

    async def delete_contact(self, user_id: str, contact_id: str) -> bool:
        """Delete a contact and its interactions. Returns False if not found."""
        cid = parse_uuid(contact_id)
        if cid is None:
            return False
        async for session in self._session_factory():
            owner = uuid.UUID(user_id)
            await session.execute(
                delete(InteractionModel).where(
                    InteractionModel.user_id == owner,
                    InteractionModel.contact_id == cid,
                )
            )
            result = await session.execute(
                delete(ContactModel).where(
                    ContactModel.user_id == owner,
                    ContactModel.id == cid,
                )
            )
            await session.commit()
            return result.rowcount > 0

    # ── Interactions ────────────────────────────────────────────────────────

    async def create_interaction(
        self, user_id: str, data: InteractionCreate
    ) -> InteractionRead:
        """Log an interaction against one of the user's contacts.

        Raises:
            ValueError: If the contact is not found.
        """
        contact = await self.get_contact(user_id, data.contact_id)
        if contact is None:
            raise ValueError(f"Contact not found: {data.contact_id}")

        async for session in self._session_factory():
            model = InteractionModel(
                user_id=uuid.UUID(user_id),
                contact_id=uuid.UUID(data.contact_id),
                deal_id=parse_uuid(data.deal_id),
                interaction_date=data.interaction_date,
                notes=data.notes,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            project_name = None
            if model.deal_id is not None:
                deal = await session.get(DealModel, model.deal_id)
                project_name = deal.project_name if deal else None
            return _model_to_interaction(model, project_name)

    async def list_interactions(
        self, user_id: str, contact_id: str | None = None
    ) -> list[InteractionRead]:
        """List interactions (optionally for one contact), newest date first.

        Each row is joined to its deal so the caller gets the project name.
        """
        async for session in self._session_factory():
            stmt = (
                select(InteractionModel, DealModel.project_name)
                .outerjoin(DealModel, DealModel.id == InteractionModel.deal_id)
                .where(InteractionModel.user_id == uuid.UUID(user_id))
                .order_by(
                    InteractionModel.interaction_date.desc(),
                    InteractionModel.created_at.desc(),
                )
            )
            if contact_id is not None:
                cid = parse_uuid(contact_id)
                if cid is None:
                    return []
                stmt = stmt.where(InteractionModel.contact_id == cid)

            result = await session.execute(stmt)
            return [_model_to_interaction(m, name) for m, name in result.all()]

    async def update_interaction(
        self, user_id: str, interaction_id: str, data: InteractionUpdate
    ) -> InteractionRead:
        """Update an interaction.

        Raises:
            ValueError: If the interaction is not found.
        """
        iid = parse_uuid(interaction_id)
        async for session in self._session_factory():
            model = None
            if iid is not None:
                result = await session.execute(
                    select(InteractionModel).where(
                        InteractionModel.user_id == uuid.UUID(user_id),
                        InteractionModel.id == iid,
                    )
                )
                model = result.scalar_one_or_none()
            if model is None:
                raise ValueError(f"Interaction not found: {interaction_id}")

            for key, value in data.model_dump(exclude_none=True).items():
                if key == "deal_id":
                    value = parse_uuid(value)
                setattr(model, key, value)

            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            project_name = None
            if model.deal_id is not None:
                deal = await session.get(DealModel, model.deal_id)
                project_name = deal.project_name if deal else None
            return _model_to_interaction(model, project_name)

    async def delete_interaction(self, user_id: str, interaction_id: str) -> bool:
        """Delete an interaction. Returns False if not found."""
        iid = parse_uuid(interaction_id)
        if iid is None:
            return False
        async for session in self._session_factory():
            result = await session.execute(
                delete(InteractionModel).where(
                    InteractionModel.user_id == uuid.UUID(user_id),
                    InteractionModel.id == iid,
                )
            )
            await session.commit()
            return result.rowcount > 0
