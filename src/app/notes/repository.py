"""Notes repository -- daily market notes and weekly additional notes.

Both tables hold one row per user and date; save_* methods upsert.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import date, datetime, timezone

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.notes.models import DailyNoteModel, WeeklyNoteModel
from src.app.notes.schemas import (
    DailyNoteRead,
    DailyNoteUpsert,
    WeeklyNoteRead,
    WeeklyNoteUpsert,
)

logger = structlog.get_logger(__name__)


def _model_to_daily(model: DailyNoteModel) -> DailyNoteRead:
    return DailyNoteRead(
        id=str(model.id),
        date=model.date,
        content=model.content,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_weekly(model: WeeklyNoteModel) -> WeeklyNoteRead:
    return WeeklyNoteRead(
        id=str(model.id),
        week_end_date=model.week_end_date,
        content=model.content or "",
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


class NotesRepository:
    """Async persistence for daily and weekly notes.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Daily notes ─────────────────────────────────────────────────────────

    async def get_daily_note(self, user_id: str, day: date) -> DailyNoteRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(DailyNoteModel).where(
                    DailyNoteModel.user_id == uuid.UUID(user_id),
                    DailyNoteModel.date == day,
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_daily(model) if model else None

    async def list_daily_notes(
        self, user_id: str, day: date | None = None
    ) -> list[DailyNoteRead]:
        """Daily notes, newest first; only the given day when one is passed."""
        async for session in self._session_factory():
            stmt = select(DailyNoteModel).where(DailyNoteModel.user_id == uuid.UUID(user_id))
            if day is not None:
                stmt = stmt.where(DailyNoteModel.date == day)
            result = await session.execute(stmt.order_by(DailyNoteModel.date.desc()))
            return [_model_to_daily(m) for m in result.scalars().all()]

    async def save_daily_note(self, user_id: str, data: DailyNoteUpsert) -> DailyNoteRead:
        async for session in self._session_factory():
            owner = uuid.UUID(user_id)
            result = await session.execute(
                select(DailyNoteModel).where(
                    DailyNoteModel.user_id == owner,
                    DailyNoteModel.date == data.date,
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                model = DailyNoteModel(user_id=owner, date=data.date, content=data.content)
                session.add(model)
            else:
                model.content = data.content
                model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            logger.info("notes.daily_saved", user_id=user_id, date=data.date.isoformat())
            return _model_to_daily(model)

    async def delete_daily_note(self, user_id: str, day: date) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                delete(DailyNoteModel).where(
                    DailyNoteModel.user_id == uuid.UUID(user_id),
                    DailyNoteModel.date == day,
                )
            )
            await session.commit()
            return result.rowcount > 0

    # ── Weekly notes ────────────────────────────────────────────────────────

    async def get_weekly_note(self, user_id: str, week_end_date: date) -> WeeklyNoteRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(WeeklyNoteModel).where(
                    WeeklyNoteModel.user_id == uuid.UUID(user_id),
                    WeeklyNoteModel.week_end_date == week_end_date,
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_weekly(model) if model else None

    async def save_weekly_note(self, user_id: str, data: WeeklyNoteUpsert) -> WeeklyNoteRead:
        async for session in self._session_factory():
            owner = uuid.UUID(user_id)
            result = await session.execute(
                select(WeeklyNoteModel).where(
                    WeeklyNoteModel.user_id == owner,
                    WeeklyNoteModel.week_end_date == data.week_end_date,
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                model = WeeklyNoteModel(
                    user_id=owner, week_end_date=data.week_end_date, content=data.content
                )
                session.add(model)
            else:
                model.content = data.content
                model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            logger.info(
                "notes.weekly_saved",
                user_id=user_id,
                week_end_date=data.week_end_date.isoformat(),
            )
            return _model_to_weekly(model)
