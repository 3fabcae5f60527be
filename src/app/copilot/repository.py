"""Copilot repository -- saved deal analyses."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.copilot.models import DealAnalysisModel
from src.app.copilot.schemas import DealAnalysisCreate, DealAnalysisRead, RecentAnalysis
from src.app.core.database import parse_uuid
from src.app.deals.models import DealModel

logger = structlog.get_logger(__name__)


def _model_to_analysis(model: DealAnalysisModel) -> DealAnalysisRead:
    """Convert DealAnalysisModel to DealAnalysisRead schema."""
    return DealAnalysisRead(
        id=str(model.id),
        user_id=str(model.user_id),
        deal_id=str(model.deal_id),
        analysis_type=model.analysis_type,
        title=model.title,
        result_content=model.result_content or "",
        input_data=dict(model.input_data or {}),
        notion_connected=bool(model.notion_connected),
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


class AnalysisRepository:
    """Async CRUD for deal analyses.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def save_analysis(self, user_id: str, data: DealAnalysisCreate) -> DealAnalysisRead:
        """Persist an analysis.

        Raises:
            ValueError: If the deal does not belong to the user.
        """
        did = parse_uuid(data.deal_id)
        async for session in self._session_factory():
            owner = uuid.UUID(user_id)
            deal = None
            if did is not None:
                result = await session.execute(
                    select(DealModel.id).where(DealModel.user_id == owner, DealModel.id == did)
                )
                deal = result.scalar_one_or_none()
            if deal is None:
                raise ValueError(f"Deal not found: {data.deal_id}")

            model = DealAnalysisModel(
                user_id=owner,
                deal_id=did,
                analysis_type=data.analysis_type.value,
                title=data.title,
                result_content=data.result_content,
                input_data=data.input_data,
                notion_connected=data.notion_connected,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info(
                "copilot.analysis_saved",
                analysis_id=str(model.id),
                analysis_type=model.analysis_type,
            )
            return _model_to_analysis(model)

    async def get_analysis(self, user_id: str, analysis_id: str) -> DealAnalysisRead | None:
        aid = parse_uuid(analysis_id)
        if aid is None:
            return None
        async for session in self._session_factory():
            result = await session.execute(
                select(DealAnalysisModel).where(
                    DealAnalysisModel.user_id == uuid.UUID(user_id),
                    DealAnalysisModel.id == aid,
                )
            )
            model = result.scalar_one_or_none()
            return _model_to_analysis(model) if model else None

    async def list_for_deal(self, user_id: str, deal_id: str) -> list[DealAnalysisRead]:
        """Saved analyses for one deal, newest first."""
        did = parse_uuid(deal_id)
        if did is None:
            return []
        async for session in self._session_factory():
            result = await session.execute(
                select(DealAnalysisModel)
                .where(
                    DealAnalysisModel.user_id == uuid.UUID(user_id),
                    DealAnalysisModel.deal_id == did,
                )
                .order_by(DealAnalysisModel.created_at.desc())
            )
            return [_model_to_analysis(m) for m in result.scalars().all()]

    async def list_recent(self, user_id: str, limit: int = 10) -> list[RecentAnalysis]:
        """Most recent analyses across all deals, with the deal's name and logo."""
        async for session in self._session_factory():
            result = await session.execute(
                select(DealAnalysisModel, DealModel.project_name, DealModel.logo_url)
                .join(DealModel, DealModel.id == DealAnalysisModel.deal_id)
                .where(DealAnalysisModel.user_id == uuid.UUID(user_id))
                .order_by(DealAnalysisModel.created_at.desc())
                .limit(limit)
            )
            return [
                RecentAnalysis(
                    id=str(model.id),
                    deal_id=str(model.deal_id),
                    title=model.title,
                    analysis_type=model.analysis_type,
                    project_name=project_name,
                    logo_url=logo_url,
                    created_at=model.created_at,
                )
                for model, project_name, logo_url in result.all()
            ]

    async def update_content(
        self, user_id: str, analysis_id: str, result_content: str
    ) -> DealAnalysisRead:
        """Replace the analysis body with an edited version.

        Raises:
            ValueError: If the analysis is not found.
        """
        aid = parse_uuid(analysis_id)
        async for session in self._session_factory():
            model = None
            if aid is not None:
                result = await session.execute(
                    select(DealAnalysisModel).where(
                        DealAnalysisModel.user_id == uuid.UUID(user_id),
                        DealAnalysisModel.id == aid,
                    )
                )
                model = result.scalar_one_or_none()
            if model is None:
                raise ValueError(f"Analysis not found: {analysis_id}")

            model.result_content = result_content
            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_analysis(model)

    async def delete_analysis(self, user_id: str, analysis_id: str) -> bool:
        aid = parse_uuid(analysis_id)
        if aid is None:
            return False
        async for session in self._session_factory():
            result = await session.execute(
                delete(DealAnalysisModel).where(
                    DealAnalysisModel.user_id == uuid.UUID(user_id),
                    DealAnalysisModel.id == aid,
                )
            )
            await session.commit()
            return result.rowcount > 0
