"""Stocks repository -- groups, symbols, notes, explanations, quote cache."""

from __future__ import annotations

import datetime as dt
import uuid
from collections.abc import AsyncGenerator, Callable

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.database import parse_uuid
from src.app.stocks.models import (
    StockExplanationModel,
    StockGroupModel,
    StockModel,
    StockNoteModel,
    StockPriceCacheModel,
)
from src.app.stocks.schemas import (
    StockCreate,
    StockExplanationRead,
    StockGroupCreate,
    StockGroupRead,
    StockGroupUpdate,
    StockNoteRead,
    StockNoteUpsert,
    StockQuote,
    StockRead,
    StockUpdate,
)

logger = structlog.get_logger(__name__)


def _model_to_stock(model: StockModel) -> StockRead:
    return StockRead(
        id=str(model.id),
        group_id=str(model.group_id),
        symbol=model.symbol,
        display_order=model.display_order or 0,
    )


def _model_to_group(model: StockGroupModel, stocks: list[StockRead]) -> StockGroupRead:
    return StockGroupRead(
        id=str(model.id),
        name=model.name,
        display_order=model.display_order or 0,
        index_symbol=model.index_symbol,
        stocks=stocks,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_note(model: StockNoteModel) -> StockNoteRead:
    return StockNoteRead(
        id=str(model.id),
        symbol=model.symbol,
        date=model.date,
        note=model.note,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_explanation(model: StockExplanationModel) -> StockExplanationRead:
    return StockExplanationRead(
        id=str(model.id),
        symbol=model.symbol,
        date=model.date,
        change_percent=model.change_percent,
        explanation=model.explanation,
        created_at=model.created_at,
    )


def _model_to_quote(model: StockPriceCacheModel) -> StockQuote:
    return StockQuote(
        symbol=model.symbol,
        companyName=model.company_name,
        currentPrice=float(model.current_price),
        previousClose=float(model.previous_close),
        change=float(model.change_amount),
        changePercent=float(model.change_percent),
    )


class StockRepository:
    """Async persistence for the Stocks module.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Groups ──────────────────────────────────────────────────────────────

    async def list_groups(self, user_id: str) -> list[StockGroupRead]:
        """Groups in display order, each with its stocks in display order."""
        async for session in self._session_factory():
            owner = uuid.UUID(user_id)
            groups = (
                await session.execute(
                    select(StockGroupModel)
                    .where(StockGroupModel.user_id == owner)
                    .order_by(StockGroupModel.display_order, StockGroupModel.created_at)
                )
            ).scalars().all()
            stocks = (
                await session.execute(
                    select(StockModel)
                    .where(StockModel.user_id == owner)
                    .order_by(StockModel.display_order, StockModel.created_at)
                )
            ).scalars().all()

            by_group: dict[uuid.UUID, list[StockRead]] = {}
            for stock in stocks:
                by_group.setdefault(stock.group_id, []).append(_model_to_stock(stock))
            return [_model_to_group(g, by_group.get(g.id, [])) for g in groups]

    async def create_group(self, user_id: str, data: StockGroupCreate) -> StockGroupRead:
        async for session in self._session_factory():
            owner = uuid.UUID(user_id)
            order = data.display_order
            if order is None:
                current = await session.execute(
                    select(func.max(StockGroupModel.display_order)).where(
                        StockGroupModel.user_id == owner
                    )
                )
                top = current.scalar_one_or_none()
                order = 0 if top is None else top + 1
            model = StockGroupModel(
                user_id=owner,
                name=data.name,
                display_order=order,
                index_symbol=data.index_symbol,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info("stocks.group_created", user_id=user_id, group_id=str(model.id))
            return _model_to_group(model, [])

    async def update_group(
        self, user_id: str, group_id: str, data: StockGroupUpdate
    ) -> StockGroupRead:
        """Raises ValueError if the group does not exist."""
        gid = parse_uuid(group_id)
        async for session in self._session_factory():
            model = None
            if gid is not None:
                result = await session.execute(
                    select(StockGroupModel).where(
                        StockGroupModel.user_id == uuid.UUID(user_id),
                        StockGroupModel.id == gid,
                    )
                )
                model = result.scalar_one_or_none()
            if model is None:
                raise ValueError(f"Stock group not found: {group_id}")

            for key, value in data.model_dump(exclude_none=True).items():
                setattr(model, key, value)
            model.updated_at = dt.datetime.now(dt.timezone.utc)
            await session.commit()
            await session.refresh(model)

            stocks = (
                await session.execute(
                    select(StockModel)
                    .where(StockModel.group_id == model.id)
                    .order_by(StockModel.display_order, StockModel.created_at)
                )
            ).scalars().all()
            return _model_to_group(model, [_model_to_stock(s) for s in stocks])

    async def delete_group(self, user_id: str, group_id: str) -> bool:
        """Delete a group and its stocks."""
        gid = parse_uuid(group_id)
        if gid is None:
            return False
        async for session in self._session_factory():
            owner = uuid.UUID(user_id)
            await session.execute(
                delete(StockModel).where(StockModel.user_id == owner, StockModel.group_id == gid)
            )
            result = await session.execute(
                delete(StockGroupModel).where(
                    StockGroupModel.user_id == owner, StockGroupModel.id == gid
                )
            )
            await session.commit()
            return result.rowcount > 0

    # ── Stocks ──────────────────────────────────────────────────────────────

    async def add_stock(self, user_id: str, data: StockCreate) -> StockRead:
        """Add a symbol to a group (appended last unless an order is given).

        Raises:
            ValueError: If the group does not belong to the user.
        """
        gid = parse_uuid(data.group_id)
        async for session in self._session_factory():
            owner = uuid.UUID(user_id)
            group = None
            if gid is not None:
                result = await session.execute(
                    select(StockGroupModel.id).where(
                        StockGroupModel.user_id == owner, StockGroupModel.id == gid
                    )
                )
                group = result.scalar_one_or_none()
            if group is None:
                raise ValueError(f"Stock group not found: {data.group_id}")

            order = data.display_order
            if order is None:
                current = await session.execute(
                    select(func.max(StockModel.display_order)).where(StockModel.group_id == gid)
                )
                top = current.scalar_one_or_none()
                order = 0 if top is None else top + 1

            model = StockModel(user_id=owner, group_id=gid, symbol=data.symbol, display_order=order)
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info("stocks.stock_added", user_id=user_id, symbol=data.symbol)
            return _model_to_stock(model)

    async def update_stock(self, user_id: str, stock_id: str, data: StockUpdate) -> StockRead:
        """Move a stock to another group or position.

        Raises:
            ValueError: If the stock or target group does not exist.
        """
        sid = parse_uuid(stock_id)
        async for session in self._session_factory():
            owner = uuid.UUID(user_id)
            model = None
            if sid is not None:
                result = await session.execute(
                    select(StockModel).where(StockModel.user_id == owner, StockModel.id == sid)
                )
                model = result.scalar_one_or_none()
            if model is None:
                raise ValueError(f"Stock not found: {stock_id}")

            if data.group_id is not None:
                gid = parse_uuid(data.group_id)
                target = None
                if gid is not None:
                    result = await session.execute(
                        select(StockGroupModel.id).where(
                            StockGroupModel.user_id == owner, StockGroupModel.id == gid
                        )
                    )
                    target = result.scalar_one_or_none()
                if target is None:
                    raise ValueError(f"Stock group not found: {data.group_id}")
                model.group_id = gid
            if data.display_order is not None:
                model.display_order = data.display_order
            model.updated_at = dt.datetime.now(dt.timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_stock(model)

    async def delete_stock(self, user_id: str, stock_id: str) -> bool:
        sid = parse_uuid(stock_id)
        if sid is None:
            return False
        async for session in self._session_factory():
            result = await session.execute(
                delete(StockModel).where(
                    StockModel.user_id == uuid.UUID(user_id), StockModel.id == sid
                )
            )
            await session.commit()
            return result.rowcount > 0

    # ── Notes ───────────────────────────────────────────────────────────────

    async def list_notes(
        self,
        user_id: str,
        day: dt.date | None = None,
        symbol: str | None = None,
    ) -> list[StockNoteRead]:
        """Stock notes, newest date first, optionally for one day and/or symbol."""
        async for session in self._session_factory():
            stmt = select(StockNoteModel).where(StockNoteModel.user_id == uuid.UUID(user_id))
            if day is not None:
                stmt = stmt.where(StockNoteModel.date == day)
            if symbol:
                stmt = stmt.where(StockNoteModel.symbol == symbol.upper())
            result = await session.execute(
                stmt.order_by(StockNoteModel.date.desc(), StockNoteModel.symbol)
            )
            return [_model_to_note(m) for m in result.scalars().all()]

    async def save_note(self, user_id: str, data: StockNoteUpsert) -> StockNoteRead:
        """Insert or replace the note for (symbol, date)."""
        symbol = data.symbol.strip().upper()
        async for session in self._session_factory():
            owner = uuid.UUID(user_id)
            result = await session.execute(
                select(StockNoteModel).where(
                    StockNoteModel.user_id == owner,
                    StockNoteModel.symbol == symbol,
                    StockNoteModel.date == data.date,
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                model = StockNoteModel(user_id=owner, symbol=symbol, date=data.date, note=data.note)
                session.add(model)
            else:
                model.note = data.note
                model.updated_at = dt.datetime.now(dt.timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_note(model)

    async def delete_note(self, user_id: str, symbol: str, day: dt.date) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                delete(StockNoteModel).where(
                    StockNoteModel.user_id == uuid.UUID(user_id),
                    StockNoteModel.symbol == symbol.upper(),
                    StockNoteModel.date == day,
                )
            )
            await session.commit()
            return result.rowcount > 0

    # ── Explanations ────────────────────────────────────────────────────────

    async def list_explanations(
        self, user_id: str, day: dt.date, symbols: list[str] | None = None
    ) -> list[StockExplanationRead]:
        async for session in self._session_factory():
            stmt = select(StockExplanationModel).where(
                StockExplanationModel.user_id == uuid.UUID(user_id),
                StockExplanationModel.date == day,
            )
            if symbols:
                stmt = stmt.where(StockExplanationModel.symbol.in_(symbols))
            result = await session.execute(stmt.order_by(StockExplanationModel.symbol))
            return [_model_to_explanation(m) for m in result.scalars().all()]

    async def save_explanation(
        self,
        user_id: str,
        symbol: str,
        day: dt.date,
        change_percent: float,
        explanation: str,
    ) -> StockExplanationRead:
        """Insert or replace the explanation for (symbol, date)."""
        async for session in self._session_factory():
            owner = uuid.UUID(user_id)
            result = await session.execute(
                select(StockExplanationModel).where(
                    StockExplanationModel.user_id == owner,
                    StockExplanationModel.symbol == symbol,
                    StockExplanationModel.date == day,
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                model = StockExplanationModel(
                    user_id=owner,
                    symbol=symbol,
                    date=day,
                    change_percent=change_percent,
                    explanation=explanation,
                )
                session.add(model)
            else:
                model.change_percent = change_percent
                model.explanation = explanation
                model.updated_at = dt.datetime.now(dt.timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_explanation(model)

    # ── Quote cache ─────────────────────────────────────────────────────────

    async def cached_quotes(self, symbols: list[str], day: dt.date) -> dict[str, StockQuote]:
        if not symbols:
            return {}
        async for session in self._session_factory():
            result = await session.execute(
                select(StockPriceCacheModel).where(
                    StockPriceCacheModel.date == day,
                    StockPriceCacheModel.symbol.in_(symbols),
                )
            )
            return {m.symbol: _model_to_quote(m) for m in result.scalars().all()}

    async def cache_quotes(self, quotes: list[StockQuote], day: dt.date) -> int:
        """Upsert quotes on (symbol, date). Returns the number written."""
        if not quotes:
            return 0
        async for session in self._session_factory():
            result = await session.execute(
                select(StockPriceCacheModel).where(
                    StockPriceCacheModel.date == day,
                    StockPriceCacheModel.symbol.in_([q.symbol for q in quotes]),
                )
            )
            existing = {m.symbol: m for m in result.scalars().all()}
            now = dt.datetime.now(dt.timezone.utc)
            for quote in quotes:
                model = existing.get(quote.symbol)
                if model is None:
                    model = StockPriceCacheModel(symbol=quote.symbol, date=day)
                    session.add(model)
                    existing[quote.symbol] = model
                model.company_name = quote.companyName
                model.current_price = quote.currentPrice
                model.previous_close = quote.previousClose
                model.change_amount = quote.change
                model.change_percent = quote.changePercent
                model.cached_at = now
            await session.commit()
            return len(quotes)
