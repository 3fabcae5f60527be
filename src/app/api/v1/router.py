"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.app.api.v1 import (
    access,
    admin_users,
    auth,
    chat,
    copilot,
    deals,
    notes,
    research,
    settings,
    stocks,
)

router = APIRouter()

router.include_router(auth.router)
router.include_router(settings.router)
router.include_router(admin_users.router)
router.include_router(access.router)
router.include_router(deals.router)
router.include_router(copilot.router)
router.include_router(chat.router)
router.include_router(research.router)
router.include_router(stocks.router)
router.include_router(notes.router)
