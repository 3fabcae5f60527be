"""Profile settings, onboarding, and Notion key test endpoints."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.api.deps import get_current_user, get_db
from src.app.models.user import User
from src.app.schemas.auth import (
    NotionKeyTest,
    NotionKeyTestResult,
    ProfileResponse,
    ProfileUpdate,
)
from src.app.services.notion import check_api_key

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/settings", tags=["settings"])


def _profile(user: User) -> ProfileResponse:
    return ProfileResponse(
        id=str(user.id),
        email=user.email,
        display_name=user.display_name,
        identity=user.identity,
        notion_connected=bool(user.notion_api_key),
        onboarding_completed=bool(user.onboarding_completed),
    )


@router.get("/profile", response_model=ProfileResponse)
async def get_profile(current_user: User = Depends(get_current_user)):
    return _profile(current_user)


@router.patch("/profile", response_model=ProfileResponse)
async def update_profile(
    body: ProfileUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Update display name, identity, or the stored Notion key (empty string clears it)."""
    for key, value in body.model_dump(exclude_none=True).items():
        if key == "notion_api_key":
            value = value.strip() or None
        setattr(current_user, key, value)
    db.add(current_user)
    await db.commit()
    await db.refresh(current_user)
    logger.info("settings.profile_updated", user_id=str(current_user.id))
    return _profile(current_user)


@router.post("/onboarding/complete", response_model=ProfileResponse)
async def complete_onboarding(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    current_user.onboarding_completed = True
    db.add(current_user)
    await db.commit()
    await db.refresh(current_user)
    return _profile(current_user)


@router.post("/notion/test", response_model=NotionKeyTestResult, status_code=status.HTTP_200_OK)
async def test_notion_key(body: NotionKeyTest, current_user: User = Depends(get_current_user)):
    """Check a Notion integration key by calling users.me with it."""
    result = await check_api_key(body.apiKey.strip())
    logger.info(
        "settings.notion_key_tested",
        user_id=str(current_user.id),
        success=result["success"],
    )
    return NotionKeyTestResult(**result)
