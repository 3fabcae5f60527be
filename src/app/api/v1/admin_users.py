"""Admin user management endpoints.

List, invite, re-role, reset and delete workspace users. Every endpoint
requires the admin role. Deleting a profile cascades to all rows it owns.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.api.deps import get_db, require_admin
from src.app.core.database import parse_uuid
from src.app.core.security import hash_password
from src.app.models.user import AppRole, User, UserRole
from src.app.schemas.auth import (
    AdminUserCreate,
    AdminUserResponse,
    PasswordReset,
    RoleUpdate,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin/users", tags=["admin"])


async def _roles_by_user(db: AsyncSession) -> dict:
    result = await db.execute(select(UserRole.user_id, UserRole.role))
    roles: dict = {}
    for user_id, role in result.all():
        if role == AppRole.admin.value or user_id not in roles:
            roles[user_id] = role
    return roles


def _response(user: User, role: str) -> AdminUserResponse:
    return AdminUserResponse(
        id=str(user.id),
        email=user.email,
        display_name=user.display_name,
        role=role,
        is_active=bool(user.is_active),
        created_at=user.created_at,
    )


async def _get_user(db: AsyncSession, user_id: str) -> User:
    uid = parse_uuid(user_id)
    user = await db.get(User, uid) if uid is not None else None
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


@router.get("", response_model=list[AdminUserResponse])
async def list_users(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(User).order_by(User.created_at.desc()))
    roles = await _roles_by_user(db)
    return [_response(u, roles.get(u.id, AppRole.user.value)) for u in result.scalars().all()]


@router.post("", response_model=AdminUserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    body: AdminUserCreate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Invite a user with an initial password and role."""
    existing = await db.execute(select(User.id).where(User.email == body.email))
    if existing.scalar_one_or_none() is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A user with this email already exists",
        )

    user = User(
        email=body.email,
        display_name=body.display_name,
        hashed_password=hash_password(body.password),
    )
    db.add(user)
    await db.flush()
    db.add(UserRole(user_id=user.id, role=body.role.value))
    await db.commit()
    await db.refresh(user)
    logger.info("admin.user_created", admin_id=str(admin.id), user_id=str(user.id), role=body.role.value)
    return _response(user, body.role.value)


@router.put("/{user_id}/role", response_model=AdminUserResponse)
async def assign_role(
    user_id: str,
    body: RoleUpdate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Replace the user's role assignment."""
    user = await _get_user(db, user_id)
    if user.id == admin.id and body.role != AppRole.admin:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot remove your own admin role",
        )
    await db.execute(delete(UserRole).where(UserRole.user_id == user.id))
    db.add(UserRole(user_id=user.id, role=body.role.value))
    await db.commit()
    logger.info("admin.role_assigned", admin_id=str(admin.id), user_id=user_id, role=body.role.value)
    return _response(user, body.role.value)


@router.post("/{user_id}/password", status_code=status.HTTP_204_NO_CONTENT)
async def reset_password(
    user_id: str,
    body: PasswordReset,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    user = await _get_user(db, user_id)
    user.hashed_password = hash_password(body.new_password)
    await db.commit()
    logger.info("admin.password_reset", admin_id=str(admin.id), user_id=user_id)


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(
    user_id: str,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    user = await _get_user(db, user_id)
    if user.id == admin.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot delete your own account",
        )
    await db.execute(delete(User).where(User.id == user.id))
    await db.commit()
    logger.info("admin.user_deleted", admin_id=str(admin.id), user_id=user_id)
