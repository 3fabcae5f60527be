"""FastAPI dependency injection for database sessions and authentication.

These dependencies are used in endpoint function signatures to inject
the database session, the authenticated user, and admin-only guards.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.database import get_session
from src.app.core.security import validate_api_key, verify_token
from src.app.models.user import AppRole, User, UserRole


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get a database session."""
    async for session in get_session():
        yield session


async def get_user_role(db: AsyncSession, user_id: uuid.UUID | str) -> str:
    """Return "admin" if the user holds the admin role, else "user"."""
    result = await db.execute(
        select(UserRole.role).where(UserRole.user_id == uuid.UUID(str(user_id)))
    )
    roles = set(result.scalars().all())
    return AppRole.admin.value if AppRole.admin.value in roles else AppRole.user.value


async def _load_active_user(db: AsyncSession, user_id: str, detail: str) -> User:
    try:
        uid = uuid.UUID(str(user_id))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)
    result = await db.execute(
        select(User).where(
            User.id == uid,
            User.is_active == True,  # noqa: E712
        )
    )
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)
    return user


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    """Extract and validate the current user from JWT or API key.

    Checks Authorization header for Bearer JWT first, then X-API-Key header.

    Raises:
        HTTPException(401): If no valid authentication is provided.
    """
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        payload = verify_token(auth_header[7:], token_type="access")
        return await _load_active_user(db, payload["sub"], "User not found or inactive")

    api_key = request.headers.get("X-API-Key")
    if api_key:
        user_id = await validate_api_key(db, api_key)
        if not user_id:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid API key",
            )
        return await _load_active_user(db, user_id, "API key user not found or inactive")

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_admin(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Allow only users holding the admin role."""
    role = await get_user_role(db, current_user.id)
    if role != AppRole.admin.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return current_user

