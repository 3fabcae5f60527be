"""Pydantic schemas for authentication, profile and admin endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, EmailStr, Field

from src.app.models.user import AppRole

MIN_PASSWORD_LENGTH = 6


class LoginRequest(BaseModel):
    """Request schema for user login."""

    email: EmailStr = Field(..., description="User email address")
    password: str = Field(..., min_length=1, description="User password")


class TokenResponse(BaseModel):
    """Response schema with access and refresh tokens."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class TokenRefreshRequest(BaseModel):
    """Request schema to refresh an access token."""

    refresh_token: str = Field(..., description="Valid refresh token")


class PasswordChange(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)


class ApiKeyCreate(BaseModel):
    """Request schema for creating a new API key."""

    name: str = Field(..., min_length=1, max_length=200, description="Human-readable name for the API key")


class ApiKeyResponse(BaseModel):
    """Response schema for a newly created API key.

    The `key` field is only returned at creation time; it cannot be
    retrieved later.
    """

    id: str
    name: str
    key: str  # Only returned on creation
    created_at: datetime | None = None


class UserResponse(BaseModel):
    """Response schema for current user info."""

    id: str
    email: str
    display_name: str | None = None
    role: str
    onboarding_completed: bool = False


class ProfileResponse(BaseModel):
    id: str
    email: str
    display_name: str | None = None
    identity: str | None = None
    notion_connected: bool = False
    onboarding_completed: bool = False


class ProfileUpdate(BaseModel):
    display_name: str | None = None
    identity: str | None = None
    notion_api_key: str | None = None


class NotionKeyTest(BaseModel):
    apiKey: str = ""


class NotionKeyTestResult(BaseModel):
    success: bool
    user: str | None = None
    error: str | None = None


class AdminUserCreate(BaseModel):
    """Invite a user with an initial password and role."""

    email: EmailStr
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)
    display_name: str | None = None
    role: AppRole = AppRole.user


class RoleUpdate(BaseModel):
    role: AppRole


class PasswordReset(BaseModel):
    new_password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)


class AdminUserResponse(BaseModel):
    id: str
    email: str
    display_name: str | None = None
    role: str
    is_active: bool = True
    created_at: datetime | None = None
