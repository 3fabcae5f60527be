"""Shared test fixtures.

API tests build a minimal FastAPI app around one router, override
get_current_user, and put in-memory repositories on app.state, so no
database is needed.
"""

from __future__ import annotations

import os
import uuid
from unittest.mock import MagicMock

import pytest

# Settings are read at import time by some modules; keep them hermetic.
os.environ.setdefault("FUNCTIONS_BASE_URL", "https://functions.test")
os.environ.setdefault("FUNCTIONS_API_KEY", "test-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")


def make_user(**overrides) -> MagicMock:
    """Mock profile row as returned by get_current_user."""
    user = MagicMock()
    user.id = overrides.get("id", uuid.uuid4())
    user.email = overrides.get("email", "analyst@example.com")
    user.display_name = overrides.get("display_name", "Analyst")
    user.identity = overrides.get("identity")
    user.notion_api_key = overrides.get("notion_api_key")
    user.onboarding_completed = overrides.get("onboarding_completed", False)
    user.is_active = True
    return user


@pytest.fixture
def current_user() -> MagicMock:
    return make_user()
