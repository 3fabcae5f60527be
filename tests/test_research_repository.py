"""Tests for the SQL the research repository builds for item search."""

from __future__ import annotations

import uuid
from unittest.mock import MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from src.app.core.database import escape_like
from src.app.research.repository import ResearchRepository


class CapturingSession:
    """Records executed statements and answers with no rows."""

    def __init__(self) -> None:
        self.statements: list = []

    async def execute(self, statement):
        self.statements.append(statement)
        result = MagicMock()
        result.all.return_value = []
        return result


def make_repository() -> tuple[ResearchRepository, CapturingSession]:
    session = CapturingSession()

    async def session_factory():
        yield session

    return ResearchRepository(session_factory), session


@pytest.mark.parametrize(
    "raw,escaped",
    [
        ("fintech", "fintech"),
        ("100%", "100\\%"),
        ("snake_case", "snake\\_case"),
        ("C:\\temp", "C:\\\\temp"),
    ],
)
def test_escape_like(raw, escaped):
    assert escape_like(raw) == escaped


@pytest.mark.asyncio
async def test_search_items_matches_wildcards_literally():
    repository, session = make_repository()
    assert await repository.search_items(str(uuid.uuid4()), " 100%_up ") == []

    compiled = session.statements[0].compile(dialect=postgresql.dialect())
    assert "ESCAPE" in str(compiled)
    assert "%100\\%\\_up%" in compiled.params.values()


@pytest.mark.asyncio
async def test_short_search_skips_the_query():
    repository, session = make_repository()
    assert await repository.search_items(str(uuid.uuid4()), "a") == []
    assert session.statements == []
