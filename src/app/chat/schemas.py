"""Pydantic schemas for the Chat module."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator


class ChatRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class SourceTag(str, Enum):
    """Inline markers the assistant puts in front of sourced sentences."""

    DB = "DB"
    NOTION = "NOTION"
    RESEARCH = "RESEARCH"
    WEB = "WEB"


class ChatMessage(BaseModel):
    role: ChatRole
    content: str


class ChatRequest(BaseModel):
    """The whole conversation so far, oldest first, ending with the user's turn."""

    messages: list[ChatMessage] = Field(min_length=1)

    @field_validator("messages")
    @classmethod
    def _ends_with_user_turn(cls, value: list[ChatMessage]) -> list[ChatMessage]:
        if value[-1].role != ChatRole.USER or not value[-1].content.strip():
            raise ValueError("The last message must be a non-empty user message")
        return value


class ChatReply(BaseModel):
    """A finished assistant turn."""

    content: str = ""
    thinking: str = ""
    sources: list[SourceTag] = Field(default_factory=list)


class ChatStatus(BaseModel):
    """Which knowledge sources the assistant can reach for this user."""

    hasNotion: bool = False
    hasWeb: bool = False
