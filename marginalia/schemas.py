"""Pydantic DTOs shared by the assistant pipeline and the storage layer.

Wire format is camelCase (matchText, suggestedEdit); Python attributes
are snake_case. Use model_dump(by_alias=True) for anything that leaves
the process.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal, get_args
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

HighlightType = Literal[
    "question",
    "suggestion",
    "edit",
    "voice",
    "weakness",
    "evidence",
    "wordiness",
    "factcheck",
]
HIGHLIGHT_TYPES: tuple[str, ...] = get_args(HighlightType)

Role = Literal["user", "assistant"]


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Highlight(_WireModel):
    """A typed annotation anchored to a literal text span."""

    id: str = Field(default_factory=lambda: f"h-{uuid4().hex}")
    type: HighlightType
    match_text: str
    comment: str
    suggested_edit: str | None = None
    dismissed: bool = False
    created_at: str = Field(default_factory=_now_iso)

    def to_event(self) -> dict:
        """Payload for the `highlight` stream event."""
        payload = {
            "id": self.id,
            "type": self.type,
            "matchText": self.match_text,
            "comment": self.comment,
        }
        if self.suggested_edit:
            payload["suggestedEdit"] = self.suggested_edit
        return payload


class Source(_WireModel):
    url: str
    title: str


class ConversationMessage(_WireModel):
    role: Role
    content: str
    highlights: list[Highlight] | None = None
    sources: list[Source] | None = None
    timestamp: str = Field(default_factory=_now_iso)

    def to_storage(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ToolCallResult(BaseModel):
    """Outcome of one external tool invocation. Failures are data, not raises."""

    content: str
    is_error: bool = False
