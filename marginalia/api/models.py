"""Request bodies accepted by the REST layer."""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, ValidationError
from pydantic.alias_generators import to_camel

from marginalia.api.prompts import DEFAULT_TAB

MAX_MESSAGE_CHARS = 6000

ChatMessageText = Annotated[
    str, StringConstraints(strip_whitespace=True, min_length=1, max_length=MAX_MESSAGE_CHARS)
]


class ChatRequest(BaseModel):
    """POST /api/assistant/chat body."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    project_id: UUID
    message: ChatMessageText
    pages: dict[str, str] = Field(default_factory=dict)
    active_tab: str = DEFAULT_TAB


def field_errors(exc: ValidationError) -> list[dict[str, str]]:
    """Flatten a pydantic ValidationError into [{field, message}]."""
    return [
        {"field": ".".join(str(p) for p in err["loc"]) or "body", "message": err["msg"]}
        for err in exc.errors()
    ]
