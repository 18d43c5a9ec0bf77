"""Local assistant tools: inline highlights and source citations.

Provides:
- LocalTool / classify_tool: dispatch arm for a tool name. Anything that
  isn't a local tool is routed to the external tool gateway.
- HIGHLIGHT_TOOL / CITE_SOURCE_TOOL: Anthropic tool definitions
- build_highlight / build_source: turn parsed tool input into records
- acknowledgement(): the tool_result text sent back for local tools
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from pydantic import ValidationError

from marginalia.schemas import HIGHLIGHT_TYPES, Highlight, Source

logger = logging.getLogger(__name__)


class LocalTool(str, Enum):
    ADD_HIGHLIGHT = "add_highlight"
    CITE_SOURCE = "cite_source"


def classify_tool(name: str) -> LocalTool | None:
    """Local tool for name, or None when the call belongs to the gateway."""
    try:
        return LocalTool(name)
    except ValueError:
        return None


HIGHLIGHT_TOOL: dict[str, Any] = {
    "name": LocalTool.ADD_HIGHLIGHT.value,
    "description": (
        "Highlight a passage in the writer's text to ask a question, make a suggestion, "
        "or propose an edit. The matchText MUST be an exact verbatim substring from the "
        "document. Use sparingly (1-4 per response)."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "type": {
                "type": "string",
                "enum": list(HIGHLIGHT_TYPES),
                "description": (
                    "question = unclear intent or asks for clarification, "
                    "suggestion = structural or conceptual improvement, "
                    "edit = specific text replacement, "
                    "voice = passage sounds different from the writer's established voice, "
                    "weakness = the weakest argument or thinnest section, "
                    "evidence = where specific examples/data/anecdotes would strengthen, "
                    "wordiness = passage could say the same in fewer words "
                    "(provide suggestedEdit with tightened version), "
                    "factcheck = claim that may need citation or could be factually wrong"
                ),
            },
            "matchText": {
                "type": "string",
                "description": (
                    "EXACT verbatim substring from the document to highlight. "
                    "Must match character-for-character."
                ),
            },
            "comment": {
                "type": "string",
                "description": "The question, suggestion, or explanation shown to the writer.",
            },
            "suggestedEdit": {
                "type": "string",
                "description": "Replacement text. Provide for type=edit and type=wordiness.",
            },
        },
        "required": ["type", "matchText", "comment"],
    },
}

CITE_SOURCE_TOOL: dict[str, Any] = {
    "name": LocalTool.CITE_SOURCE.value,
    "description": (
        "Cite a source you referenced or found. Call this for each distinct source URL you mention."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "url": {"type": "string", "description": "The URL of the source"},
            "title": {"type": "string", "description": "A short descriptive title"},
        },
        "required": ["url", "title"],
    },
}

LOCAL_TOOLS: list[dict[str, Any]] = [HIGHLIGHT_TOOL, CITE_SOURCE_TOOL]

HIGHLIGHT_ACK = "Highlight added successfully."


def build_highlight(tool_input: dict[str, Any]) -> Highlight | None:
    """Validate add_highlight input into a Highlight with a fresh id.

    Returns None (and logs) for unknown types or missing fields.
    """
    if tool_input.get("type") not in HIGHLIGHT_TYPES:
        logger.warning("Dropping highlight with unknown type %r", tool_input.get("type"))
        return None
    match_text = tool_input.get("matchText")
    comment = tool_input.get("comment")
    if not isinstance(match_text, str) or not match_text or not isinstance(comment, str):
        logger.warning("Dropping highlight with missing matchText or comment")
        return None
    try:
        return Highlight(
            type=tool_input["type"],
            match_text=match_text,
            comment=comment,
            suggested_edit=tool_input.get("suggestedEdit") or None,
        )
    except ValidationError as e:
        logger.warning("Invalid highlight input: %s", e)
        return None


def build_source(tool_input: dict[str, Any]) -> Source | None:
    url = tool_input.get("url")
    if not isinstance(url, str) or not url:
        logger.warning("Dropping cite_source call without url")
        return None
    title = tool_input.get("title")
    return Source(url=url, title=title if isinstance(title, str) and title else url)


def acknowledgement(tool: LocalTool, tool_input: dict[str, Any]) -> str:
    """tool_result content for a local tool call."""
    if tool is LocalTool.ADD_HIGHLIGHT:
        return HIGHLIGHT_ACK
    return f"Source cited: {tool_input.get('title') or tool_input.get('url')}"
