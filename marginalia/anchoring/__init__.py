"""Anchoring — flat-text projection, markdown normalization, highlight placement.

Public API: flatten/locate/place_highlights, strip_markdown, and the
document model builders.
"""

from marginalia.anchoring.anchors import (
    HIGHLIGHT_CLASSES,
    Anchor,
    FlatText,
    Placement,
    TextRun,
    flatten,
    locate,
    place_highlights,
)
from marginalia.anchoring.document import Mark, Node, to_markdown
from marginalia.anchoring.markdown import flatten_pages, strip_markdown

__all__ = [
    "HIGHLIGHT_CLASSES",
    "Anchor",
    "FlatText",
    "Mark",
    "Node",
    "Placement",
    "TextRun",
    "flatten",
    "flatten_pages",
    "locate",
    "place_highlights",
    "strip_markdown",
    "to_markdown",
]
