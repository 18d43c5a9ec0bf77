"""Flat-text projection and highlight anchoring.

flatten() projects a rendered document into the plain-text coordinate
space the model sees; locate() maps a literal substring back onto
document positions. A miss is expected drift, never an error.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from marginalia.anchoring.document import Node
from marginalia.schemas import Highlight

logger = logging.getLogger(__name__)

HIGHLIGHT_CLASSES: dict[str, str] = {
    "question": "highlight-question",
    "suggestion": "highlight-suggestion",
    "edit": "highlight-edit",
    "voice": "highlight-voice",
    "weakness": "highlight-weakness",
    "evidence": "highlight-evidence",
    "wordiness": "highlight-wordiness",
    "factcheck": "highlight-factcheck",
}


@dataclass(frozen=True)
class TextRun:
    """One text node's span in flat space and in the document."""

    flat_start: int
    pos: int
    length: int

    @property
    def flat_end(self) -> int:
        return self.flat_start + self.length


@dataclass
class FlatText:
    text: str
    runs: list[TextRun] = field(default_factory=list)

    def resolve(self, offset: int) -> int | None:
        """Map a flat offset to a document position.

        End offsets are inclusive, so the offset of a block separator
        resolves to the end of the preceding run.
        """
        for run in self.runs:
            if run.flat_start <= offset <= run.flat_end:
                return run.pos + (offset - run.flat_start)
        return None


@dataclass(frozen=True)
class Anchor:
    found: bool
    start: int = 0
    end: int = 0


@dataclass(frozen=True)
class Placement:
    highlight_id: str
    type: str
    start: int
    end: int
    css_class: str


def flatten(doc: Node) -> FlatText:
    """Project a document onto flat text.

    Text runs contribute their characters; each textblock that holds
    text, after the first such block, is preceded by exactly one newline.
    A hard break followed by text counts as a separator the same way.
    Empty textblocks, rules and images contribute nothing. Leading
    whitespace in a block is kept here but dropped by strip_markdown,
    which reads it as indentation.
    """
    parts: list[str] = []
    runs: list[TextRun] = []
    length = 0
    emitted = False
    pending_block: Node | None = None

    for node, pos in doc.descendants():
        if node.is_textblock or node.type == "hard_break":
            pending_block = node
            continue
        if not node.is_text or not node.text:
            continue
        if pending_block is not None:
            if emitted:
                parts.append("\n")
                length += 1
            pending_block = None
        runs.append(TextRun(flat_start=length, pos=pos, length=len(node.text)))
        parts.append(node.text)
        length += len(node.text)
        emitted = True

    return FlatText(text="".join(parts), runs=runs)


def locate(doc: Node | FlatText, match_text: str) -> Anchor:
    """Find the first exact, case-sensitive occurrence of match_text."""
    flat = doc if isinstance(doc, FlatText) else flatten(doc)
    if not match_text:
        return Anchor(found=False)

    idx = flat.text.find(match_text)
    if idx == -1:
        return Anchor(found=False)

    start = flat.resolve(idx)
    end = flat.resolve(idx + len(match_text))
    if start is None or end is None or end <= start:
        return Anchor(found=False)
    return Anchor(found=True, start=start, end=end)


def place_highlights(doc: Node, highlights: Iterable[Highlight]) -> list[Placement]:
    """Resolve highlights onto the document, dropping the ones that don't fit."""
    flat = flatten(doc)
    placements = []
    for h in highlights:
        if h.dismissed:
            continue
        anchor = locate(flat, h.match_text)
        if not anchor.found:
            logger.debug("Highlight %s not placeable, skipping", h.id)
            continue
        placements.append(
            Placement(
                highlight_id=h.id,
                type=h.type,
                start=anchor.start,
                end=anchor.end,
                css_class=HIGHLIGHT_CLASSES.get(h.type, "highlight-question"),
            )
        )
    return placements
