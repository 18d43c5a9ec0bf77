"""Markdown normalizer.

Strips markdown syntax so the model sees plain text matching what
anchors.flatten() produces for the same content rendered in the editor.
Highlight matchText values are only placeable when the two agree.

Order matters for overlapping syntax: images and links first, then
emphasis, then inline code, then per-line block prefixes, then rule
lines, then blank-line collapse.
"""

from __future__ import annotations

import re

_IMAGE = re.compile(r"!\[[^\]\n]*\]\([^)\n]*\)")
_LINK = re.compile(r"\[([^\]\n]*)\]\([^)\n]*\)")
_BOLD_STAR = re.compile(r"\*\*([^*\n]+)\*\*")
_BOLD_UNDERSCORE = re.compile(r"__([^_\n]+)__")
_ITALIC = re.compile(r"(?<!\*)\*([^*\n]+)\*(?!\*)")
_STRIKE = re.compile(r"~~([^~\n]+)~~")
_CODE = re.compile(r"`([^`\n]+)`")

_INDENT = re.compile(r"^[ \t]+")
_QUOTE = re.compile(r"^(?:>[ \t]?)+")
_BULLET = re.compile(r"^[-*+][ \t]+")
_ORDERED = re.compile(r"^\d+\.[ \t]+")
_HEADING = re.compile(r"^#{1,6}[ \t]+")
_RULE = re.compile(r"^(?:-{3,}|\*{3,}|_{3,})$")

_NBSP = re.compile(r"&nbsp;")
_BLANK_RUNS = re.compile(r"\n{2,}")


def _strip_block_prefixes(line: str) -> str:
    # Nested containers stack markers in any order ("- > q", "1. - x")
    while True:
        stripped = _INDENT.sub("", line)
        stripped = _QUOTE.sub("", stripped)
        stripped = _BULLET.sub("", stripped)
        stripped = _ORDERED.sub("", stripped)
        if stripped == line:
            break
        line = stripped
    return _HEADING.sub("", line)


def strip_markdown(markdown: str) -> str:
    """Return the visual plain text of a markdown buffer.

    Leading indentation on a line is not visual text and is dropped.
    """
    out = markdown.replace("\r\n", "\n")
    out = _IMAGE.sub("", out)
    out = _LINK.sub(r"\1", out)
    out = _BOLD_STAR.sub(r"\1", out)
    out = _BOLD_UNDERSCORE.sub(r"\1", out)
    out = _ITALIC.sub(r"\1", out)
    out = _STRIKE.sub(r"\1", out)
    out = _CODE.sub(r"\1", out)

    lines = []
    for line in out.split("\n"):
        line = _strip_block_prefixes(line)
        lines.append("" if _RULE.match(line.rstrip()) else line)
    out = "\n".join(lines)

    out = _NBSP.sub("", out)
    out = _BLANK_RUNS.sub("\n", out)
    return out.strip("\n")


def flatten_pages(pages: dict[str, str]) -> dict[str, str]:
    """Apply strip_markdown to every named buffer."""
    return {name: strip_markdown(content) for name, content in pages.items()}
