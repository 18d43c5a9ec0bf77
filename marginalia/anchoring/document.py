"""Rendered rich-text document model.

A small tree mirroring what the editor renders: container blocks hold
blocks, textblocks hold inline content, text nodes carry marks.

Positions follow the editor convention: the document's content starts at
0, entering a non-leaf node consumes one token, a text node spans its
characters, leaving a non-leaf node consumes one token, and leaf nodes
(images, hard breaks, rules) are size 1.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

TEXTBLOCKS = frozenset({"paragraph", "heading"})
CONTAINERS = frozenset({"doc", "blockquote", "bullet_list", "ordered_list", "list_item"})
LEAF_BLOCKS = frozenset({"horizontal_rule"})
INLINE_LEAVES = frozenset({"image", "hard_break"})

# Serialization order, innermost first
_MARK_ORDER = ("code", "strike", "italic", "bold", "link")


@dataclass(frozen=True)
class Mark:
    type: str  # bold, italic, strike, code, link
    href: str | None = None


@dataclass
class Node:
    type: str
    text: str = ""
    children: list[Node] = field(default_factory=list)
    marks: tuple[Mark, ...] = ()
    attrs: dict[str, Any] = field(default_factory=dict)

    @property
    def is_text(self) -> bool:
        return self.type == "text"

    @property
    def is_textblock(self) -> bool:
        return self.type in TEXTBLOCKS

    @property
    def is_block(self) -> bool:
        return self.type in TEXTBLOCKS or self.type in CONTAINERS or self.type in LEAF_BLOCKS

    @property
    def is_leaf(self) -> bool:
        return self.type in LEAF_BLOCKS or self.type in INLINE_LEAVES

    @property
    def node_size(self) -> int:
        if self.is_text:
            return len(self.text)
        if self.is_leaf:
            return 1
        return 2 + sum(child.node_size for child in self.children)

    @property
    def content_size(self) -> int:
        return sum(child.node_size for child in self.children)

    def descendants(self, start: int = 0) -> Iterator[tuple[Node, int]]:
        """Yield (node, pos) for every descendant in document order."""
        pos = start
        for child in self.children:
            yield child, pos
            if not child.is_text and not child.is_leaf:
                yield from child.descendants(pos + 1)
            pos += child.node_size

    def text_content(self) -> str:
        if self.is_text:
            return self.text
        return "".join(child.text_content() for child, _ in self.descendants() if child.is_text)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def _inline(parts: tuple[Node | str, ...]) -> list[Node]:
    return [text(p) if isinstance(p, str) else p for p in parts]


def doc(*blocks: Node) -> Node:
    return Node("doc", children=list(blocks))


def paragraph(*parts: Node | str) -> Node:
    return Node("paragraph", children=_inline(parts))


def heading(level: int, *parts: Node | str) -> Node:
    return Node("heading", children=_inline(parts), attrs={"level": level})


def blockquote(*blocks: Node) -> Node:
    return Node("blockquote", children=list(blocks))


def list_item(*blocks: Node | str) -> Node:
    return Node(
        "list_item",
        children=[paragraph(b) if isinstance(b, str) else b for b in blocks],
    )


def bullet_list(*items: Node) -> Node:
    return Node("bullet_list", children=list(items))


def ordered_list(*items: Node, start: int = 1) -> Node:
    return Node("ordered_list", children=list(items), attrs={"start": start})


def rule() -> Node:
    return Node("horizontal_rule")


def image(src: str, alt: str = "") -> Node:
    return Node("image", attrs={"src": src, "alt": alt})


def hard_break() -> Node:
    return Node("hard_break")


def text(value: str, *marks: str | Mark) -> Node:
    resolved = tuple(Mark(m) if isinstance(m, str) else m for m in marks)
    return Node("text", text=value, marks=resolved)


def link(value: str, href: str, *marks: str | Mark) -> Node:
    return text(value, *marks, Mark("link", href=href))


# ---------------------------------------------------------------------------
# Markdown serialization
# ---------------------------------------------------------------------------


def to_markdown(node: Node) -> str:
    """Serialize a document the way the editor's markdown export does."""
    if node.type == "doc":
        return "\n\n".join(to_markdown(child) for child in node.children)
    if node.type == "paragraph":
        return _serialize_inline(node.children)
    if node.type == "heading":
        content = _serialize_inline(node.children)
        if not content:
            return ""
        return "#" * node.attrs.get("level", 1) + " " + content
    if node.type == "blockquote":
        inner = "\n\n".join(to_markdown(child) for child in node.children)
        return "\n".join(f"> {line}" if line else ">" for line in inner.split("\n"))
    if node.type == "bullet_list":
        return "\n".join(_serialize_item(item, "- ") for item in node.children)
    if node.type == "ordered_list":
        start = node.attrs.get("start", 1)
        return "\n".join(
            _serialize_item(item, f"{start + i}. ") for i, item in enumerate(node.children)
        )
    if node.type == "list_item":
        return _serialize_item(node, "- ")
    if node.type == "horizontal_rule":
        return "---"
    if node.type == "image":
        return f"![{node.attrs.get('alt', '')}]({node.attrs.get('src', '')})"
    if node.type == "hard_break":
        return "\n"
    if node.is_text:
        return _serialize_inline([node])
    raise ValueError(f"Unsupported node type: {node.type}")


def _serialize_item(item: Node, marker: str) -> str:
    inner = "\n\n".join(to_markdown(child) for child in item.children)
    indent = " " * len(marker)
    lines = inner.split("\n")
    out = [marker + lines[0]]
    out.extend(indent + line if line else "" for line in lines[1:])
    return "\n".join(out)


def _serialize_inline(children: list[Node]) -> str:
    # Merge adjacent runs with identical marks so emphasis isn't split
    merged: list[Node] = []
    for child in children:
        if merged and child.is_text and merged[-1].is_text and merged[-1].marks == child.marks:
            merged[-1] = Node("text", text=merged[-1].text + child.text, marks=child.marks)
        else:
            merged.append(child)

    parts = []
    for child in merged:
        if not child.is_text:
            parts.append(to_markdown(child))
            continue
        out = child.text
        by_type = {m.type: m for m in child.marks}
        for mark_type in _MARK_ORDER:
            mark = by_type.get(mark_type)
            if mark is None:
                continue
            if mark_type == "code":
                out = f"`{out}`"
            elif mark_type == "strike":
                out = f"~~{out}~~"
            elif mark_type == "italic":
                out = f"*{out}*"
            elif mark_type == "bold":
                out = f"**{out}**"
            elif mark_type == "link":
                out = f"[{out}]({mark.href or ''})"
        parts.append(out)
    return "".join(parts)
