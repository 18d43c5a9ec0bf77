"""Server-sent event framing for the assistant stream.

Frames are `event: <name>` followed by `data: <json>` and a blank line.
The decoder keeps the last `event:` name until the next one arrives,
defaulting to `text`, buffers partial lines across reads and skips data
lines that aren't valid JSON.
"""

from __future__ import annotations

import codecs
import json
from collections.abc import AsyncIterable
from dataclasses import dataclass
from typing import Any

DEFAULT_EVENT = "text"


def encode_event(name: str, payload: Any) -> str:
    return f"event: {name}\ndata: {json.dumps(payload)}\n\n"


@dataclass(frozen=True)
class DecodedEvent:
    event: str
    data: Any


class SSEDecoder:
    """Incremental decoder; feed it chunks in arrival order."""

    def __init__(self) -> None:
        self._buffer = ""
        self._current_event = DEFAULT_EVENT
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: str | bytes) -> list[DecodedEvent]:
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk
        lines = self._buffer.split("\n")
        # Trailing partial line waits for the next chunk
        self._buffer = lines.pop()

        events = []
        for line in lines:
            line = line.rstrip("\r")
            name, sep, value = line.partition(":")
            if not sep:
                continue
            # One optional space follows the colon
            if value.startswith(" "):
                value = value[1:]
            if name == "event":
                self._current_event = value.strip()
            elif name == "data":
                try:
                    data = json.loads(value)
                except ValueError:
                    continue
                events.append(DecodedEvent(self._current_event, data))
        return events


async def decode_stream(chunks: AsyncIterable[str | bytes]) -> AsyncIterable[DecodedEvent]:
    """Decode an async stream of chunks into events."""
    decoder = SSEDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
