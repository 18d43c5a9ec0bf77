"""Tests for SSE framing and the incremental decoder."""

import pytest

from marginalia.api.sse import DecodedEvent, SSEDecoder, decode_stream, encode_event


def test_encode_event():
    assert encode_event("text", {"chunk": "hi"}) == 'event: text\ndata: {"chunk": "hi"}\n\n'


class TestSSEDecoder:
    def test_full_frame(self):
        decoder = SSEDecoder()
        events = decoder.feed(encode_event("highlight", {"id": "h1"}))
        assert events == [DecodedEvent("highlight", {"id": "h1"})]

    def test_partial_frame_across_reads(self):
        decoder = SSEDecoder()
        assert decoder.feed('event: highlight\ndata: {"id": ') == []
        assert decoder.feed('"h1"}\n\n') == [DecodedEvent("highlight", {"id": "h1"})]

    def test_event_name_split_across_reads(self):
        decoder = SSEDecoder()
        assert decoder.feed("event: so") == []
        assert decoder.feed('urce\ndata: {"url": "u"}\n') == [DecodedEvent("source", {"url": "u"})]

    def test_default_event_is_text(self):
        decoder = SSEDecoder()
        assert decoder.feed('data: {"chunk": "a"}\n') == [DecodedEvent("text", {"chunk": "a"})]

    def test_event_name_sticks_until_replaced(self):
        decoder = SSEDecoder()
        events = decoder.feed('event: done\ndata: {"messageId": "m"}\n\ndata: {"x": 1}\n')
        assert [e.event for e in events] == ["done", "done"]

    def test_fields_without_space_after_colon(self):
        decoder = SSEDecoder()
        events = decoder.feed('event:highlight\ndata:{"id": "h1"}\n\n')
        assert events == [DecodedEvent("highlight", {"id": "h1"})]

    def test_comment_lines_ignored(self):
        decoder = SSEDecoder()
        assert decoder.feed(': keep-alive\ndata: {"chunk": "a"}\n') == [DecodedEvent("text", {"chunk": "a"})]

    def test_malformed_data_skipped(self):
        decoder = SSEDecoder()
        events = decoder.feed('event: text\ndata: not json\ndata: {"chunk": "b"}\n')
        assert events == [DecodedEvent("text", {"chunk": "b"})]

    def test_multibyte_bytes_split(self):
        decoder = SSEDecoder()
        # json.dumps escapes non-ASCII, so build the frame by hand
        raw = 'data: {"chunk": "é"}\n'.encode()
        cut = raw.index("é".encode()) + 1
        assert decoder.feed(raw[:cut]) == []
        assert decoder.feed(raw[cut:]) == [DecodedEvent("text", {"chunk": "é"})]


@pytest.mark.asyncio
async def test_decode_stream():
    async def chunks():
        yield "event: text\ndata: "
        yield '{"chunk": "Hel'
        yield 'lo"}\n\nevent: done\n'
        yield b'data: {"messageId": "abc"}\n\n'

    events = [e async for e in decode_stream(chunks())]
    assert events == [
        DecodedEvent("text", {"chunk": "Hello"}),
        DecodedEvent("done", {"messageId": "abc"}),
    ]
