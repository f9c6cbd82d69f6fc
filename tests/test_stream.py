"""Tests for the incremental stream decoders."""

from __future__ import annotations

import json

import pytest

from council_gateway.gateway.errors import ProtocolError
from council_gateway.gateway.stream import (
    GEMINI_DELTA_POINTER,
    NamedEventDecoder,
    SSEDecoder,
    decode_stream,
    json_pointer,
)


def _sse(*deltas: str, done: bool = True) -> bytes:
    lines = [f"data: {json.dumps({'choices': [{'delta': {'content': d}}]}, ensure_ascii=False)}\n\n" for d in deltas]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def _named(*deltas: str) -> bytes:
    blocks = ['event: message_start\ndata: {"type": "message_start", "message": {"id": "msg_1"}}\n\n']
    for d in deltas:
        payload = {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": d}}
        blocks.append(f"event: content_block_delta\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n")
    blocks.append('event: message_stop\ndata: {"type": "message_stop"}\n\n')
    return "".join(blocks).encode()


def _feed_all(decoder, chunks: list[bytes]) -> list[str]:
    deltas: list[str] = []
    for chunk in chunks:
        deltas.extend(e.delta for e in decoder.feed(chunk))
    deltas.extend(e.delta for e in decoder.finish())
    return deltas


def _split_every(data: bytes, size: int) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


class TestJsonPointer:
    def test_nested(self):
        value = {"choices": [{"delta": {"content": "hi"}}]}
        assert json_pointer(value, "/choices/0/delta/content") == "hi"

    def test_missing_steps(self):
        assert json_pointer({"choices": []}, "/choices/0/delta/content") is None
        assert json_pointer({"a": 1}, "/a/b") is None

    def test_escapes(self):
        assert json_pointer({"a/b": {"~c": 1}}, "/a~1b/~0c") == 1

    def test_root(self):
        assert json_pointer([1], "") == [1]


# ==========================================================================
# Test: SSE decoder
# ==========================================================================


class TestSSEDecoder:
    def test_deltas_in_order(self):
        decoder = SSEDecoder()
        assert _feed_all(decoder, [_sse("Hel", "lo", " world")]) == ["Hel", "lo", " world"]
        assert decoder.done

    @pytest.mark.parametrize("size", [1, 2, 3, 7, 64])
    def test_chunk_boundaries_do_not_matter(self, size):
        data = _sse("Привет", ", ", "мир", "!")
        whole = _feed_all(SSEDecoder(), [data])
        split = _feed_all(SSEDecoder(), _split_every(data, size))
        assert split == whole == ["Привет", ", ", "мир", "!"]

    def test_nothing_after_done(self):
        decoder = SSEDecoder()
        data = _sse("a") + _sse("ignored", done=False)
        assert _feed_all(decoder, [data]) == ["a"]
        assert decoder.feed(b"data: {}\n") == []

    def test_comments_and_blank_data_skipped(self):
        data = b": keep-alive\n\nevent: ping\ndata:\n\n" + _sse("x")
        assert _feed_all(SSEDecoder(), [data]) == ["x"]

    def test_missing_delta_is_empty_string(self):
        data = b'data: {"choices": [{"delta": {"role": "assistant"}}]}\n\n'
        events = SSEDecoder().feed(data)
        assert len(events) == 1
        assert events[0].delta == ""
        assert events[0].raw["choices"][0]["delta"]["role"] == "assistant"

    def test_crlf_line_endings(self):
        data = _sse("a", "b").replace(b"\n", b"\r\n")
        assert _feed_all(SSEDecoder(), [data]) == ["a", "b"]

    def test_malformed_json_raises(self):
        decoder = SSEDecoder()
        with pytest.raises(ProtocolError, match="malformed"):
            decoder.feed(b"data: {not json}\n")

    def test_trailing_line_flushed_on_finish(self):
        decoder = SSEDecoder()
        payload = json.dumps({"choices": [{"delta": {"content": "tail"}}]})
        assert decoder.feed(f"data: {payload}".encode()) == []
        assert [e.delta for e in decoder.finish()] == ["tail"]

    def test_gemini_pointer(self):
        decoder = SSEDecoder(GEMINI_DELTA_POINTER)
        payload = {"candidates": [{"content": {"parts": [{"text": "gem"}]}}]}
        events = decoder.feed(f"data: {json.dumps(payload)}\r\n\r\n".encode())
        assert [e.delta for e in events] == ["gem"]

    def test_invalid_utf8_raises(self):
        with pytest.raises(ProtocolError, match="UTF-8"):
            SSEDecoder().feed(b"data: \xff\xfe\n")


# ==========================================================================
# Test: Named-event decoder
# ==========================================================================


class TestNamedEventDecoder:
    def test_only_content_block_deltas_yield(self):
        decoder = NamedEventDecoder()
        assert _feed_all(decoder, [_named("Hi", " there")]) == ["Hi", " there"]
        assert decoder.done

    @pytest.mark.parametrize("size", [1, 5, 13, 100])
    def test_chunk_boundaries_do_not_matter(self, size):
        data = _named("один", " два", " три")
        assert _feed_all(NamedEventDecoder(), _split_every(data, size)) == ["один", " два", " три"]

    def test_multiline_data_joined_with_newline(self):
        block = (
            "event: content_block_delta\n"
            'data: {"type": "content_block_delta",\n'
            'data:  "delta": {"type": "text_delta", "text": "joined"}}\n\n'
        )
        events = NamedEventDecoder().feed(block.encode())
        assert [e.delta for e in events] == ["joined"]

    def test_event_name_falls_back_to_payload_type(self):
        block = 'data: {"type": "content_block_delta", "delta": {"text": "untyped"}}\n\n'
        assert [e.delta for e in NamedEventDecoder().feed(block.encode())] == ["untyped"]

    def test_pings_and_comments_ignored(self):
        data = b': comment\n\nevent: ping\ndata: {"type": "ping"}\n\n' + _named("x")
        assert _feed_all(NamedEventDecoder(), [data]) == ["x"]

    def test_error_event_raises(self):
        block = b'event: error\ndata: {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}\n\n'
        with pytest.raises(ProtocolError, match="overloaded_error: Overloaded"):
            NamedEventDecoder().feed(block)

    def test_malformed_json_raises(self):
        with pytest.raises(ProtocolError):
            NamedEventDecoder().feed(b"event: content_block_delta\ndata: {oops\n\n")


# ==========================================================================
# Test: decode_stream
# ==========================================================================


class TestDecodeStream:
    @pytest.mark.asyncio
    async def test_async_source(self):
        data = _sse("a", "b", "c")

        async def chunks():
            for piece in _split_every(data, 4):
                yield piece

        events = [e.delta async for e in decode_stream(chunks(), SSEDecoder())]
        assert events == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_stops_reading_after_terminal_event(self):
        consumed: list[bytes] = []

        async def chunks():
            for piece in (_named("a"), b"event: content_block_delta\ndata: {never parsed\n\n"):
                consumed.append(piece)
                yield piece

        events = [e.delta async for e in decode_stream(chunks(), NamedEventDecoder())]
        assert events == ["a"]
        assert len(consumed) == 1
