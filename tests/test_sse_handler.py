"""
Tests for SSE (Server-Sent Events) handler module.

Tests cover:
- Frame decoding across arbitrary chunk boundaries
- Frame parsing and malformed frames
- Delta translation for cumulative, delta and content-block events
- OpenAI chunk formatting and error responses
"""

import json
import random

import pytest

from errors import MalformedFrame, UpstreamError
from sse_handler import (
    ChunkFormatter,
    Delta,
    DeltaTranslator,
    FrameDecoder,
    SSEStreamer,
    UpstreamEvent,
    iter_frames,
    parse_frame,
    sse_data,
    sse_done,
)


def _frame(kind: str, data: dict) -> bytes:
    return f"event: {kind}\ndata: {json.dumps(data)}\n\n".encode("utf-8")


STREAM = b"".join(
    [
        _frame("completion", {"completion": "Hel"}),
        _frame("completion", {"completion": "Hello"}),
        _frame("completion", {"completion": "Hello! éè \U0001f600"}),
        _frame("done", {}),
    ]
)


# ============================================================================
# FrameDecoder Tests
# ============================================================================

class TestFrameDecoder:
    """Test blank-line frame splitting."""

    def test_single_chunk(self):
        decoder = FrameDecoder()
        frames = decoder.feed(STREAM)
        assert len(frames) == 4
        assert decoder.flush() is None

    def test_partial_frame_is_retained(self):
        decoder = FrameDecoder()
        assert decoder.feed(b"event: completion\ndata: {\"compl") == []
        frames = decoder.feed(b"etion\": \"x\"}\n\nevent: done")
        assert frames == [b"event: completion\ndata: {\"completion\": \"x\"}"]
        assert decoder.flush() == b"event: done"

    def test_delimiter_split_across_chunks(self):
        decoder = FrameDecoder()
        assert decoder.feed(b"event: done\ndata: {}\n") == []
        assert decoder.feed(b"\n") == [b"event: done\ndata: {}"]

    def test_blank_frames_dropped(self):
        decoder = FrameDecoder()
        assert decoder.feed(b"\n\n\n\nevent: done\ndata: {}\n\n") == [b"event: done\ndata: {}"]

    @pytest.mark.parametrize("seed", range(10))
    def test_arbitrary_split_matches_single_delivery(self, seed):
        rng = random.Random(seed)
        expected = FrameDecoder().feed(STREAM)

        cuts = sorted(rng.sample(range(1, len(STREAM)), rng.randint(1, 25)))
        chunks = [STREAM[a:b] for a, b in zip([0] + cuts, cuts + [len(STREAM)])]

        decoder = FrameDecoder()
        frames = []
        for c in chunks:
            frames.extend(decoder.feed(c))
        assert decoder.flush() is None
        assert frames == expected

    @pytest.mark.asyncio
    async def test_iter_frames_yields_tail(self):
        async def byte_iter():
            yield b"event: completion\ndata: {\"deltaText\": \"a\"}\n\neve"
            yield b"nt: done\ndata: {}"

        frames = [f async for f in iter_frames(byte_iter())]
        assert frames == [b"event: completion\ndata: {\"deltaText\": \"a\"}", b"event: done\ndata: {}"]


# ============================================================================
# parse_frame Tests
# ============================================================================

class TestParseFrame:
    """Test upstream frame parsing."""

    def test_completion_event(self):
        ev = parse_frame(b"event: completion\ndata: {\"completion\": \"hi\"}")
        assert ev == UpstreamEvent(kind="completion", data={"completion": "hi"})

    def test_crlf_lines(self):
        ev = parse_frame(b"event: done\r\ndata: {}\r")
        assert ev.kind == "done"
        assert ev.data == {}

    def test_event_without_data(self):
        assert parse_frame(b"event: ping").data == {}

    def test_missing_event_marker(self):
        with pytest.raises(MalformedFrame):
            parse_frame(b"data: {\"completion\": \"hi\"}")

    def test_invalid_json(self):
        with pytest.raises(MalformedFrame):
            parse_frame(b"event: completion\ndata: {not json")

    def test_non_object_json(self):
        with pytest.raises(MalformedFrame):
            parse_frame(b"event: completion\ndata: [1, 2]")


# ============================================================================
# DeltaTranslator Tests
# ============================================================================

class TestDeltaTranslator:
    """Test normalization of upstream shapes into incremental text."""

    def test_cumulative_completion(self):
        t = DeltaTranslator()
        out = [
            t.translate(UpstreamEvent("completion", {"completion": s})).text
            for s in ("Hel", "Hello", "Hello!")
        ]
        assert out == ["Hel", "lo", "!"]
        assert t.previous_length == 6

    def test_delta_text_passes_through_without_touching_counter(self):
        t = DeltaTranslator()
        assert t.translate(UpstreamEvent("completion", {"deltaText": "abc"})) == Delta("abc")
        assert t.previous_length == 0

    def test_gateway_content_block_delta(self):
        t = DeltaTranslator()
        ev = UpstreamEvent("content_block_delta", {"type": "content_block_delta", "index": 0,
                                                   "delta": {"type": "text_delta", "text": "Hi"}})
        assert t.translate(ev) == Delta("Hi")

    @pytest.mark.parametrize("kind", ["done", "content_block_stop"])
    def test_terminal_events(self, kind):
        t = DeltaTranslator()
        assert t.translate(UpstreamEvent(kind, {})) == Delta("", terminal=True)
        # nothing after the terminal event
        assert t.translate(UpstreamEvent("completion", {"deltaText": "late"})) is None

    def test_ignored_events(self):
        t = DeltaTranslator()
        assert t.translate(UpstreamEvent("message_start", {"type": "message_start"})) is None
        assert t.translate(UpstreamEvent("ping", {})) is None
        assert t.translate(UpstreamEvent("completion", {"stopReason": "stop"})) is None

    def test_error_event_raises(self):
        t = DeltaTranslator()
        with pytest.raises(UpstreamError) as exc_info:
            t.translate(UpstreamEvent("error", {"error": "rate limited"}))
        assert "rate limited" in exc_info.value.message

    def test_reset(self):
        t = DeltaTranslator()
        t.translate(UpstreamEvent("completion", {"completion": "abc"}))
        t.translate(UpstreamEvent("done", {}))
        t.reset()
        assert t.translate(UpstreamEvent("completion", {"completion": "xy"})) == Delta("xy")

    def test_concatenated_deltas_equal_final_text(self):
        t = DeltaTranslator()
        frames = FrameDecoder().feed(STREAM)
        parts = []
        final = ""
        for f in frames:
            ev = parse_frame(f)
            if "completion" in ev.data:
                final = ev.data["completion"]
            d = t.translate(ev)
            parts.append(d.text)
        assert "".join(parts) == final


# ============================================================================
# Formatting Tests
# ============================================================================

class TestChunkFormatter:
    """Test canonical OpenAI objects."""

    @pytest.fixture
    def formatter(self):
        return ChunkFormatter("Claude 3 Opus", id_factory=lambda: "chatcmpl-1", clock=lambda: 12345.9)

    def test_chunk(self, formatter):
        chunk = formatter.chunk(Delta("hi"))
        assert chunk == {
            "id": "chatcmpl-1",
            "object": "chat.completion.chunk",
            "created": 12345,
            "model": "Claude 3 Opus",
            "system_fingerprint": "fp_44709d6fcb",
            "choices": [
                {
                    "index": 0,
                    "delta": {"role": "assistant", "content": "hi"},
                    "logprobs": None,
                    "finish_reason": None,
                }
            ],
        }

    def test_terminal_chunk(self, formatter):
        chunk = formatter.chunk(Delta("", terminal=True))
        assert chunk["choices"][0]["finish_reason"] == "stop"
        assert chunk["choices"][0]["delta"]["content"] == ""

    def test_completion(self, formatter):
        body = formatter.completion("full text")
        assert body["object"] == "chat.completion"
        assert body["choices"][0]["message"] == {"role": "assistant", "content": "full text"}
        assert body["choices"][0]["finish_reason"] == "stop"

    def test_sse_encoding(self):
        assert sse_data({"a": "é"}) == 'data: {"a": "é"}\n\n'.encode("utf-8")
        assert sse_done() == b"data: [DONE]\n\n"

    @pytest.mark.asyncio
    async def test_error_response(self):
        result_bytes = [b async for b in SSEStreamer.error_response("Test error message", "test-model")]

        assert len(result_bytes) == 2
        assert b"[DONE]" in result_bytes[1]
        parsed = json.loads(result_bytes[0].decode("utf-8")[len("data: "):])
        assert parsed["model"] == "test-model"
        assert parsed["choices"][0]["delta"]["content"] == "Test error message"
        assert parsed["choices"][0]["finish_reason"] == "stop"
