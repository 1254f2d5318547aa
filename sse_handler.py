"""Server-Sent Events (SSE) handling: upstream frame decoding and OpenAI chunk encoding."""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Callable, Dict, List, Optional

from errors import MalformedFrame, UpstreamError

log = logging.getLogger("cody_proxy")

FRAME_DELIMITER = b"\n\n"

# Upstream event kinds
EVENT_COMPLETION = "completion"
EVENT_DONE = "done"
EVENT_ERROR = "error"
EVENT_CONTENT_BLOCK_DELTA = "content_block_delta"
EVENT_CONTENT_BLOCK_STOP = "content_block_stop"

TERMINAL_EVENTS = frozenset({EVENT_DONE, EVENT_CONTENT_BLOCK_STOP})

SYSTEM_FINGERPRINT = "fp_44709d6fcb"


class FrameDecoder:
    """
    Split a raw SSE byte stream into complete frames.

    Frames are delimited by a blank line. A frame may arrive split across
    several chunks, and one chunk may carry several frames; the incomplete
    tail is kept until the next feed().
    """

    def __init__(self) -> None:
        self._buffer = b""

    def feed(self, chunk: bytes) -> List[bytes]:
        if not chunk:
            return []
        self._buffer += chunk
        parts = self._buffer.split(FRAME_DELIMITER)
        self._buffer = parts.pop()
        return [p for p in parts if p.strip()]

    def flush(self) -> Optional[bytes]:
        """Return the trailing partial frame at end of stream, if it has content."""
        tail, self._buffer = self._buffer, b""
        return tail if tail.strip() else None


async def iter_frames(byte_iter: AsyncIterator[bytes]) -> AsyncGenerator[bytes, None]:
    """Lazily yield complete frames from an async byte iterator, in arrival order."""
    decoder = FrameDecoder()
    async for chunk in byte_iter:
        for frame in decoder.feed(chunk):
            yield frame
    tail = decoder.flush()
    if tail is not None:
        yield tail


@dataclass(frozen=True)
class UpstreamEvent:
    """One parsed upstream frame: `event:` kind plus the JSON `data:` object."""

    kind: str
    data: Dict[str, Any]


def parse_frame(frame: bytes) -> UpstreamEvent:
    """
    Parse `event: <kind>\\ndata: <json>` into an UpstreamEvent.

    Raises MalformedFrame when the event marker is missing or the data is not a JSON object.
    """
    text = frame.decode("utf-8", errors="replace")
    kind: Optional[str] = None
    data_parts: List[str] = []
    for raw in text.split("\n"):
        line = raw.rstrip("\r")
        if line.startswith("event:"):
            kind = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data_parts.append(line[len("data:"):].lstrip())

    if not kind:
        raise MalformedFrame("Event marker not found", frame)

    payload = "\n".join(data_parts).strip()
    if not payload:
        return UpstreamEvent(kind=kind, data={})
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise MalformedFrame(f"Invalid JSON in {kind!r} event: {e}", frame) from e
    if not isinstance(data, dict):
        raise MalformedFrame(f"Expected JSON object in {kind!r} event", frame)
    return UpstreamEvent(kind=kind, data=data)


@dataclass(frozen=True)
class Delta:
    """Incremental assistant text; terminal marks the end of the response."""

    text: str
    terminal: bool = False


class DeltaTranslator:
    """
    Normalize upstream events into incremental text.

    The stream upstream may send the full completion so far ("completion")
    instead of only new text ("deltaText"); the gateway always sends deltas.
    """

    def __init__(self) -> None:
        self.previous_length = 0
        self.finished = False

    def reset(self) -> None:
        self.previous_length = 0
        self.finished = False

    def translate(self, event: UpstreamEvent) -> Optional[Delta]:
        """Return the delta for an event, or None for events without assistant text."""
        if self.finished:
            return None

        if event.kind in TERMINAL_EVENTS:
            self.finished = True
            return Delta("", terminal=True)

        if event.kind == EVENT_ERROR:
            message = event.data.get("error") or event.data.get("message") or "Upstream stream error"
            raise UpstreamError(502, str(message))

        if event.kind == EVENT_COMPLETION:
            if "deltaText" in event.data:
                return Delta(str(event.data.get("deltaText") or ""))
            if "completion" in event.data:
                full = str(event.data.get("completion") or "")
                delta = full[self.previous_length:]
                self.previous_length = len(full)
                return Delta(delta)
            return None

        if event.kind == EVENT_CONTENT_BLOCK_DELTA:
            d = event.data.get("delta") or {}
            if isinstance(d, dict) and isinstance(d.get("text"), str):
                return Delta(d["text"])
            return None

        # message_start, ping, content_block_start, message_delta, ...
        return None


class ChunkFormatter:
    """Build OpenAI chat.completion(.chunk) objects for one response."""

    def __init__(
        self,
        model: str,
        *,
        id_factory: Optional[Callable[[], str]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.model = model
        self._id_factory = id_factory or (lambda: f"chatcmpl-{uuid.uuid4().hex}")
        self._clock = clock

    def chunk(self, delta: Delta) -> Dict[str, Any]:
        return {
            "id": self._id_factory(),
            "object": "chat.completion.chunk",
            "created": int(self._clock()),
            "model": self.model,
            "system_fingerprint": SYSTEM_FINGERPRINT,
            "choices": [
                {
                    "index": 0,
                    "delta": {"role": "assistant", "content": delta.text},
                    "logprobs": None,
                    "finish_reason": "stop" if delta.terminal else None,
                }
            ],
        }

    def completion(self, content: str) -> Dict[str, Any]:
        return {
            "id": self._id_factory(),
            "object": "chat.completion",
            "created": int(self._clock()),
            "model": self.model,
            "system_fingerprint": SYSTEM_FINGERPRINT,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": content},
                    "logprobs": None,
                    "finish_reason": "stop",
                }
            ],
        }


def sse_data(obj: Dict[str, Any]) -> bytes:
    """Encode dict as an SSE data event."""
    return f"data: {json.dumps(obj, ensure_ascii=False)}\n\n".encode("utf-8")


def sse_done() -> bytes:
    """SSE [DONE] event."""
    return b"data: [DONE]\n\n"


class SSEStreamer:
    """Terminal SSE responses."""

    @staticmethod
    async def error_response(message: str, model_id: str) -> AsyncGenerator[bytes, None]:
        """
        Emit single SSE event with error message, then [DONE].

        Used when a failure happens after the stream was committed to the client,
        so the client still sees a finished response.
        """
        formatter = ChunkFormatter(model_id)
        chunk = formatter.chunk(Delta(message, terminal=True))
        yield sse_data(chunk)
        yield sse_done()
