"""Completion pipeline: request shaping for both upstreams and response translation."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from config import AppConfig
from errors import MalformedFrame, StreamAborted, UpstreamError
from models import ModelQuirks
from sse_handler import (
    ChunkFormatter,
    Delta,
    DeltaTranslator,
    SSEStreamer,
    iter_frames,
    parse_frame,
    sse_data,
    sse_done,
)
from upstream import AUTH_GATEWAY, AUTH_TOKEN, UpstreamClient, UpstreamRequest

log = logging.getLogger("cody_proxy")

CODY_PROMPT = (
    "You are Cody, an AI coding assistant from Sourcegraph."
    "If your answer contains fenced code blocks in Markdown, include the relevant full file path "
    "in the code block tag using this structure: ```$LANGUAGE:$FILEPATH```\n"
    "For executable terminal commands: enclose each command in individual \"bash\" language code "
    "block without comments and new lines inside."
)

_SPEAKERS = {"user": "human", "assistant": "assistant", "system": "system"}


@dataclass(frozen=True)
class ChatMessage:
    role: str
    text: str


@dataclass(frozen=True)
class GenerationParameters:
    temperature: float = 0.2
    top_p: float = -1
    top_k: int = -1
    max_tokens: int = 4000

    @classmethod
    def from_openai(cls, body: Dict[str, Any]) -> GenerationParameters:
        """Take OpenAI sampling fields; absent or zero values keep the defaults."""
        d = cls()
        return cls(
            temperature=body.get("temperature") or d.temperature,
            top_p=body.get("top_p") or d.top_p,
            top_k=body.get("top_k") or d.top_k,
            max_tokens=body.get("max_tokens") or d.max_tokens,
        )


@dataclass(frozen=True)
class CompletionRequest:
    """Normalized inbound request, already resolved to a backend model."""

    backend_model_id: str
    messages: Tuple[ChatMessage, ...]
    parameters: GenerationParameters = GenerationParameters()
    stream_requested: bool = True
    model_name: str = ""
    quirks: ModelQuirks = field(default_factory=ModelQuirks)

    @property
    def response_model(self) -> str:
        return self.model_name or self.backend_model_id


def build_stream_request(req: CompletionRequest, config: AppConfig) -> UpstreamRequest:
    """Request for the sourcegraph.com completions/stream endpoint (speaker/text messages)."""
    messages: List[Dict[str, Any]] = [{"speaker": "system", "text": CODY_PROMPT}]
    for m in req.messages:
        msg: Dict[str, Any] = {"speaker": _SPEAKERS.get(m.role, "assistant")}
        if m.text:
            msg["text"] = m.text.strip()
        messages.append(msg)
    if req.quirks.last_message_assistant:
        messages.append({"speaker": "assistant"})

    p = req.parameters
    payload: Dict[str, Any] = {
        "temperature": p.temperature,
        "maxTokensToSample": p.max_tokens,
        "topK": p.top_k,
        "topP": p.top_p,
        "model": req.backend_model_id,
        "messages": messages,
    }
    if req.quirks.no_streaming:
        payload["stream"] = False

    return UpstreamRequest(
        method="POST",
        url=f"{config.sourcegraph_base_url}completions/stream",
        auth_scheme=AUTH_TOKEN,
        json=payload,
        params={
            "api-version": 9,
            "client-name": "vscode",
            "client-version": config.client_version,
        },
    )


def build_gateway_request(req: CompletionRequest, config: AppConfig) -> UpstreamRequest:
    """Request for the Cody Gateway anthropic-messages endpoint (content-block messages)."""
    messages: List[Dict[str, Any]] = [
        {"role": "system", "content": [{"type": "text", "text": CODY_PROMPT}]}
    ]
    for m in req.messages:
        messages.append({"role": m.role, "content": [{"type": "text", "text": m.text or ""}]})

    p = req.parameters
    payload: Dict[str, Any] = {
        "model": req.backend_model_id,
        "messages": messages,
        "temperature": p.temperature,
        "max_tokens": p.max_tokens,
        "top_k": p.top_k,
        "top_p": p.top_p,
        "stream": True,
    }
    return UpstreamRequest(
        method="POST",
        url=f"{config.gateway_base_url}v1/completions/anthropic-messages",
        auth_scheme=AUTH_GATEWAY,
        json=payload,
        headers={
            "Content-Type": "application/json; charset=utf-8",
            "Accept": "*/*",
            "x-sourcegraph-feature": "chat_completions",
        },
    )


def build_upstream_request(req: CompletionRequest, config: AppConfig) -> UpstreamRequest:
    if req.quirks.gateway:
        return build_gateway_request(req, config)
    return build_stream_request(req, config)


class CompletionService:
    """Runs one completion against the upstream and translates the answer."""

    def __init__(
        self,
        config: AppConfig,
        upstream: UpstreamClient,
        *,
        formatter_factory: Callable[[str], ChunkFormatter] = ChunkFormatter,
    ) -> None:
        self._config = config
        self._upstream = upstream
        self._formatter_factory = formatter_factory

    async def open(self, client: httpx.AsyncClient, req: CompletionRequest) -> httpx.Response:
        """
        Dispatch the upstream call and return the successful response.

        Raises AllKeysExhausted or UpstreamError before anything is sent to the client.
        """
        upstream_req = build_upstream_request(req, self._config)
        if self._config.debug:
            log.debug(
                "Params url=%s %s",
                upstream_req.url,
                json.dumps({k: v for k, v in (upstream_req.json or {}).items() if k != "messages"}),
            )

        resp = await self._upstream.send(client, upstream_req, stream=not req.quirks.no_streaming)
        if resp.status_code != 200:
            snippet = await self._upstream.read_error_snippet(resp)
            await resp.aclose()
            log.error("Upstream rejected completion status=%s body=%s", resp.status_code, snippet[:500])
            raise UpstreamError(resp.status_code, snippet or f"Bad response: {resp.status_code}")
        return resp

    async def deltas(self, resp: httpx.Response, req: CompletionRequest) -> AsyncGenerator[Delta, None]:
        """Yield incremental deltas in arrival order, ending with exactly one terminal delta."""
        if req.quirks.no_streaming:
            data = json.loads(await resp.aread())
            completion = data.get("completion") if isinstance(data, dict) else None
            if not completion:
                raise UpstreamError(500, "Error getting data from cody")
            yield Delta(str(completion))
            yield Delta("", terminal=True)
            return

        translator = DeltaTranslator()
        async for frame in iter_frames(resp.aiter_bytes()):
            try:
                event = parse_frame(frame)
            except MalformedFrame as e:
                log.warning("Skipping malformed upstream frame: %s frame=%r", e, frame[:200])
                continue
            delta = translator.translate(event)
            if delta is None:
                continue
            yield delta
            if delta.terminal:
                return

        log.warning("Upstream stream ended without a terminal event model=%s", req.backend_model_id)
        yield Delta("", terminal=True)

    async def stream_events(
        self,
        client: httpx.AsyncClient,
        resp: httpx.Response,
        req: CompletionRequest,
        *,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncGenerator[bytes, None]:
        """
        Canonical SSE bytes for the client.

        Closes the upstream response on every exit path, including client disconnect.
        """
        formatter = self._formatter_factory(req.response_model)
        try:
            async for delta in self.deltas(resp, req):
                if is_disconnected is not None and await is_disconnected():
                    raise StreamAborted()
                yield sse_data(formatter.chunk(delta))
            yield sse_done()
        except StreamAborted:
            log.info("Client disconnected; aborting upstream model=%s", req.backend_model_id)
        except asyncio.CancelledError:
            log.info("Stream cancelled; aborting upstream model=%s", req.backend_model_id)
            raise
        except (UpstreamError, httpx.HTTPError, ValueError) as e:
            log.warning("Upstream stream failed model=%s err=%r", req.backend_model_id, e)
            async for b in SSEStreamer.error_response(f"Error streaming data: {e}", req.response_model):
                yield b
        finally:
            with contextlib.suppress(Exception):
                await resp.aclose()
            with contextlib.suppress(Exception):
                await client.aclose()

    async def complete(
        self, client: httpx.AsyncClient, resp: httpx.Response, req: CompletionRequest
    ) -> Dict[str, Any]:
        """Accumulate all deltas and return one chat.completion object."""
        parts: List[str] = []
        try:
            async for delta in self.deltas(resp, req):
                parts.append(delta.text)
        finally:
            with contextlib.suppress(Exception):
                await resp.aclose()
            with contextlib.suppress(Exception):
                await client.aclose()
        text = "".join(parts)
        if not text:
            raise UpstreamError(500, "Error getting data from cody")
        return self._formatter_factory(req.response_model).completion(text)
