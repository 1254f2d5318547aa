"""
Cody proxy service (OpenAI-compatible) -> Sourcegraph Cody as upstream.

Two upstream shapes:
  - sourcegraph.com completions/stream ("completion"/"done" events, cumulative text)
  - Cody Gateway anthropic-messages ("content_block_delta"/"content_block_stop" events)

A comma-separated AUTH_TOKEN pool is rotated on HTTP 429.
"""

from __future__ import annotations

import contextlib
import secrets
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, Header, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from completions import ChatMessage, CompletionRequest, CompletionService, GenerationParameters
from config import load_config
from errors import AllKeysExhausted, ProxyError, openai_error_body
from key_pool import KeyPool
from logger import setup_logging
from models import ModelCache, ModelCatalog
from upstream import UpstreamClient
from utils import dump_config, load_env_files

# Load environment
load_env_files()

# Load configuration
config = load_config()
config.validate()

# Initialize logging
log = setup_logging(config.log_path, config.log_level)
dump_config(config)

# Process-wide credential pool; NoCredentialsConfigured here is fatal.
key_pool = KeyPool(config.auth_tokens)
upstream_client = UpstreamClient(config, key_pool)
completion_service = CompletionService(config, upstream_client)
model_catalog = ModelCatalog()
model_cache = ModelCache()

_ALLOWED_ROLES = {"user", "assistant", "system"}


async def refresh_remote_models() -> None:
    """Merge the remote supported-models list into the catalog (best-effort)."""
    if not config.remote_models:
        return
    async with upstream_client.make_http_client() as client:
        try:
            models = await model_cache.get_models(client, upstream_client, config)
        except ProxyError as e:
            log.warning("Remote model refresh failed: %s", e.message)
            return
    if models:
        model_catalog.set_remote(models)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Warm up the remote model catalog on startup."""
    with contextlib.suppress(Exception):
        await refresh_remote_models()
    log.info("Proxy is running at http://0.0.0.0:%s/ keys=%d", config.port, len(key_pool))
    yield


app = FastAPI(
    title="cody-proxy",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    """Render every ProxyError as an OpenAI error envelope."""
    log.error(
        "Request failed method=%s path=%s status=%s type=%s message=%s",
        request.method,
        request.url.path,
        exc.status,
        type(exc).__name__,
        exc.message,
    )
    headers: Dict[str, str] = {}
    if isinstance(exc, AllKeysExhausted):
        retry_after = exc.retry_after_s(key_pool.now())
        if retry_after is not None:
            headers["Retry-After"] = str(retry_after)
    return JSONResponse(
        status_code=exc.status,
        content=openai_error_body(exc.status, exc.message),
        headers=headers or None,
    )


def check_inbound_auth(authorization: Optional[str]) -> None:
    """Compare the inbound bearer token with PROXY_API_KEY when one is configured."""
    if not config.proxy_api_key:
        return
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token.strip(), config.proxy_api_key):
        raise ProxyError("Invalid API key", 401)


@app.get("/healthz")
async def healthz() -> Dict[str, Any]:
    """Health check endpoint with key pool status."""
    keys = key_pool.snapshot()
    return {
        "status": "ok",
        "keys_total": len(keys),
        "keys_usable": sum(1 for k in keys if k["usable"]),
        "keys": keys,
    }


@app.get("/v1/models")
async def v1_models(request: Request, authorization: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    """List models that can be requested by display name."""
    check_inbound_auth(authorization)
    client_ip = request.client.host if request.client else "unknown"
    log.info("GET /v1/models from %s", request.headers.get("x-forwarded-for") or client_ip)
    await refresh_remote_models()
    created = int(time.time() * 1000)
    return {
        "object": "list",
        "data": [m.to_openai_model_dict(created) for m in model_catalog.models()],
    }


def parse_completion_request(body: Any) -> CompletionRequest:
    """Validate an OpenAI chat.completions body and resolve the target model."""
    if not isinstance(body, dict):
        raise ProxyError("Invalid JSON body: expected object", 400)

    messages = body.get("messages")
    if not isinstance(messages, list) or not messages:
        raise ProxyError("Invalid request: 'messages' must be a non-empty array", 400)

    parsed: List[ChatMessage] = []
    for m in messages:
        if not isinstance(m, dict) or m.get("role") not in _ALLOWED_ROLES:
            raise ProxyError("Invalid request: each message needs a role of user, assistant or system", 400)
        content = m.get("content")
        if content is not None and not isinstance(content, str):
            raise ProxyError("Invalid request: message content must be a string", 400)
        parsed.append(ChatMessage(role=m["role"], text=content or ""))

    if any(m.role == "system" for m in parsed) and not config.allow_system_message:
        raise ProxyError("Cannot send system messages with Cody Proxy", 400)

    model_name = str(body.get("model") or "").strip()
    model = model_catalog.get(model_name)
    if model is None:
        raise ProxyError("No model selected", 400)

    return CompletionRequest(
        backend_model_id=model.model_id,
        messages=tuple(parsed),
        parameters=GenerationParameters.from_openai(body),
        stream_requested=body.get("stream") is not False,
        model_name=model.name,
        quirks=model.quirks,
    )


@app.post("/v1/chat/completions")
async def v1_chat_completions(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> Response:
    """Handle chat completion requests."""
    check_inbound_auth(authorization)

    try:
        body = await request.json()
    except ValueError:
        raise ProxyError("Invalid JSON body", 400)

    req = parse_completion_request(body)
    log.info(
        "New Completion request for %s backend=%s stream=%s messages=%d",
        req.model_name,
        req.backend_model_id,
        req.stream_requested,
        len(req.messages),
    )

    client = upstream_client.make_http_client()
    try:
        resp = await completion_service.open(client, req)
    except Exception:
        with contextlib.suppress(Exception):
            await client.aclose()
        raise

    if not req.stream_requested:
        return JSONResponse(await completion_service.complete(client, resp, req))

    return StreamingResponse(
        completion_service.stream_events(client, resp, req, is_disconnected=request.is_disconnected),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@app.api_route(
    "/{path:path}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    include_in_schema=False,
)
async def not_implemented(request: Request, path: str) -> JSONResponse:
    """Catch-all for endpoints the proxy does not implement."""
    log.info("Received request for an unimplemented endpoint: %s /%s", request.method, path)
    return JSONResponse(status_code=501, content={"message": "Endpoint not implemented"})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.port, reload=False)
