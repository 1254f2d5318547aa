"""Upstream Sourcegraph API communication with credential rotation."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import re
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Optional, Set

import httpx

from config import AppConfig
from errors import AllKeysExhausted, UpstreamError
from key_pool import KeyPool
from logger import mask_secret

log = logging.getLogger("cody_proxy")

DEFAULT_RETRY_AFTER_S = 60

AUTH_TOKEN = "token"
AUTH_GATEWAY = "gateway"

_DOTCOM_TOKEN_RE = re.compile(
    r"^(?:sgph?_)?(?:[\da-fA-F]{16}_|local_)?(?P<hexbytes>[\da-fA-F]{40})$"
)


def dotcom_token_to_gateway_token(dotcom_token: str) -> Optional[str]:
    """
    Derive a Cody Gateway token from a sourcegraph.com access token.

    The gateway expects "sgd_" + hex(sha256(sha256(raw token bytes))).
    Returns None when the token is not in the dotcom format.
    """
    match = _DOTCOM_TOKEN_RE.match(dotcom_token or "")
    if not match:
        return None
    raw = bytes.fromhex(match.group("hexbytes"))
    return "sgd_" + hashlib.sha256(hashlib.sha256(raw).digest()).hexdigest()


def make_random_traceparent() -> str:
    """W3C traceparent header with random trace and parent ids."""
    return f"00-{uuid.uuid4().hex}-{secrets.token_hex(8)}-01"


def parse_retry_after(value: Optional[str], now: float) -> int:
    """
    Parse a 429 `retry-after` header into whole seconds.

    - missing / unparseable -> DEFAULT_RETRY_AFTER_S
    - integer string        -> that many seconds
    - HTTP date             -> seconds from now, 0 when the date is already past
    """
    if value is None:
        return DEFAULT_RETRY_AFTER_S
    value = value.strip()
    if not value:
        return DEFAULT_RETRY_AFTER_S
    try:
        return max(0, int(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        log.warning("Unparseable retry-after header %r, using %ss", value, DEFAULT_RETRY_AFTER_S)
        return DEFAULT_RETRY_AFTER_S
    if when is None:
        return DEFAULT_RETRY_AFTER_S
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    # A date in the past is "already expired", not the ban sentinel.
    return max(0, math.ceil(when.timestamp() - now))


@dataclass(frozen=True)
class UpstreamRequest:
    """Everything needed to (re)issue one upstream call; safe to replay."""

    method: str
    url: str
    auth_scheme: str = AUTH_TOKEN
    json: Optional[Dict[str, Any]] = None
    params: Dict[str, Any] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)


class UpstreamClient:
    """Dispatch upstream calls, rotating credentials on HTTP 429."""

    def __init__(
        self,
        config: AppConfig,
        key_pool: KeyPool,
        *,
        traceparent_factory: Callable[[], str] = make_random_traceparent,
        interaction_id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._config = config
        self._key_pool = key_pool
        self._traceparent_factory = traceparent_factory
        self._interaction_id_factory = interaction_id_factory

    @property
    def key_pool(self) -> KeyPool:
        return self._key_pool

    def get_headers(self) -> Dict[str, str]:
        """Default headers shared by every upstream call."""
        return {
            "Content-Type": "application/json",
            "Accept-Encoding": "gzip,deflate",
            "Pragma": "no-cache",
            "Cache-Control": "no-cache",
            "User-Agent": self._config.user_agent,
            "x-requested-with": f"vscode {self._config.client_version}",
        }

    def get_proxy_url(self) -> str | None:
        """
        Get proxy URL for httpx AsyncClient.

        Returns HTTPS proxy if set (preferred for HTTPS API calls),
        otherwise HTTP proxy if set, or None if no proxy configured.
        """
        if self._config.https_proxy:
            log.info("HTTPS proxy configured: %s", self._config.https_proxy)
            return self._config.https_proxy
        if self._config.http_proxy:
            log.info("HTTP proxy configured: %s", self._config.http_proxy)
            return self._config.http_proxy
        return None

    def make_http_client(self) -> httpx.AsyncClient:
        """AsyncClient with connect/write/pool timeouts only; reads may pause indefinitely."""
        t = float(self._config.connect_timeout_s)
        return httpx.AsyncClient(
            timeout=httpx.Timeout(connect=t, write=t, pool=t, read=None),
            proxy=self.get_proxy_url(),
        )

    def authorization_for(self, credential: str, auth_scheme: str) -> str:
        """Translate a credential into the Authorization header for the target upstream."""
        if auth_scheme == AUTH_GATEWAY:
            token = dotcom_token_to_gateway_token(credential)
            if token is None:
                raise UpstreamError(
                    401, f"Credential {mask_secret(credential)} cannot be converted to a gateway token"
                )
            return f"Bearer {token}"
        return f"token {credential}"

    def _attempt_headers(self, request: UpstreamRequest, credential: str) -> Dict[str, str]:
        headers = self.get_headers()
        headers.update(request.headers)
        headers["Authorization"] = self.authorization_for(credential, request.auth_scheme)
        if not request.url.endswith(".json"):
            headers["traceparent"] = self._traceparent_factory()
            headers["x-sourcegraph-interaction-id"] = self._interaction_id_factory()
        return headers

    async def send(
        self,
        client: httpx.AsyncClient,
        request: UpstreamRequest,
        *,
        stream: bool = False,
    ) -> httpx.Response:
        """
        Perform one logical upstream call.

        Every 429 puts the used key into cooldown and retries on the next key;
        at most one attempt per key in the pool, and no key twice. Any other
        status is returned unchanged. Raises AllKeysExhausted when no key is
        left and UpstreamError(502) when the upstream cannot be reached.
        """
        attempts = len(self._key_pool)
        tried: Set[str] = set()
        rate_limited = False
        auth_error: Optional[UpstreamError] = None
        for attempt in range(1, attempts + 1):
            try:
                credential = self._key_pool.select_credential(exclude=tried)
            except AllKeysExhausted:
                if auth_error is not None and not rate_limited:
                    raise auth_error
                raise
            tried.add(credential)

            try:
                headers = self._attempt_headers(request, credential)
            except UpstreamError as e:
                log.warning("Skipping key %s for %s: %s", mask_secret(credential), request.url, e.message)
                auth_error = e
                continue

            req = client.build_request(
                request.method,
                request.url,
                headers=headers,
                params=request.params or None,
                json=request.json,
            )

            t0 = time.time()
            try:
                resp = await client.send(req, stream=stream)
            except httpx.HTTPError as e:
                log.error("Upstream %s %s failed: %r", request.method, request.url, e)
                raise UpstreamError(502, f"Upstream request failed: {e}") from e
            dt = (time.time() - t0) * 1000
            log.info(
                "Upstream %s %s key=%s attempt=%d/%d status=%s ms=%.1f",
                request.method,
                request.url,
                mask_secret(credential),
                attempt,
                attempts,
                resp.status_code,
                dt,
            )

            if resp.status_code != 429:
                if resp.status_code >= 400:
                    log.warning(
                        "Upstream error url=%s status=%s content-type=%s",
                        request.url,
                        resp.status_code,
                        resp.headers.get("content-type", ""),
                    )
                return resp

            retry_after = parse_retry_after(resp.headers.get("retry-after"), self._key_pool.now())
            await resp.aclose()
            self._key_pool.mark_rate_limited(credential, retry_after)
            rate_limited = True

        if auth_error is not None and not rate_limited:
            raise auth_error
        earliest = self._key_pool.ledger.earliest_resume()
        raise AllKeysExhausted(earliest if earliest is not None else self._key_pool.now())

    @staticmethod
    async def read_error_snippet(
        resp: httpx.Response, limit: int = 2000, timeout_s: float = 2.0
    ) -> str:
        """Best-effort: read small error body without risking a hang."""
        try:
            raw = await asyncio.wait_for(resp.aread(), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.HTTPError):
            return ""
        return raw.decode("utf-8", errors="replace")[:limit]
