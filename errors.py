"""Error taxonomy for Cody proxy and OpenAI-style error envelopes."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_ERROR_TYPES = {
    400: "invalid_request_error",
    401: "authentication_error",
    403: "permission_error",
    404: "not_found_error",
    429: "rate_limit_error",
}


def openai_error_type(status: int) -> str:
    """Map HTTP status to OpenAI error `type` (500 and everything unknown -> server_error)."""
    return _ERROR_TYPES.get(status, "server_error")


def openai_error_body(status: int, message: str) -> Dict[str, Any]:
    """Build the OpenAI error envelope."""
    return {
        "error": {
            "message": message or "Something went wrong",
            "type": openai_error_type(status),
            "param": None,
            "code": None,
        }
    }


def format_instant(ts: Optional[float]) -> str:
    """Render an epoch instant as ISO-8601 UTC; unreachable instants render as 'never'."""
    if ts is None or math.isinf(ts):
        return "never"
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return "never"


class ProxyError(Exception):
    """Base error carrying the HTTP status reported to the client."""

    status: int = 500

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status


class NoCredentialsConfigured(ProxyError):
    """Raised at startup when the credential pool is empty."""

    def __init__(self, message: str = "No token found. Please set your env var AUTH_TOKEN to your token value") -> None:
        super().__init__(message, 500)


class AllKeysExhausted(ProxyError):
    """Every credential in the pool is cooling down."""

    status = 429

    def __init__(self, resume_at: Optional[float]) -> None:
        self.resume_at = resume_at
        super().__init__(
            "No API keys available. All keys are rate limited. "
            f"Next one will become available on {format_instant(resume_at)}."
        )

    def retry_after_s(self, now: float) -> Optional[int]:
        """Seconds until capacity returns, or None when no key will ever come back."""
        if self.resume_at is None or math.isinf(self.resume_at):
            return None
        return max(0, math.ceil(self.resume_at - now))


class MalformedFrame(ProxyError):
    """One upstream SSE frame could not be parsed; callers skip it and continue."""

    def __init__(self, message: str, frame: bytes = b"") -> None:
        super().__init__(message, 502)
        self.frame = frame


class UpstreamError(ProxyError):
    """Non-429 failure reported by the upstream."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message, status)


class StreamAborted(Exception):
    """The inbound client went away; no more writes are attempted."""
