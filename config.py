"""Configuration management for Cody proxy service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Tuple


def _env_bool(name: str, default: bool) -> bool:
    """Get boolean environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    """Get float environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    """Get integer environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Get string environment variable with fallback."""
    v = os.getenv(name)
    if v is None:
        return default
    return v


def _csv_tuple(name: str) -> Tuple[str, ...]:
    """Parse comma-separated environment variable into an ordered tuple (order matters for rotation)."""
    v = os.getenv(name, "")
    return tuple(x.strip() for x in v.split(",") if x.strip())


def _with_trailing_slash(url: str) -> str:
    return url if url.endswith("/") else url + "/"


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Credential pool (ordered, fixed at startup)
    auth_tokens: Tuple[str, ...]

    # Inbound shared secret; empty disables the check
    proxy_api_key: str

    # Upstream endpoints
    sourcegraph_base_url: str
    gateway_base_url: str
    client_version: str
    user_agent: str

    # Request shaping
    allow_system_message: bool
    debug: bool

    # Model catalog
    remote_models: bool
    refresh_models_s: int

    # Transport
    connect_timeout_s: float
    https_proxy: str
    http_proxy: str

    # Server settings
    port: int
    log_level: str
    log_path: str

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        client_version = _env_str("CODY_VSCODE_VERSION", "1.84.0")
        return cls(
            auth_tokens=_csv_tuple("AUTH_TOKEN"),
            proxy_api_key=_env_str("PROXY_API_KEY", "").strip(),
            sourcegraph_base_url=_with_trailing_slash(
                _env_str("SG_ENDPOINT", "https://sourcegraph.com/.api/")
            ),
            gateway_base_url=_with_trailing_slash(
                _env_str("GATEWAY_ENDPOINT", "https://cody-gateway.sourcegraph.com/")
            ),
            client_version=client_version,
            user_agent=_env_str("USER_AGENT", f"vscode/{client_version} (Node.js v20.18.3)"),
            allow_system_message=_env_bool("ALLOW_SYSTEM_MESSAGE", False),
            debug=_env_bool("DEBUG", False),
            remote_models=_env_bool("REMOTE_MODELS", False),
            refresh_models_s=_env_int("REFRESH_MODELS_S", 1800),
            connect_timeout_s=_env_float("CONNECT_TIMEOUT_S", 30.0),
            https_proxy=_env_str("HTTPS_PROXY", ""),
            http_proxy=_env_str("HTTP_PROXY", ""),
            port=_env_int("PORT", 9090),
            log_level=_env_str("LOG_LEVEL", "INFO").upper().strip(),
            log_path=_env_str("LOG_PATH", "/var/log/cody-proxy/cody-proxy.log"),
        )

    def validate(self) -> None:
        """Validate configuration."""
        if self.connect_timeout_s <= 0:
            raise ValueError("CONNECT_TIMEOUT_S must be > 0")
        if self.refresh_models_s <= 0:
            raise ValueError("REFRESH_MODELS_S must be > 0")
        if not (0 < self.port < 65536):
            raise ValueError("PORT must be in 1..65535")
        if not self.sourcegraph_base_url.startswith(("http://", "https://")):
            raise ValueError("SG_ENDPOINT must be an http(s) URL")
        if not self.gateway_base_url.startswith(("http://", "https://")):
            raise ValueError("GATEWAY_ENDPOINT must be an http(s) URL")
        if not self.log_path:
            raise ValueError("LOG_PATH must be non-empty")
        if not self.user_agent:
            raise ValueError("USER_AGENT must be non-empty")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
