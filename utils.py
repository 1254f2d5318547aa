"""Utility functions for Cody proxy."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv

from logger import mask_secret

log = logging.getLogger("cody_proxy")


def load_env_files() -> None:
    """Load .env files from program and current directory."""
    this_dir = Path(__file__).resolve().parent
    p1 = this_dir / ".env"
    p2 = Path.cwd() / ".env"

    loaded_any = False
    if p1.exists():
        loaded_any = load_dotenv(dotenv_path=str(p1), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p1))
    else:
        log.info("No .env in program directory: %s", str(p1))

    if p2.exists() and p2 != p1:
        loaded_any = load_dotenv(dotenv_path=str(p2), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p2))
    elif p2 != p1:
        log.info("No .env in current directory: %s", str(p2))

    if not loaded_any:
        log.info(".env not loaded (not found or no variables applied).")


def dump_config(config) -> None:
    """Log effective configuration at startup."""
    log.info("=== Cody proxy startup config ===")
    log.info("AUTH_TOKEN count=%d", len(config.auth_tokens))
    for i, token in enumerate(config.auth_tokens):
        log.info("AUTH_TOKEN[%d]=%s", i, mask_secret(token))
    log.info(
        "PROXY_API_KEY_set=%s value=%s",
        bool(config.proxy_api_key),
        mask_secret(config.proxy_api_key),
    )
    log.info("SG_ENDPOINT=%s", config.sourcegraph_base_url)
    log.info("GATEWAY_ENDPOINT=%s", config.gateway_base_url)
    log.info("CODY_VSCODE_VERSION=%s", config.client_version)
    log.info("USER_AGENT=%s", config.user_agent)
    log.info("ALLOW_SYSTEM_MESSAGE=%s", config.allow_system_message)
    log.info("DEBUG=%s", config.debug)
    log.info("REMOTE_MODELS=%s", config.remote_models)
    log.info("REFRESH_MODELS_S=%s", config.refresh_models_s)
    log.info("CONNECT_TIMEOUT_S=%s (read timeout disabled)", config.connect_timeout_s)
    log.info("HTTPS_PROXY=%s", config.https_proxy or None)
    log.info("HTTP_PROXY=%s", config.http_proxy or None)
    log.info("PORT=%s", config.port)
    log.info("LOG_LEVEL=%s", config.log_level)
    log.info("LOG_PATH=%s", config.log_path)
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("ProgramDir=%s", str(Path(__file__).resolve().parent))
    log.info("===============================")
