"""Model catalog: display name -> backend model id, quirks and remote refresh."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from config import AppConfig
from upstream import AUTH_TOKEN, UpstreamClient, UpstreamRequest

log = logging.getLogger("cody_proxy")


@dataclass(frozen=True)
class ModelQuirks:
    """Per-model request shaping flags."""

    gateway: bool = False
    last_message_assistant: bool = False
    no_streaming: bool = False


@dataclass(frozen=True)
class ModelInfo:
    """A model exposed to OpenAI clients."""

    name: str
    model_id: str
    quirks: ModelQuirks = ModelQuirks()

    def to_openai_model_dict(self, created: int) -> Dict[str, Any]:
        """Convert to the OpenAI /v1/models list entry."""
        return {
            "id": self.name,
            "object": "model",
            "created": created,
            "owned_by": "openai",
            "root": self.model_id,
            "parent": None,
            "permission": [
                {
                    "id": f"modelperm-{self.model_id}",
                    "object": "model_permission",
                    "created": created,
                    "allow_create_engine": False,
                    "allow_sampling": True,
                    "allow_logprobs": True,
                    "allow_search_indices": False,
                    "allow_view": True,
                    "allow_fine_tuning": False,
                    "organization": "*",
                    "group": None,
                    "is_blocking": False,
                }
            ],
        }


_GATEWAY = ModelQuirks(gateway=True)

STATIC_MODELS: List[ModelInfo] = [
    ModelInfo("Mixtral 8x7B", "fireworks/accounts/fireworks/models/mixtral-8x7b-instruct"),
    ModelInfo("Mixtral 8x22B", "fireworks/accounts/fireworks/models/mixtral-8x22b-instruct"),
    ModelInfo("Claude 2.0", "anthropic/claude-2.0"),
    ModelInfo("Claude Instant 1.2", "anthropic/claude-instant-1.2"),
    ModelInfo("Claude 3 Haiku", "anthropic/claude-3-haiku-20240307", _GATEWAY),
    ModelInfo("Claude 3 Sonnet", "anthropic/claude-3-sonnet-20240229", _GATEWAY),
    ModelInfo("Claude 3 Opus", "anthropic/claude-3-opus-20240229", _GATEWAY),
    ModelInfo("GPT 3.5 Turbo", "openai/gpt-3.5-turbo"),
    ModelInfo("GPT 4 Turbo Preview (1106)", "openai/gpt-4-1106-preview"),
    ModelInfo("GPT 4 Turbo Preview", "openai/gpt-4-turbo-preview"),
    ModelInfo("GPT 4 Turbo", "openai/gpt-4-turbo"),
    ModelInfo("GPT-4o", "openai/gpt-4o"),
]


class ModelCatalog:
    """Lookup by display name; optionally refreshed from the remote model config."""

    def __init__(self, models: Optional[List[ModelInfo]] = None) -> None:
        self._static = list(models if models is not None else STATIC_MODELS)
        self._quirks = {m.model_id: m.quirks for m in self._static}
        self._remote: List[ModelInfo] = []

    def models(self) -> List[ModelInfo]:
        by_name = {m.name: m for m in self._static}
        for m in self._remote:
            by_name[m.name] = m
        return list(by_name.values())

    def get(self, name: str) -> Optional[ModelInfo]:
        for m in self.models():
            if m.name == name:
                return m
        return None

    def quirks_for(self, model_id: str) -> ModelQuirks:
        return self._quirks.get(model_id, ModelQuirks())

    def set_remote(self, models: List[ModelInfo]) -> None:
        # remote entries inherit the quirks known for the same backend id
        self._remote = [
            ModelInfo(m.name, m.model_id, self.quirks_for(m.model_id)) for m in models
        ]


class ModelCache:
    """Cache for the remote supported-models list with automatic refresh."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._models: List[ModelInfo] = []
        self._last_fetch = 0.0

    async def get_models(
        self, client: httpx.AsyncClient, upstream: UpstreamClient, config: AppConfig
    ) -> List[ModelInfo]:
        """Get cached models or fetch fresh ones if expired."""
        now = time.time()
        if self._models and (now - self._last_fetch) < config.refresh_models_s:
            return self._models

        async with self._lock:
            now = time.time()
            if self._models and (now - self._last_fetch) < config.refresh_models_s:
                return self._models
            self._models = await self._fetch_models(client, upstream, config)
            self._last_fetch = time.time()
            return self._models

    async def _fetch_models(
        self, client: httpx.AsyncClient, upstream: UpstreamClient, config: AppConfig
    ) -> List[ModelInfo]:
        """Fetch models from the Sourcegraph model config."""
        req = UpstreamRequest(
            method="GET",
            url=f"{config.sourcegraph_base_url}modelconfig/supported-models.json",
            auth_scheme=AUTH_TOKEN,
        )
        t0 = time.time()
        r = await upstream.send(client, req)
        dt = (time.time() - t0) * 1000

        if r.status_code != 200:
            log.error(
                "Upstream supported-models failed status=%s ms=%.1f body=%s",
                r.status_code,
                dt,
                r.text[:500],
            )
            return []

        data = r.json()
        out: List[ModelInfo] = []
        for it in data.get("models") or []:
            model_info = self._parse_model(it)
            if model_info:
                out.append(model_info)

        log.info("Fetched models: count=%d ms=%.1f", len(out), dt)
        return out

    @staticmethod
    def _parse_model(data: Any) -> Optional[ModelInfo]:
        """Parse one supported-models entry; autocomplete-only models are skipped."""
        if not isinstance(data, dict):
            return None
        ref = data.get("modelRef") or ""
        name = data.get("displayName") or ""
        model_name = data.get("modelName") or ""
        if not (ref and name and model_name):
            return None
        capabilities = data.get("capabilities") or []
        if "autocomplete" in capabilities:
            return None
        provider = ref.split(":", 1)[0]
        return ModelInfo(name=name, model_id=f"{provider}/{model_name}")
