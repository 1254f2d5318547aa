"""
Tests for the model catalog and the remote supported-models cache.
"""

import httpx
import pytest

from key_pool import KeyPool
from models import STATIC_MODELS, ModelCache, ModelCatalog, ModelInfo, ModelQuirks
from upstream import UpstreamClient

SUPPORTED_MODELS = {
    "models": [
        {
            "modelRef": "anthropic::2023-06-01::claude-3.5-sonnet",
            "displayName": "Claude 3.5 Sonnet",
            "modelName": "claude-3-5-sonnet-20240620",
            "capabilities": ["chat"],
        },
        {
            "modelRef": "fireworks::v1::starcoder",
            "displayName": "StarCoder",
            "modelName": "starcoder",
            "capabilities": ["autocomplete"],
        },
        {"modelRef": "broken"},
    ]
}


# ============================================================================
# ModelCatalog Tests
# ============================================================================

class TestModelCatalog:
    """Test display-name lookup and remote merging."""

    def test_static_lookup(self):
        catalog = ModelCatalog()
        model = catalog.get("GPT-4o")
        assert model.model_id == "openai/gpt-4o"
        assert model.quirks == ModelQuirks()
        assert catalog.get("missing") is None

    def test_claude_3_models_use_gateway(self):
        catalog = ModelCatalog()
        for name in ("Claude 3 Haiku", "Claude 3 Sonnet", "Claude 3 Opus"):
            assert catalog.get(name).quirks.gateway is True
        assert catalog.get("Claude 2.0").quirks.gateway is False

    def test_remote_entries_override_and_inherit_quirks(self):
        catalog = ModelCatalog()
        catalog.set_remote([
            ModelInfo("Claude 3 Opus", "anthropic/claude-3-opus-20240229"),
            ModelInfo("New Model", "openai/new-model"),
        ])
        names = [m.name for m in catalog.models()]
        assert names.count("Claude 3 Opus") == 1
        assert "New Model" in names
        assert catalog.get("Claude 3 Opus").quirks.gateway is True
        assert len(catalog.models()) == len(STATIC_MODELS) + 1

    def test_openai_model_dict(self):
        entry = ModelInfo("Claude 2.0", "anthropic/claude-2.0").to_openai_model_dict(1000)
        assert entry["id"] == "Claude 2.0"
        assert entry["object"] == "model"
        assert entry["root"] == "anthropic/claude-2.0"
        assert entry["permission"][0]["id"] == "modelperm-anthropic/claude-2.0"


# ============================================================================
# ModelCache Tests
# ============================================================================

class TestModelCache:
    """Test remote model fetching and TTL caching."""

    def test_parse_model(self):
        parse = ModelCache._parse_model
        info = parse(SUPPORTED_MODELS["models"][0])
        assert info == ModelInfo("Claude 3.5 Sonnet", "anthropic/claude-3-5-sonnet-20240620")
        assert parse(SUPPORTED_MODELS["models"][1]) is None
        assert parse(SUPPORTED_MODELS["models"][2]) is None
        assert parse("nope") is None

    @pytest.mark.asyncio
    async def test_fetch_and_cache(self, test_config, clock):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            return httpx.Response(200, json=SUPPORTED_MODELS)

        upstream = UpstreamClient(test_config, KeyPool(["key1"], clock=clock))
        cache = ModelCache()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            first = await cache.get_models(client, upstream, test_config)
            second = await cache.get_models(client, upstream, test_config)

        assert [m.name for m in first] == ["Claude 3.5 Sonnet"]
        assert second == first
        assert calls == ["https://sourcegraph.test/.api/modelconfig/supported-models.json"]

    @pytest.mark.asyncio
    async def test_fetch_failure_returns_empty(self, test_config, clock):
        upstream = UpstreamClient(test_config, KeyPool(["key1"], clock=clock))
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="down"))
        async with httpx.AsyncClient(transport=transport) as client:
            assert await ModelCache().get_models(client, upstream, test_config) == []
