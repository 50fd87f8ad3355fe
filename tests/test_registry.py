"""Tests for vendor inference and model location handling."""

import pytest

from aihub.gateway.adapters import get_adapter
from aihub.gateway.routing.registry import AI_PROVIDERS
from aihub.gateway.routing import (
    find_model,
    get_default_provider_for_model,
    get_supported_providers,
    infer_vendor_from_model,
    model_has_provider,
    parse_model_with_provider,
    resolve_provider_model_id,
    write_model,
)


class TestParseModel:
    def test_bare_model(self):
        parsed = parse_model_with_provider("gpt-4o")
        assert parsed.model_name == "gpt-4o"
        assert parsed.provider_name is None

    def test_prefixed_model(self):
        parsed = parse_model_with_provider("OpenAI/gpt-4o")
        assert parsed.provider_name == "openai"
        assert parsed.model_name == "gpt-4o"

    def test_unknown_prefix_stays_in_model(self):
        parsed = parse_model_with_provider("meta-llama/llama-3-70b")
        assert parsed.provider_name is None
        assert parsed.model_name == "meta-llama/llama-3-70b"

    def test_openrouter_nested_id(self):
        parsed = parse_model_with_provider("openrouter/anthropic/claude-3-5-sonnet")
        assert parsed.provider_name == "openrouter"
        assert parsed.model_name == "anthropic/claude-3-5-sonnet"

    def test_model_has_provider(self):
        assert model_has_provider("anthropic/claude-3-haiku")
        assert not model_has_provider("claude-3-haiku")
        assert not model_has_provider(None)


class TestVendorInference:
    @pytest.mark.parametrize("model,vendor", [
        ("gpt-4o-mini", "openai"),
        ("o1-preview", "openai"),
        ("claude-3-5-sonnet", "anthropic"),
        ("gemini-1.5-pro", "google"),
        ("deepseek-chat", "deepseek"),
        ("grok-2", "xai"),
        ("mystery-model", None),
    ])
    def test_infer_vendor(self, model, vendor):
        assert infer_vendor_from_model(model) == vendor

    def test_supported_providers_ranked(self):
        assert get_supported_providers("claude-3-5-sonnet") == ["anthropic", "bedrock", "openrouter", "poe"]
        assert get_supported_providers("gpt-5-mini") == ["openai", "openrouter", "poe"]
        assert get_supported_providers("unknown") == []

    def test_default_provider(self):
        assert get_default_provider_for_model("gemini-2.0-flash") == "google"
        assert get_default_provider_for_model("qwen-72b") == "openrouter"
        assert get_default_provider_for_model("unknown") is None

    def test_resolve_provider_model_id(self):
        assert resolve_provider_model_id("openrouter", "gpt-4o") == "openai/gpt-4o"
        assert resolve_provider_model_id("bedrock", "claude-3-haiku") == "anthropic.claude-3-haiku"
        assert resolve_provider_model_id("bedrock", "anthropic.claude-3-haiku") == "anthropic.claude-3-haiku"
        assert resolve_provider_model_id("openai", "gpt-4o") == "gpt-4o"


class TestModelLocations:
    def test_top_level_wins(self):
        body = {"model": "gpt-4o", "input": {"model": "claude-3-haiku"}}
        model, locations = find_model(body)
        assert model == "gpt-4o"
        assert [loc.name for loc in locations] == ["top_level", "input"]

    def test_nested_model_options(self):
        body = {"input": {"modelOptions": {"model": "gemini-1.5-pro"}}}
        model, locations = find_model(body)
        assert model == "gemini-1.5-pro"
        assert [loc.name for loc in locations] == ["input.modelOptions"]

    def test_missing_model(self):
        assert find_model({"messages": []}) == (None, [])

    def test_write_back_to_every_location(self):
        body = {"model": "gpt-4o", "input": {"model": "gpt-4o", "modelOptions": {"model": "gpt-4o"}}}
        _, locations = find_model(body)

        write_model(body, locations, "openai/gpt-4o")

        assert body["model"] == "openai/gpt-4o"
        assert body["input"]["model"] == "openai/gpt-4o"
        assert body["input"]["modelOptions"]["model"] == "openai/gpt-4o"


@pytest.mark.parametrize("provider", AI_PROVIDERS)
def test_every_provider_has_an_adapter(provider):
    assert get_adapter(provider).supports("chatCompletion")
