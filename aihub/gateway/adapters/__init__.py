"""
AI Gateway Adapters Package.

This module provides one adapter per vendor wire format. Each adapter
translates the gateway request into the vendor's native API and
normalizes the answer into the canonical result types.

Available adapters:
- OpenAIAdapter: OpenAI and OpenAI-compatible vendors (deepseek, xai,
  openrouter, ollama, poe, doubao)
- AnthropicAdapter: Claude Messages API
- GeminiAdapter: Google Gemini generateContent
- BedrockAdapter: Amazon Bedrock Converse

Usage:
    from aihub.gateway.adapters import get_adapter

    adapter = get_adapter("anthropic")
    result = await adapter.invoke(client, "chatCompletion", payload, target)
"""

from typing import Dict, Type

from aihub.gateway.adapters.base import (
    CALL_CHAT,
    CALL_EMBEDDING,
    CALL_IMAGE,
    CALL_VIDEO,
    AdapterError,
    ChatChunk,
    ChatResult,
    EmbeddingResult,
    ImageResult,
    TokenUsage,
    UpstreamRequest,
    VendorAdapter,
    VendorTarget,
    VideoResult,
)
from aihub.gateway.adapters.anthropic import AnthropicAdapter
from aihub.gateway.adapters.bedrock import BedrockAdapter
from aihub.gateway.adapters.gemini import GeminiAdapter
from aihub.gateway.adapters.openai import OpenAIAdapter


# Provider name -> adapter class
_ADAPTER_REGISTRY: Dict[str, Type[VendorAdapter]] = {
    "openai": OpenAIAdapter,
    "deepseek": OpenAIAdapter,
    "xai": OpenAIAdapter,
    "openrouter": OpenAIAdapter,
    "ollama": OpenAIAdapter,
    "poe": OpenAIAdapter,
    "doubao": OpenAIAdapter,
    "anthropic": AnthropicAdapter,
    "google": GeminiAdapter,
    "bedrock": BedrockAdapter,
}

# Singleton instances (adapters are stateless)
_ADAPTER_INSTANCES: Dict[str, VendorAdapter] = {}


def get_adapter(provider_name: str) -> VendorAdapter:
    """
    Get the adapter for a provider.

    Raises:
        AdapterError: If no adapter is registered for the provider
    """
    adapter_class = _ADAPTER_REGISTRY.get(provider_name)
    if adapter_class is None:
        raise AdapterError(
            message=f"Unsupported provider: {provider_name}",
            error_type="invalid_request_error",
            status_code=400,
        )

    if provider_name not in _ADAPTER_INSTANCES:
        _ADAPTER_INSTANCES[provider_name] = adapter_class()
    return _ADAPTER_INSTANCES[provider_name]


__all__ = [
    # Call types
    "CALL_CHAT",
    "CALL_EMBEDDING",
    "CALL_IMAGE",
    "CALL_VIDEO",
    # Base classes
    "VendorAdapter",
    "VendorTarget",
    "AdapterError",
    "UpstreamRequest",
    # Canonical results
    "TokenUsage",
    "ChatResult",
    "ChatChunk",
    "EmbeddingResult",
    "ImageResult",
    "VideoResult",
    # Adapters
    "OpenAIAdapter",
    "AnthropicAdapter",
    "GeminiAdapter",
    "BedrockAdapter",
    # Factory functions
    "get_adapter",
]
