"""
Gateway Routing Package.

This module provides provider resolution for the AI Gateway:
- Vendor inference from model names
- Supported-provider lists and provider model ids
- Provider round robin and weighted credential rotation
- Failed-provider cooldown

Usage:
    from aihub.gateway.routing import RotationSelector

    selector = RotationSelector(cache, settings.gateway, settings.billing)
    candidate = await selector.get_next_provider_for_model("gpt-4o")
"""

from aihub.gateway.routing.registry import (
    AI_PROVIDERS,
    PROVIDER_RANK,
    MODEL_LOCATIONS,
    ModelLocation,
    NestedInput,
    NestedModelOptions,
    ParsedModel,
    TopLevel,
    find_model,
    get_default_provider_for_model,
    get_supported_providers,
    infer_vendor_from_model,
    model_has_provider,
    parse_model_with_provider,
    resolve_provider_model_id,
    write_model,
)
from aihub.gateway.routing.rotation import (
    ProviderCandidate,
    ProvidersForModel,
    RotationSelector,
)

__all__ = [
    "AI_PROVIDERS",
    "PROVIDER_RANK",
    "MODEL_LOCATIONS",
    "ModelLocation",
    "NestedInput",
    "NestedModelOptions",
    "ParsedModel",
    "TopLevel",
    "find_model",
    "get_default_provider_for_model",
    "get_supported_providers",
    "infer_vendor_from_model",
    "model_has_provider",
    "parse_model_with_provider",
    "resolve_provider_model_id",
    "write_model",
    "ProviderCandidate",
    "ProvidersForModel",
    "RotationSelector",
]
