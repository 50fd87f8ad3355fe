"""
Provider Registry & Vendor Inference.

Translates a bare model name ("gpt-4o") or a prefixed one ("openai/gpt-4o")
into a concrete (provider, provider model id) pair and lists every provider
that can legitimately serve a model.

Provider order:
1. Direct vendor (openai, anthropic, google, ...)
2. Bedrock
3. Aggregators (openrouter, poe)
4. Self-hosted (ollama)
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, MutableMapping, Optional, Tuple


AI_PROVIDERS: Tuple[str, ...] = (
    "openai",
    "anthropic",
    "bedrock",
    "deepseek",
    "google",
    "ollama",
    "openrouter",
    "xai",
    "doubao",
    "poe",
)

SUPPORTED_PROVIDERS = frozenset(AI_PROVIDERS)

PROVIDER_RANK: Dict[str, int] = {
    "openai": 1,
    "anthropic": 1,
    "google": 1,
    "deepseek": 1,
    "xai": 1,
    "doubao": 1,
    "bedrock": 2,
    "openrouter": 3,
    "poe": 3,
    "ollama": 4,
}

# Model family -> vendor that publishes it
_VENDOR_PATTERNS: Tuple[Tuple[re.Pattern, str], ...] = (
    (re.compile(r"^gemini"), "google"),
    (re.compile(r"^claude"), "anthropic"),
    (re.compile(r"^(gpt-|o[13]-|dall-e-|text-embedding|sora-)"), "openai"),
    (re.compile(r"^deepseek"), "deepseek"),
    (re.compile(r"^grok"), "xai"),
    (re.compile(r"^doubao"), "doubao"),
    (re.compile(r"^llama"), "meta"),
    (re.compile(r"^(mistral|mixtral)"), "mistral"),
    (re.compile(r"^qwen"), "qwen"),
    (re.compile(r"^gemma"), "google"),
    (re.compile(r"^yi"), "yi"),
    (re.compile(r"^phi"), "microsoft"),
)

# Model family -> providers able to serve it
_PROVIDER_PATTERNS: Tuple[Tuple[re.Pattern, Tuple[str, ...]], ...] = (
    (re.compile(r"^gemini"), ("google", "openrouter", "poe")),
    (re.compile(r"^(gpt-|o[13]-|dall-e-|text-embedding|sora-)"), ("openai", "openrouter", "poe")),
    (re.compile(r"^claude"), ("anthropic", "bedrock", "openrouter", "poe")),
    (re.compile(r"^deepseek"), ("deepseek", "openrouter", "ollama")),
    (re.compile(r"^grok"), ("xai", "openrouter", "poe")),
    (re.compile(r"^doubao"), ("doubao",)),
    (re.compile(r"^(llama|mistral|mixtral|gemma|qwen|yi|phi)\b"), ("openrouter", "ollama", "bedrock")),
)

_DEFAULT_PROVIDER_PATTERNS: Tuple[Tuple[re.Pattern, str], ...] = (
    (re.compile(r"^gemini"), "google"),
    (re.compile(r"^claude"), "anthropic"),
    (re.compile(r"^(gpt-|o[13]-|dall-e-|text-embedding|sora-)"), "openai"),
    (re.compile(r"^deepseek"), "deepseek"),
    (re.compile(r"^grok"), "xai"),
    (re.compile(r"^doubao"), "doubao"),
    (re.compile(r"^(llama|mistral|mixtral|gemma|qwen|yi|phi)\b"), "openrouter"),
)


# =============================================================================
# Model name helpers
# =============================================================================

@dataclass(frozen=True)
class ParsedModel:
    """A model name split into an optional provider prefix and the model id."""

    model_name: str
    provider_name: Optional[str] = None


def parse_model_with_provider(model: str) -> ParsedModel:
    """
    Split "provider/model" into its parts.

    The prefix is only accepted when it names a supported provider, so
    "meta-llama/llama-3" stays a bare model id.
    """
    if "/" not in model:
        return ParsedModel(model_name=model)

    prefix, _, rest = model.partition("/")
    if prefix.lower() in SUPPORTED_PROVIDERS and rest:
        return ParsedModel(model_name=rest, provider_name=prefix.lower())
    return ParsedModel(model_name=model)


def model_has_provider(model: Optional[str]) -> bool:
    """True when the model carries a supported "provider/" prefix."""
    if not model or "/" not in model:
        return False
    return model.split("/", 1)[0].lower() in SUPPORTED_PROVIDERS


def infer_vendor_from_model(model: str) -> Optional[str]:
    """Vendor that publishes the model family, or None when unrecognized."""
    name = model.lower()
    for pattern, vendor in _VENDOR_PATTERNS:
        if pattern.search(name):
            return vendor
    return None


def get_supported_providers(model: str) -> List[str]:
    """Providers able to serve the model, best ranked first."""
    name = parse_model_with_provider(model).model_name.lower()
    for pattern, providers in _PROVIDER_PATTERNS:
        if pattern.search(name):
            return sorted(providers, key=lambda p: PROVIDER_RANK.get(p, 99))
    return []


def get_default_provider_for_model(model: str) -> Optional[str]:
    name = parse_model_with_provider(model).model_name.lower()
    for pattern, provider in _DEFAULT_PROVIDER_PATTERNS:
        if pattern.search(name):
            return provider
    return None


def resolve_provider_model_id(provider_name: str, model: str, vendor: Optional[str] = None) -> str:
    """
    Reformat a model id for the provider that will serve it.

    - bedrock: "<vendor>.<model>" (unchanged when already dotted)
    - openrouter: "<vendor>/<model>"
    - everyone else: bare model id
    """
    vendor = vendor or infer_vendor_from_model(model)
    if not vendor:
        return model

    if provider_name == "bedrock":
        if "." in model:
            return model
        return f"{vendor}.{model}"

    if provider_name == "openrouter":
        if model.startswith(f"{vendor}/"):
            return model
        return f"{vendor}/{model}"

    return model


# =============================================================================
# Model locations in request bodies
# =============================================================================

class ModelLocation:
    """One place a request body may carry its model id."""

    name: str = "base"
    path: Tuple[str, ...] = ()

    def _parent(self, body: MutableMapping[str, Any]) -> Optional[MutableMapping[str, Any]]:
        node: Any = body
        for key in self.path[:-1]:
            if not isinstance(node, MutableMapping):
                return None
            node = node.get(key)
        return node if isinstance(node, MutableMapping) else None

    def read(self, body: MutableMapping[str, Any]) -> Optional[str]:
        parent = self._parent(body)
        if parent is None:
            return None
        value = parent.get(self.path[-1])
        return value if isinstance(value, str) and value else None

    def write(self, body: MutableMapping[str, Any], value: str) -> None:
        parent = self._parent(body)
        if parent is not None:
            parent[self.path[-1]] = value


class TopLevel(ModelLocation):
    name = "top_level"
    path = ("model",)


class NestedInput(ModelLocation):
    name = "input"
    path = ("input", "model")


class NestedModelOptions(ModelLocation):
    name = "input.modelOptions"
    path = ("input", "modelOptions", "model")


# Fixed lookup priority
MODEL_LOCATIONS: Tuple[ModelLocation, ...] = (TopLevel(), NestedInput(), NestedModelOptions())


def find_model(body: MutableMapping[str, Any]) -> Tuple[Optional[str], List[ModelLocation]]:
    """
    Locate the model id in a request body.

    Returns the first value found (by priority) and every location that
    carries a value, so callers can write the resolved id back everywhere.
    """
    found = [loc for loc in MODEL_LOCATIONS if loc.read(body) is not None]
    if not found:
        return None, []
    return found[0].read(body), found


def write_model(body: MutableMapping[str, Any], locations: List[ModelLocation], value: str) -> None:
    for location in locations:
        location.write(body, value)
