"""
AI Gateway Adapter Base Class.

This module defines the interface every vendor adapter implements.
Each adapter translates the gateway request shape into the vendor's native
API and normalizes the vendor's answer into the canonical result types
below before it reaches the dispatch orchestrator:

- ChatResult / ChatChunk for chat completions (full and streamed)
- EmbeddingResult
- ImageResult
- VideoResult
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Set

import httpx

from aihub.gateway.store import CredentialRecord


CALL_CHAT = "chatCompletion"
CALL_EMBEDDING = "embedding"
CALL_IMAGE = "imageGeneration"
CALL_VIDEO = "video"


@dataclass
class VendorTarget:
    """Everything an adapter needs to reach one provider with one credential."""

    provider_name: str
    model: str
    credential: CredentialRecord
    base_url: Optional[str] = None
    region: Optional[str] = None
    timeout: httpx.Timeout = field(default_factory=lambda: httpx.Timeout(120.0, connect=10.0))
    request_id: Optional[str] = None


@dataclass
class UpstreamRequest:
    """Request to send to the vendor."""

    method: str
    url: str
    headers: Dict[str, str]
    body: Optional[Dict[str, Any]] = None
    params: Optional[Dict[str, str]] = None
    stream: bool = False


# =============================================================================
# Canonical results
# =============================================================================

@dataclass
class TokenUsage:
    """Token counters reported by a vendor."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_input_tokens
            + self.cache_read_input_tokens
        )

    def merge(self, other: "TokenUsage") -> None:
        """Vendors report cumulative counters, keep the highest seen."""
        self.input_tokens = max(self.input_tokens, other.input_tokens)
        self.output_tokens = max(self.output_tokens, other.output_tokens)
        self.cache_creation_input_tokens = max(self.cache_creation_input_tokens, other.cache_creation_input_tokens)
        self.cache_read_input_tokens = max(self.cache_read_input_tokens, other.cache_read_input_tokens)

    def to_dict(self) -> Dict[str, int]:
        data = {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
        }
        if self.cache_creation_input_tokens:
            data["cacheCreationInputTokens"] = self.cache_creation_input_tokens
        if self.cache_read_input_tokens:
            data["cacheReadInputTokens"] = self.cache_read_input_tokens
        return data


@dataclass
class ChatResult:
    text: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    usage: Optional[TokenUsage] = None
    finish_reason: Optional[str] = None
    model: Optional[str] = None


@dataclass
class ChatChunk:
    """One streamed increment. Either a delta, a usage report, or both."""

    text: str = ""
    role: Optional[str] = None
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    usage: Optional[TokenUsage] = None
    finish_reason: Optional[str] = None

    @property
    def has_delta(self) -> bool:
        return bool(self.text or self.tool_calls or self.role)

    def delta(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.role:
            data["role"] = self.role
        if self.text:
            data["content"] = self.text
        if self.tool_calls:
            data["toolCalls"] = self.tool_calls
        return data


@dataclass
class EmbeddingResult:
    data: List[Dict[str, Any]] = field(default_factory=list)
    usage: Optional[TokenUsage] = None
    model: Optional[str] = None


@dataclass
class ImageResult:
    images: List[Dict[str, Any]] = field(default_factory=list)
    usage: Optional[TokenUsage] = None
    model: Optional[str] = None


@dataclass
class VideoResult:
    videos: List[Dict[str, Any]] = field(default_factory=list)
    duration_seconds: float = 0.0
    usage: Optional[TokenUsage] = None
    model: Optional[str] = None


# =============================================================================
# Payload helpers
# =============================================================================

def option(payload: Dict[str, Any], *names: str, default: Any = None) -> Any:
    """First non-None value among camelCase / snake_case spellings."""
    for name in names:
        value = payload.get(name)
        if value is not None:
            return value
    options = payload.get("modelOptions")
    if isinstance(options, dict):
        for name in names:
            value = options.get(name)
            if value is not None:
                return value
    return default


def message_text(content: Any) -> str:
    """Flatten string or multi-part message content into plain text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return str(content)


def iter_sse_data(line: str) -> Optional[str]:
    """Payload of an SSE `data:` line, or None for comments/other fields."""
    line = line.strip()
    if not line.startswith("data:"):
        return None
    return line[5:].strip()


class VendorAdapter(ABC):
    """
    Base class for vendor adapters.

    Each adapter must implement:

    1. build_request() - gateway payload to vendor request
    2. parse_response() - vendor JSON to canonical result
    3. parse_stream() - vendor stream lines to ChatChunk

    Adapters are stateless; credentials and endpoints arrive through the
    VendorTarget of each call.
    """

    ADAPTER_TYPE: str = "base"

    SUPPORTED_CALL_TYPES: Set[str] = {CALL_CHAT}

    def supports(self, call_type: str) -> bool:
        return call_type in self.SUPPORTED_CALL_TYPES

    @abstractmethod
    def build_request(self, call_type: str, payload: Dict[str, Any], target: VendorTarget) -> UpstreamRequest:
        """
        Build the vendor request.

        Raises:
            AdapterError: If the payload cannot be expressed for this vendor
        """

    @abstractmethod
    def parse_response(self, call_type: str, body: Dict[str, Any], target: VendorTarget) -> Any:
        """Normalize a successful vendor response."""

    @abstractmethod
    async def parse_stream(self, lines: AsyncIterator[str], target: VendorTarget) -> AsyncIterator[ChatChunk]:
        """Translate vendor stream lines into ChatChunk objects."""
        yield ChatChunk()

    def parse_error(self, response: httpx.Response) -> "AdapterError":
        """Turn a non-2xx vendor response into an AdapterError."""
        try:
            body = response.json()
        except ValueError:
            body = None

        message = None
        error_type = "api_error"
        code = None
        if isinstance(body, dict):
            error = body.get("error", body)
            if isinstance(error, dict):
                message = error.get("message") or error.get("msg")
                error_type = error.get("type") or error.get("status") or error_type
                code = error.get("code")
            elif isinstance(error, str):
                message = error
            message = message or body.get("message")
        if not message:
            message = response.text or f"HTTP {response.status_code}"

        return AdapterError(
            message=str(message),
            error_type=str(error_type),
            status_code=response.status_code,
            code=str(code) if code is not None else None,
        )

    def _check_supported(self, call_type: str) -> None:
        if not self.supports(call_type):
            raise AdapterError(
                message=f"{self.ADAPTER_TYPE} does not support {call_type}",
                error_type="invalid_request_error",
                status_code=400,
            )

    async def invoke(
        self,
        client: httpx.AsyncClient,
        call_type: str,
        payload: Dict[str, Any],
        target: VendorTarget,
    ) -> Any:
        """Send a non-streaming request and return the canonical result."""
        self._check_supported(call_type)
        request = self.build_request(call_type, payload, target)

        response = await client.request(
            request.method,
            request.url,
            headers=request.headers,
            json=request.body,
            params=request.params,
            timeout=target.timeout,
        )
        if response.status_code >= 400:
            raise self.parse_error(response)

        try:
            body = response.json()
        except ValueError as e:
            raise AdapterError(
                message=f"Failed to parse upstream response: {e}",
                error_type="parse_error",
                status_code=502,
            )
        try:
            return self.parse_response(call_type, body, target)
        except MALFORMED_BODY_ERRORS as e:
            raise malformed_body(e) from e

    async def stream(
        self,
        client: httpx.AsyncClient,
        payload: Dict[str, Any],
        target: VendorTarget,
    ) -> AsyncIterator[ChatChunk]:
        """
        Stream a chat completion.

        The upstream connection is released when the generator is closed,
        including when the consumer stops early.
        """
        self._check_supported(CALL_CHAT)
        request = self.build_request(CALL_CHAT, {**payload, "stream": True}, target)

        async with client.stream(
            request.method,
            request.url,
            headers=request.headers,
            json=request.body,
            params=request.params,
            timeout=target.timeout,
        ) as response:
            if response.status_code >= 400:
                await response.aread()
                raise self.parse_error(response)

            chunks = self.parse_stream(response.aiter_lines(), target)
            try:
                while True:
                    try:
                        chunk = await chunks.__anext__()
                    except StopAsyncIteration:
                        break
                    except MALFORMED_BODY_ERRORS as e:
                        raise malformed_body(e) from e
                    yield chunk
            finally:
                await chunks.aclose()


# A 2xx body that does not have the vendor's shape
MALFORMED_BODY_ERRORS = (TypeError, KeyError, IndexError, AttributeError, ValueError)


def malformed_body(error: BaseException) -> "AdapterError":
    return AdapterError(
        message=f"Unexpected upstream response shape: {error}",
        error_type="parse_error",
        status_code=502,
    )


def decode_json(data: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(data)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


class AdapterError(Exception):
    """Exception raised by adapters when a vendor call fails."""

    def __init__(
        self,
        message: str,
        error_type: str = "adapter_error",
        status_code: int = 500,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.code = code
