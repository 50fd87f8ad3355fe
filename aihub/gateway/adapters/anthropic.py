"""
Anthropic Adapter - Claude Messages API.

Differences from the OpenAI wire format:
- System prompts travel in a top-level `system` field
- max_tokens is mandatory
- Streaming uses typed events (message_start, content_block_delta,
  message_delta) instead of choice deltas
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from aihub.gateway.adapters.base import (
    CALL_CHAT,
    AdapterError,
    ChatChunk,
    ChatResult,
    TokenUsage,
    UpstreamRequest,
    VendorAdapter,
    VendorTarget,
    decode_json,
    iter_sse_data,
    message_text,
    option,
)


DEFAULT_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}


def _usage(data: Optional[Dict[str, Any]]) -> Optional[TokenUsage]:
    if not data:
        return None
    return TokenUsage(
        input_tokens=int(data.get("input_tokens") or 0),
        output_tokens=int(data.get("output_tokens") or 0),
        cache_creation_input_tokens=int(data.get("cache_creation_input_tokens") or 0),
        cache_read_input_tokens=int(data.get("cache_read_input_tokens") or 0),
    )


def _convert_tools(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    converted = []
    for tool in tools:
        fn = tool.get("function", tool)
        converted.append({
            "name": fn.get("name"),
            "description": fn.get("description", ""),
            "input_schema": fn.get("parameters") or {"type": "object", "properties": {}},
        })
    return converted


def _convert_messages(messages: List[Dict[str, Any]]):
    system_parts: List[str] = []
    converted: List[Dict[str, Any]] = []

    for message in messages:
        role = message.get("role")
        if role == "system":
            system_parts.append(message_text(message.get("content")))
            continue

        if role == "tool":
            converted.append({
                "role": "user",
                "content": [{
                    "type": "tool_result",
                    "tool_use_id": message.get("tool_call_id") or message.get("toolCallId"),
                    "content": message_text(message.get("content")),
                }],
            })
            continue

        content: List[Dict[str, Any]] = []
        text = message_text(message.get("content"))
        if text:
            content.append({"type": "text", "text": text})
        for call in message.get("tool_calls") or message.get("toolCalls") or []:
            fn = call.get("function") or {}
            arguments = fn.get("arguments") or "{}"
            content.append({
                "type": "tool_use",
                "id": call.get("id"),
                "name": fn.get("name"),
                "input": json.loads(arguments) if isinstance(arguments, str) else arguments,
            })
        converted.append({"role": "assistant" if role == "assistant" else "user", "content": content})

    return "\n".join(p for p in system_parts if p), converted


class AnthropicAdapter(VendorAdapter):
    """Adapter for the Anthropic Messages API."""

    ADAPTER_TYPE = "anthropic"

    SUPPORTED_CALL_TYPES: Set[str] = {CALL_CHAT}

    def build_request(self, call_type: str, payload: Dict[str, Any], target: VendorTarget) -> UpstreamRequest:
        api_key = target.credential.api_key
        if not api_key:
            raise AdapterError(
                message="Anthropic credential has no api_key",
                error_type="authentication_error",
                status_code=401,
            )

        system, messages = _convert_messages(payload["messages"])
        body: Dict[str, Any] = {
            "model": target.model,
            "messages": messages,
            "max_tokens": option(payload, "maxTokens", "max_tokens", default=DEFAULT_MAX_TOKENS),
        }
        if system:
            body["system"] = system
        temperature = option(payload, "temperature")
        if temperature is not None:
            body["temperature"] = temperature
        top_p = option(payload, "topP", "top_p")
        if top_p is not None:
            body["top_p"] = top_p
        tools = option(payload, "tools")
        if tools:
            body["tools"] = _convert_tools(tools)
        if payload.get("stream"):
            body["stream"] = True

        base_url = (target.base_url or DEFAULT_BASE_URL).rstrip("/")
        return UpstreamRequest(
            method="POST",
            url=f"{base_url}/v1/messages",
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "x-api-key": api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
            body=body,
            stream=bool(body.get("stream")),
        )

    def parse_response(self, call_type: str, body: Dict[str, Any], target: VendorTarget) -> ChatResult:
        text_parts: List[str] = []
        tool_calls: List[Dict[str, Any]] = []
        for block in body.get("content") or []:
            if block.get("type") == "text":
                text_parts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                tool_calls.append({
                    "id": block.get("id"),
                    "type": "function",
                    "function": {
                        "name": block.get("name"),
                        "arguments": json.dumps(block.get("input") or {}),
                    },
                })

        return ChatResult(
            text="".join(text_parts),
            tool_calls=tool_calls,
            usage=_usage(body.get("usage")),
            finish_reason=_STOP_REASONS.get(body.get("stop_reason"), body.get("stop_reason")),
            model=body.get("model"),
        )

    async def parse_stream(self, lines: AsyncIterator[str], target: VendorTarget) -> AsyncIterator[ChatChunk]:
        usage = TokenUsage()
        tool_index: Dict[int, int] = {}

        async for line in lines:
            data = iter_sse_data(line)
            if not data:
                continue
            event = decode_json(data)
            if event is None:
                continue

            kind = event.get("type")
            if kind == "message_start":
                start_usage = _usage((event.get("message") or {}).get("usage"))
                if start_usage:
                    usage.merge(start_usage)
                yield ChatChunk(role="assistant")

            elif kind == "content_block_start":
                block = event.get("content_block") or {}
                if block.get("type") == "tool_use":
                    position = len(tool_index)
                    tool_index[event.get("index", 0)] = position
                    yield ChatChunk(tool_calls=[{
                        "index": position,
                        "id": block.get("id"),
                        "type": "function",
                        "function": {"name": block.get("name"), "arguments": ""},
                    }])

            elif kind == "content_block_delta":
                delta = event.get("delta") or {}
                if delta.get("type") == "text_delta":
                    yield ChatChunk(text=delta.get("text", ""))
                elif delta.get("type") == "input_json_delta":
                    yield ChatChunk(tool_calls=[{
                        "index": tool_index.get(event.get("index", 0), 0),
                        "function": {"arguments": delta.get("partial_json", "")},
                    }])

            elif kind == "message_delta":
                delta_usage = _usage(event.get("usage"))
                if delta_usage:
                    usage.merge(delta_usage)
                stop = (event.get("delta") or {}).get("stop_reason")
                if stop:
                    yield ChatChunk(finish_reason=_STOP_REASONS.get(stop, stop))

            elif kind == "message_stop":
                yield ChatChunk(usage=usage)
                return

            elif kind == "error":
                error = event.get("error") or {}
                raise AdapterError(
                    message=error.get("message") or "Upstream stream error",
                    error_type=error.get("type") or "api_error",
                    status_code=529 if error.get("type") == "overloaded_error" else 502,
                )
