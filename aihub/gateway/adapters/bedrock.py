"""
Bedrock Adapter - Amazon Bedrock Converse API.

Authenticates with a Bedrock API key (bearer token) against the regional
runtime endpoint. The provider row must carry a region.

Bedrock streams use the binary event-stream encoding, so streaming requests
are served through Converse and replayed as a single chunk followed by the
usage report.
"""

from typing import Any, AsyncIterator, Dict, List, Set

import httpx

from aihub.gateway.adapters.base import (
    CALL_CHAT,
    AdapterError,
    ChatChunk,
    ChatResult,
    TokenUsage,
    UpstreamRequest,
    VendorAdapter,
    VendorTarget,
    message_text,
    option,
)


_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
    "content_filtered": "content_filter",
}


class BedrockAdapter(VendorAdapter):
    """Adapter for Amazon Bedrock Converse."""

    ADAPTER_TYPE = "bedrock"

    SUPPORTED_CALL_TYPES: Set[str] = {CALL_CHAT}

    def _base_url(self, target: VendorTarget) -> str:
        if target.base_url:
            return target.base_url.rstrip("/")
        region = target.region or target.credential.value.get("region")
        if not region:
            raise AdapterError(
                message="Bedrock provider requires a region",
                error_type="invalid_request_error",
                status_code=400,
            )
        return f"https://bedrock-runtime.{region}.amazonaws.com"

    def build_request(self, call_type: str, payload: Dict[str, Any], target: VendorTarget) -> UpstreamRequest:
        api_key = target.credential.api_key
        if not api_key:
            raise AdapterError(
                message="Bedrock credential has no api_key",
                error_type="authentication_error",
                status_code=401,
            )

        system: List[Dict[str, str]] = []
        messages: List[Dict[str, Any]] = []
        for message in payload["messages"]:
            text = message_text(message.get("content"))
            if message.get("role") == "system":
                system.append({"text": text})
            else:
                role = "assistant" if message.get("role") == "assistant" else "user"
                messages.append({"role": role, "content": [{"text": text}]})

        body: Dict[str, Any] = {"messages": messages}
        if system:
            body["system"] = system

        inference: Dict[str, Any] = {}
        for name, aliases in (
            ("maxTokens", ("maxTokens", "max_tokens")),
            ("temperature", ("temperature",)),
            ("topP", ("topP", "top_p")),
        ):
            value = option(payload, *aliases)
            if value is not None:
                inference[name] = value
        if inference:
            body["inferenceConfig"] = inference

        return UpstreamRequest(
            method="POST",
            url=f"{self._base_url(target)}/model/{target.model}/converse",
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "Authorization": f"Bearer {api_key}",
            },
            body=body,
        )

    def parse_response(self, call_type: str, body: Dict[str, Any], target: VendorTarget) -> ChatResult:
        message = (body.get("output") or {}).get("message") or {}
        text = "".join(block.get("text", "") for block in message.get("content") or [])
        usage = body.get("usage") or {}
        stop = body.get("stopReason")
        return ChatResult(
            text=text,
            usage=TokenUsage(
                input_tokens=int(usage.get("inputTokens") or 0),
                output_tokens=int(usage.get("outputTokens") or 0),
                cache_read_input_tokens=int(usage.get("cacheReadInputTokens") or 0),
                cache_creation_input_tokens=int(usage.get("cacheWriteInputTokens") or 0),
            ),
            finish_reason=_STOP_REASONS.get(stop, stop),
            model=target.model,
        )

    async def parse_stream(self, lines: AsyncIterator[str], target: VendorTarget) -> AsyncIterator[ChatChunk]:
        raise AdapterError(
            message="Bedrock event streams are not parsed line by line",
            error_type="invalid_request_error",
            status_code=400,
        )
        yield ChatChunk()

    async def stream(
        self,
        client: httpx.AsyncClient,
        payload: Dict[str, Any],
        target: VendorTarget,
    ) -> AsyncIterator[ChatChunk]:
        result: ChatResult = await self.invoke(client, CALL_CHAT, {**payload, "stream": False}, target)
        yield ChatChunk(role="assistant", text=result.text, finish_reason=result.finish_reason)
        if result.usage is not None:
            yield ChatChunk(usage=result.usage)
