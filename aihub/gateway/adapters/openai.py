"""
OpenAI Adapter - OpenAI and every vendor speaking its wire format.

Handles the official OpenAI API plus the vendors that expose an
OpenAI-compatible surface:
- DeepSeek
- xAI (Grok)
- OpenRouter
- Ollama (OpenAI compatibility layer)
- Poe
- Doubao (Volcengine Ark)

Only the base URL differs between them; the request body, SSE framing and
usage fields are shared.
"""

from typing import Any, AsyncIterator, Dict, List, Optional, Set

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
    decode_json,
    iter_sse_data,
    option,
)


DEFAULT_BASE_URLS: Dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "deepseek": "https://api.deepseek.com/v1",
    "xai": "https://api.x.ai/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "ollama": "http://localhost:11434/v1",
    "poe": "https://api.poe.com/v1",
    "doubao": "https://ark.cn-beijing.volces.com/api/v3",
}


def parse_usage(usage: Optional[Dict[str, Any]]) -> Optional[TokenUsage]:
    if not usage:
        return None
    details = usage.get("prompt_tokens_details") or {}
    cached = int(details.get("cached_tokens") or 0)
    prompt = int(usage.get("prompt_tokens") or usage.get("input_tokens") or 0)
    return TokenUsage(
        input_tokens=max(prompt - cached, 0),
        output_tokens=int(usage.get("completion_tokens") or usage.get("output_tokens") or 0),
        cache_read_input_tokens=cached,
    )


class OpenAIAdapter(VendorAdapter):
    """
    Adapter for the OpenAI API and OpenAI-compatible vendors.

    Main responsibilities:
    - Bearer authentication
    - Mapping gateway option names onto OpenAI parameters
    - Usage extraction, including streamed usage via stream_options
    """

    ADAPTER_TYPE = "openai"

    SUPPORTED_CALL_TYPES: Set[str] = {CALL_CHAT, CALL_EMBEDDING, CALL_IMAGE, CALL_VIDEO}

    ENDPOINT_PATHS = {
        CALL_CHAT: "/chat/completions",
        CALL_EMBEDDING: "/embeddings",
        CALL_IMAGE: "/images/generations",
        CALL_VIDEO: "/videos",
    }

    def _base_url(self, target: VendorTarget) -> str:
        base_url = target.base_url or DEFAULT_BASE_URLS.get(target.provider_name)
        if not base_url:
            raise AdapterError(
                message=f"No base URL configured for provider {target.provider_name}",
                error_type="invalid_request_error",
                status_code=400,
            )
        return base_url.rstrip("/")

    def _headers(self, target: VendorTarget) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        api_key = target.credential.api_key
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        if target.request_id:
            headers["X-Request-ID"] = target.request_id
        return headers

    def _chat_body(self, payload: Dict[str, Any], target: VendorTarget) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": target.model,
            "messages": payload["messages"],
        }
        max_tokens = option(payload, "maxTokens", "max_tokens")
        if max_tokens is not None:
            body["max_tokens"] = max_tokens
        for name, aliases in (
            ("temperature", ("temperature",)),
            ("top_p", ("topP", "top_p")),
            ("frequency_penalty", ("frequencyPenalty", "frequency_penalty")),
            ("presence_penalty", ("presencePenalty", "presence_penalty")),
            ("tools", ("tools",)),
            ("tool_choice", ("toolChoice", "tool_choice")),
            ("response_format", ("responseFormat", "response_format")),
        ):
            value = option(payload, *aliases)
            if value is not None:
                body[name] = value

        if payload.get("stream"):
            body["stream"] = True
            body["stream_options"] = {"include_usage": True}
        return body

    def build_request(self, call_type: str, payload: Dict[str, Any], target: VendorTarget) -> UpstreamRequest:
        url = f"{self._base_url(target)}{self.ENDPOINT_PATHS[call_type]}"

        if call_type == CALL_CHAT:
            body = self._chat_body(payload, target)
        elif call_type == CALL_EMBEDDING:
            body = {"model": target.model, "input": payload["input"]}
            dimensions = option(payload, "dimensions")
            if dimensions is not None:
                body["dimensions"] = dimensions
        elif call_type == CALL_IMAGE:
            body = {"model": target.model, "prompt": payload["prompt"], "n": option(payload, "n", default=1)}
            for name, aliases in (
                ("size", ("size",)),
                ("quality", ("quality",)),
                ("style", ("style",)),
                ("response_format", ("responseFormat", "response_format")),
            ):
                value = option(payload, *aliases)
                if value is not None:
                    body[name] = value
        else:
            body = {"model": target.model, "prompt": payload["prompt"]}
            seconds = option(payload, "seconds", "duration")
            if seconds is not None:
                body["seconds"] = str(seconds)
            size = option(payload, "size")
            if size is not None:
                body["size"] = size

        return UpstreamRequest(
            method="POST",
            url=url,
            headers=self._headers(target),
            body=body,
            stream=bool(body.get("stream")),
        )

    def parse_response(self, call_type: str, body: Dict[str, Any], target: VendorTarget) -> Any:
        usage = parse_usage(body.get("usage"))

        if call_type == CALL_CHAT:
            choices = body.get("choices") or []
            if not choices:
                raise AdapterError(
                    message="Upstream returned no choices",
                    error_type="parse_error",
                    status_code=502,
                )
            message = choices[0].get("message") or {}
            return ChatResult(
                text=message.get("content") or "",
                tool_calls=message.get("tool_calls") or [],
                usage=usage,
                finish_reason=choices[0].get("finish_reason"),
                model=body.get("model"),
            )

        if call_type == CALL_EMBEDDING:
            return EmbeddingResult(
                data=[
                    {"index": item.get("index", i), "embedding": item.get("embedding")}
                    for i, item in enumerate(body.get("data") or [])
                ],
                usage=usage,
                model=body.get("model"),
            )

        if call_type == CALL_IMAGE:
            images: List[Dict[str, Any]] = []
            for item in body.get("data") or []:
                image = {k: item[k] for k in ("url", "b64_json", "revised_prompt") if item.get(k)}
                images.append(image)
            return ImageResult(images=images, usage=usage, model=body.get("model") or target.model)

        seconds = body.get("seconds") or 0
        return VideoResult(
            videos=[{k: body[k] for k in ("id", "status", "url") if body.get(k)}],
            duration_seconds=float(seconds),
            usage=usage,
            model=body.get("model") or target.model,
        )

    async def parse_stream(self, lines: AsyncIterator[str], target: VendorTarget) -> AsyncIterator[ChatChunk]:
        async for line in lines:
            data = iter_sse_data(line)
            if data is None or not data:
                continue
            if data == "[DONE]":
                return

            event = decode_json(data)
            if event is None:
                continue
            if "error" in event:
                error = event["error"] if isinstance(event["error"], dict) else {"message": str(event["error"])}
                raise AdapterError(
                    message=error.get("message") or "Upstream stream error",
                    error_type=error.get("type") or "api_error",
                    status_code=502,
                )

            chunk = ChatChunk(usage=parse_usage(event.get("usage")))
            choices = event.get("choices") or []
            if choices:
                delta = choices[0].get("delta") or {}
                chunk.role = delta.get("role")
                chunk.text = delta.get("content") or ""
                chunk.tool_calls = delta.get("tool_calls") or []
                chunk.finish_reason = choices[0].get("finish_reason")

            if chunk.has_delta or chunk.usage is not None or chunk.finish_reason:
                yield chunk
