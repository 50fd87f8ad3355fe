"""
Gemini Adapter - Google Generative Language API.

Uses generateContent / streamGenerateContent (SSE via alt=sse) for chat and
embedContent / batchEmbedContents for embeddings. Roles are user/model and
system prompts travel as systemInstruction.
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from aihub.gateway.adapters.base import (
    CALL_CHAT,
    CALL_EMBEDDING,
    AdapterError,
    ChatChunk,
    ChatResult,
    EmbeddingResult,
    TokenUsage,
    UpstreamRequest,
    VendorAdapter,
    VendorTarget,
    decode_json,
    iter_sse_data,
    message_text,
    option,
)


DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

_FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
}


def _usage(metadata: Optional[Dict[str, Any]]) -> Optional[TokenUsage]:
    if not metadata:
        return None
    cached = int(metadata.get("cachedContentTokenCount") or 0)
    return TokenUsage(
        input_tokens=max(int(metadata.get("promptTokenCount") or 0) - cached, 0),
        output_tokens=int(metadata.get("candidatesTokenCount") or 0)
        + int(metadata.get("thoughtsTokenCount") or 0),
        cache_read_input_tokens=cached,
    )


def _candidate_text(candidate: Dict[str, Any]) -> str:
    parts = (candidate.get("content") or {}).get("parts") or []
    return "".join(p.get("text", "") for p in parts if not p.get("thought"))


def _candidate_tool_calls(candidate: Dict[str, Any]) -> List[Dict[str, Any]]:
    calls = []
    for part in (candidate.get("content") or {}).get("parts") or []:
        call = part.get("functionCall")
        if call:
            calls.append({
                "id": call.get("id") or call.get("name"),
                "type": "function",
                "function": {"name": call.get("name"), "arguments": json.dumps(call.get("args") or {})},
            })
    return calls


class GeminiAdapter(VendorAdapter):
    """Adapter for Google Gemini models."""

    ADAPTER_TYPE = "google"

    SUPPORTED_CALL_TYPES: Set[str] = {CALL_CHAT, CALL_EMBEDDING}

    def _headers(self, target: VendorTarget) -> Dict[str, str]:
        api_key = target.credential.api_key
        if not api_key:
            raise AdapterError(
                message="Google credential has no api_key",
                error_type="authentication_error",
                status_code=401,
            )
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "x-goog-api-key": api_key,
        }

    def _chat_body(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        system_parts: List[Dict[str, str]] = []
        contents: List[Dict[str, Any]] = []
        for message in payload["messages"]:
            text = message_text(message.get("content"))
            if message.get("role") == "system":
                system_parts.append({"text": text})
                continue
            role = "model" if message.get("role") == "assistant" else "user"
            contents.append({"role": role, "parts": [{"text": text}]})

        body: Dict[str, Any] = {"contents": contents}
        if system_parts:
            body["systemInstruction"] = {"parts": system_parts}

        config: Dict[str, Any] = {}
        max_tokens = option(payload, "maxTokens", "max_tokens")
        if max_tokens is not None:
            config["maxOutputTokens"] = max_tokens
        temperature = option(payload, "temperature")
        if temperature is not None:
            config["temperature"] = temperature
        top_p = option(payload, "topP", "top_p")
        if top_p is not None:
            config["topP"] = top_p
        if config:
            body["generationConfig"] = config

        tools = option(payload, "tools")
        if tools:
            body["tools"] = [{
                "functionDeclarations": [
                    {
                        "name": (t.get("function") or t).get("name"),
                        "description": (t.get("function") or t).get("description", ""),
                        "parameters": (t.get("function") or t).get("parameters"),
                    }
                    for t in tools
                ]
            }]
        return body

    def build_request(self, call_type: str, payload: Dict[str, Any], target: VendorTarget) -> UpstreamRequest:
        base_url = (target.base_url or DEFAULT_BASE_URL).rstrip("/")
        model_path = f"{base_url}/models/{target.model}"

        if call_type == CALL_EMBEDDING:
            inputs = payload["input"]
            if isinstance(inputs, list):
                return UpstreamRequest(
                    method="POST",
                    url=f"{model_path}:batchEmbedContents",
                    headers=self._headers(target),
                    body={
                        "requests": [
                            {"model": f"models/{target.model}", "content": {"parts": [{"text": str(i)}]}}
                            for i in inputs
                        ]
                    },
                )
            return UpstreamRequest(
                method="POST",
                url=f"{model_path}:embedContent",
                headers=self._headers(target),
                body={"content": {"parts": [{"text": str(inputs)}]}},
            )

        if payload.get("stream"):
            return UpstreamRequest(
                method="POST",
                url=f"{model_path}:streamGenerateContent",
                headers=self._headers(target),
                body=self._chat_body(payload),
                params={"alt": "sse"},
                stream=True,
            )
        return UpstreamRequest(
            method="POST",
            url=f"{model_path}:generateContent",
            headers=self._headers(target),
            body=self._chat_body(payload),
        )

    def parse_response(self, call_type: str, body: Dict[str, Any], target: VendorTarget) -> Any:
        if call_type == CALL_EMBEDDING:
            if "embeddings" in body:
                vectors = [e.get("values") for e in body.get("embeddings") or []]
            else:
                vectors = [(body.get("embedding") or {}).get("values")]
            return EmbeddingResult(
                data=[{"index": i, "embedding": v} for i, v in enumerate(vectors)],
                model=target.model,
            )

        candidates = body.get("candidates") or []
        if not candidates:
            feedback = body.get("promptFeedback") or {}
            raise AdapterError(
                message=f"Gemini returned no candidates: {feedback.get('blockReason', 'unknown')}",
                error_type="content_filter",
                status_code=400,
            )
        candidate = candidates[0]
        return ChatResult(
            text=_candidate_text(candidate),
            tool_calls=_candidate_tool_calls(candidate),
            usage=_usage(body.get("usageMetadata")),
            finish_reason=_FINISH_REASONS.get(candidate.get("finishReason"), candidate.get("finishReason")),
            model=body.get("modelVersion") or target.model,
        )

    async def parse_stream(self, lines: AsyncIterator[str], target: VendorTarget) -> AsyncIterator[ChatChunk]:
        first = True
        async for line in lines:
            data = iter_sse_data(line)
            if not data:
                continue
            event = decode_json(data)
            if event is None:
                continue
            if "error" in event:
                error = event["error"] or {}
                raise AdapterError(
                    message=error.get("message") or "Upstream stream error",
                    error_type=error.get("status") or "api_error",
                    status_code=int(error.get("code") or 502),
                )

            chunk = ChatChunk(usage=_usage(event.get("usageMetadata")))
            if first:
                chunk.role = "assistant"
                first = False
            candidates = event.get("candidates") or []
            if candidates:
                chunk.text = _candidate_text(candidates[0])
                chunk.tool_calls = _candidate_tool_calls(candidates[0])
                reason = candidates[0].get("finishReason")
                if reason:
                    chunk.finish_reason = _FINISH_REASONS.get(reason, reason)
            yield chunk
