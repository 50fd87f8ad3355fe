"""Vendor adapters: request building and response normalization."""

import json

import httpx
import pytest

from aihub.gateway.adapters import (
    AdapterError,
    AnthropicAdapter,
    BedrockAdapter,
    GeminiAdapter,
    OpenAIAdapter,
    VendorTarget,
    get_adapter,
)
from aihub.gateway.adapters.openai import parse_usage
from aihub.gateway.store import CredentialRecord


def target(provider: str, model: str, key: str = "sk-test", **kwargs) -> VendorTarget:
    credential = CredentialRecord(id="cred-1", provider_id=f"prov-{provider}", value={"api_key": key} if key else {})
    return VendorTarget(provider_name=provider, model=model, credential=credential, **kwargs)


async def lines(*events):
    for event in events:
        yield f"data: {json.dumps(event)}"
        yield ""


async def collect(stream):
    return [chunk async for chunk in stream]


CHAT = {
    "messages": [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hello"},
    ],
    "temperature": 0.5,
}


class TestRegistry:
    def test_openai_compatible_vendors_share_an_adapter(self):
        assert isinstance(get_adapter("deepseek"), OpenAIAdapter)
        assert get_adapter("openrouter") is get_adapter("openrouter")

    def test_unknown_provider(self):
        with pytest.raises(AdapterError) as exc:
            get_adapter("ideogram")
        assert exc.value.status_code == 400


class TestOpenAI:
    def test_cached_prompt_tokens_are_split_out(self):
        usage = parse_usage({"prompt_tokens": 100, "completion_tokens": 5, "prompt_tokens_details": {"cached_tokens": 40}})

        assert (usage.input_tokens, usage.output_tokens, usage.cache_read_input_tokens) == (60, 5, 40)

    def test_vendor_base_url(self):
        request = OpenAIAdapter().build_request("chatCompletion", CHAT, target("deepseek", "deepseek-chat"))

        assert request.url == "https://api.deepseek.com/v1/chat/completions"
        assert request.body["temperature"] == 0.5

    def test_provider_base_url_overrides_default(self):
        request = OpenAIAdapter().build_request(
            "embedding", {"input": "hi"}, target("ollama", "nomic-embed-text", base_url="http://gpu-box:11434/v1/")
        )

        assert request.url == "http://gpu-box:11434/v1/embeddings"

    def test_error_body_is_parsed(self):
        response = httpx.Response(429, json={"error": {"message": "slow down", "type": "rate_limit", "code": "rate_limit_exceeded"}})

        error = OpenAIAdapter().parse_error(response)

        assert (error.status_code, error.message, error.code) == (429, "slow down", "rate_limit_exceeded")


class TestAnthropic:
    def test_system_prompt_moves_to_top_level(self):
        request = AnthropicAdapter().build_request("chatCompletion", CHAT, target("anthropic", "claude-3-5-sonnet"))

        assert request.url == "https://api.anthropic.com/v1/messages"
        assert request.headers["x-api-key"] == "sk-test"
        assert request.headers["anthropic-version"] == "2023-06-01"
        assert request.body["system"] == "be brief"
        assert request.body["messages"] == [{"role": "user", "content": [{"type": "text", "text": "hello"}]}]
        assert request.body["max_tokens"] == 4096

    def test_tool_results_become_user_blocks(self):
        payload = {"messages": [
            {"role": "user", "content": "weather?"},
            {"role": "assistant", "tool_calls": [{"id": "t1", "function": {"name": "weather", "arguments": "{\"city\": \"Oslo\"}"}}]},
            {"role": "tool", "tool_call_id": "t1", "content": "rain"},
        ]}

        body = AnthropicAdapter().build_request("chatCompletion", payload, target("anthropic", "claude-3-haiku")).body

        assert body["messages"][1]["content"] == [{"type": "tool_use", "id": "t1", "name": "weather", "input": {"city": "Oslo"}}]
        assert body["messages"][2]["content"][0]["type"] == "tool_result"

    def test_missing_key(self):
        with pytest.raises(AdapterError) as exc:
            AnthropicAdapter().build_request("chatCompletion", CHAT, target("anthropic", "claude-3-haiku", key=None))
        assert exc.value.status_code == 401

    def test_parse_response(self):
        result = AnthropicAdapter().parse_response("chatCompletion", {
            "model": "claude-3-haiku",
            "content": [{"type": "text", "text": "Hi"}],
            "stop_reason": "end_turn",
            "usage": {"input_tokens": 9, "output_tokens": 2, "cache_read_input_tokens": 4},
        }, target("anthropic", "claude-3-haiku"))

        assert result.text == "Hi"
        assert result.finish_reason == "stop"
        assert result.usage.total_tokens == 15

    async def test_parse_stream(self):
        events = lines(
            {"type": "message_start", "message": {"usage": {"input_tokens": 9, "output_tokens": 1}}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hel"}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "lo"}},
            {"type": "message_delta", "delta": {"stop_reason": "max_tokens"}, "usage": {"output_tokens": 7}},
            {"type": "message_stop"},
        )

        chunks = await collect(AnthropicAdapter().parse_stream(events, target("anthropic", "claude-3-haiku")))

        assert "".join(c.text for c in chunks) == "Hello"
        assert chunks[0].role == "assistant"
        assert any(c.finish_reason == "length" for c in chunks)
        assert (chunks[-1].usage.input_tokens, chunks[-1].usage.output_tokens) == (9, 7)

    async def test_overloaded_stream_event(self):
        events = lines({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})

        with pytest.raises(AdapterError) as exc:
            await collect(AnthropicAdapter().parse_stream(events, target("anthropic", "claude-3-haiku")))
        assert exc.value.status_code == 529


class TestGemini:
    def test_chat_request(self):
        request = GeminiAdapter().build_request("chatCompletion", {**CHAT, "maxTokens": 64}, target("google", "gemini-1.5-pro"))

        assert request.url == "https://generativelanguage.googleapis.com/v1beta/models/gemini-1.5-pro:generateContent"
        assert request.headers["x-goog-api-key"] == "sk-test"
        assert request.body["systemInstruction"] == {"parts": [{"text": "be brief"}]}
        assert request.body["contents"] == [{"role": "user", "parts": [{"text": "hello"}]}]
        assert request.body["generationConfig"] == {"maxOutputTokens": 64, "temperature": 0.5}

    def test_stream_request_uses_sse(self):
        request = GeminiAdapter().build_request("chatCompletion", {**CHAT, "stream": True}, target("google", "gemini-1.5-pro"))

        assert request.url.endswith(":streamGenerateContent")
        assert request.params == {"alt": "sse"}

    def test_batch_embedding(self):
        request = GeminiAdapter().build_request("embedding", {"input": ["a", "b"]}, target("google", "text-embedding-004"))

        assert request.url.endswith(":batchEmbedContents")
        assert len(request.body["requests"]) == 2

    def test_parse_response_skips_thoughts(self):
        result = GeminiAdapter().parse_response("chatCompletion", {
            "candidates": [{
                "content": {"parts": [{"text": "thinking...", "thought": True}, {"text": "Answer"}]},
                "finishReason": "STOP",
            }],
            "usageMetadata": {"promptTokenCount": 10, "candidatesTokenCount": 3, "thoughtsTokenCount": 5},
        }, target("google", "gemini-2.5-pro"))

        assert result.text == "Answer"
        assert result.finish_reason == "stop"
        assert (result.usage.input_tokens, result.usage.output_tokens) == (10, 8)

    def test_blocked_prompt(self):
        with pytest.raises(AdapterError) as exc:
            GeminiAdapter().parse_response(
                "chatCompletion", {"promptFeedback": {"blockReason": "SAFETY"}}, target("google", "gemini-1.5-pro")
            )
        assert exc.value.status_code == 400

    def test_image_generation_is_unsupported(self):
        assert not GeminiAdapter().supports("imageGeneration")


class TestBedrock:
    def test_regional_endpoint(self):
        request = BedrockAdapter().build_request(
            "chatCompletion", CHAT, target("bedrock", "anthropic.claude-3-haiku", region="us-east-1")
        )

        assert request.url == "https://bedrock-runtime.us-east-1.amazonaws.com/model/anthropic.claude-3-haiku/converse"
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert request.body["system"] == [{"text": "be brief"}]
        assert request.body["inferenceConfig"] == {"temperature": 0.5}

    def test_region_is_required(self):
        with pytest.raises(AdapterError):
            BedrockAdapter().build_request("chatCompletion", CHAT, target("bedrock", "anthropic.claude-3-haiku"))

    def test_parse_response(self):
        result = BedrockAdapter().parse_response("chatCompletion", {
            "output": {"message": {"content": [{"text": "Hi"}]}},
            "stopReason": "end_turn",
            "usage": {"inputTokens": 5, "outputTokens": 1, "cacheReadInputTokens": 2},
        }, target("bedrock", "anthropic.claude-3-haiku", region="us-east-1"))

        assert result.text == "Hi"
        assert result.usage.total_tokens == 8

    async def test_stream_replays_converse(self):
        def handler(request):
            return httpx.Response(200, json={
                "output": {"message": {"content": [{"text": "whole answer"}]}},
                "stopReason": "end_turn",
                "usage": {"inputTokens": 5, "outputTokens": 2},
            })

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            chunks = await collect(BedrockAdapter().stream(
                client, CHAT, target("bedrock", "anthropic.claude-3-haiku", region="eu-west-1")
            ))

        assert chunks[0].text == "whole answer"
        assert chunks[-1].usage.output_tokens == 2
