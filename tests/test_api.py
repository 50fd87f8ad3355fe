"""End-to-end dispatch through the /api/v2 HTTP surface."""

import json

import httpx
import pytest

from tests.conftest import make_settings, openai_chat, openai_stream, vendor_error


CHAT_URL = "/api/v2/chat/completions"


def chat_body(model: str = "gpt-4o-mini", **extra):
    return {"model": model, "messages": [{"role": "user", "content": "hello"}], **extra}


def sse_frames(text: str):
    return [frame for frame in text.split("\n\n") if frame.strip()]


class TestChatCompletions:
    async def test_single_provider_success(self, client, runtime, store, vendor, openai_provider, user_headers):
        vendor.route("openai", openai_chat("Hi!"))

        resp = await client.post(CHAT_URL, json=chat_body(), headers=user_headers)

        assert resp.status_code == 200
        body = resp.json()
        assert body["role"] == "assistant"
        assert body["content"] == "Hi!"
        assert body["usage"] == {"inputTokens": 12, "outputTokens": 3, "totalTokens": 15}

        await runtime.tasks.drain()
        assert [c.status for c in store.model_calls] == ["success"]
        call = store.model_calls[0]
        assert call.provider_id == openai_provider.id
        assert call.user_did == "z1user"
        assert call.app_did == "z1app"
        assert call.model == "gpt-4o-mini"
        assert call.total_usage == 15
        assert len(store.usages) == 1

        upstream = vendor.hits("openai")
        assert len(upstream) == 1
        assert upstream[0].url.path == "/v1/chat/completions"
        assert upstream[0].headers["Authorization"] == "Bearer sk-openai-1"
        assert json.loads(upstream[0].content)["model"] == "gpt-4o-mini"

    async def test_response_carries_request_id_and_server_timing(self, client, vendor, openai_provider, user_headers):
        vendor.route("openai", openai_chat())

        resp = await client.post(
            CHAT_URL, json=chat_body(), headers={**user_headers, "X-Request-ID": "req_test_1"}
        )

        assert resp.headers["X-Request-ID"] == "req_test_1"
        timing = resp.headers["Server-Timing"]
        for phase in ("session", "maxProviderRetries", "ensureProvider", "preChecks", "providerTtfb"):
            assert f"{phase};dur=" in timing
        assert timing.rstrip().split(", ")[-1].startswith("total;dur=")

    async def test_prompt_is_accepted_instead_of_messages(self, client, vendor, openai_provider, user_headers):
        vendor.route("openai", openai_chat())

        resp = await client.post(CHAT_URL, json={"model": "gpt-4o-mini", "prompt": "hi"}, headers=user_headers)

        assert resp.status_code == 200
        sent = json.loads(vendor.hits("openai")[0].content)
        assert sent["messages"] == [{"role": "user", "content": "hi"}]

    async def test_model_nested_in_input(self, client, vendor, openai_provider, user_headers):
        vendor.route("openai", openai_chat())

        resp = await client.post(
            CHAT_URL,
            json={"input": {"modelOptions": {"model": "gpt-4o-mini", "temperature": 0.2},
                            "messages": [{"role": "user", "content": "hello"}]}},
            headers=user_headers,
        )

        assert resp.status_code == 200
        sent = json.loads(vendor.hits("openai")[0].content)
        assert sent["model"] == "gpt-4o-mini"
        assert sent["temperature"] == 0.2

    async def test_failover_to_second_provider(self, client, runtime, store, vendor, user_headers):
        openai = store.add_provider("openai")
        store.add_credential(openai, "sk-openai")
        openrouter = store.add_provider("openrouter")
        store.add_credential(openrouter, "sk-or")
        vendor.route("openai", vendor_error(500))
        vendor.route("openrouter", openai_chat("from openrouter"))

        resp = await client.post(CHAT_URL, json=chat_body("gpt-5-mini"), headers=user_headers)

        assert resp.status_code == 200
        assert resp.json()["content"] == "from openrouter"

        await runtime.tasks.drain()
        assert sorted(c.status for c in store.model_calls) == ["failed", "success"]
        failed = store.calls_with_status("failed")[0]
        assert failed.provider_id == openai.id
        assert "upstream failure" in failed.error_reason
        assert store.calls_with_status("success")[0].provider_id == openrouter.id

        upstream = vendor.hits("openrouter")
        assert len(upstream) == 1
        assert json.loads(upstream[0].content)["model"] == "openai/gpt-5-mini"

    async def test_all_providers_failing_surfaces_last_error(self, client, runtime, store, vendor, user_headers):
        for name in ("openai", "openrouter"):
            provider = store.add_provider(name)
            store.add_credential(provider, f"sk-{name}")
            vendor.route(name, vendor_error(500))

        resp = await client.post(CHAT_URL, json=chat_body("gpt-5-mini"), headers=user_headers)

        assert resp.status_code == 500
        message = resp.json()["error"]["message"]
        assert message.endswith("service is temporarily unavailable. Please try again later")

        await runtime.tasks.drain()
        assert [c.status for c in store.model_calls] == ["failed", "failed"]
        assert not store.usages

    async def test_non_retryable_vendor_error_stops_failover(self, client, runtime, store, vendor, user_headers):
        for name in ("openai", "openrouter"):
            provider = store.add_provider(name)
            store.add_credential(provider, f"sk-{name}")
        vendor.route("openai", vendor_error(400, "bad temperature"))
        vendor.route("openrouter", openai_chat())

        resp = await client.post(CHAT_URL, json=chat_body("gpt-5-mini"), headers=user_headers)

        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "bad temperature"
        assert not vendor.hits("openrouter")

    async def test_pinned_provider_is_not_failed_over(self, client, store, vendor, user_headers):
        for name in ("openai", "openrouter"):
            provider = store.add_provider(name)
            store.add_credential(provider, f"sk-{name}")
        vendor.route("openai", vendor_error(503))
        vendor.route("openrouter", openai_chat())

        resp = await client.post(CHAT_URL, json=chat_body("openai/gpt-5-mini"), headers=user_headers)

        assert resp.status_code == 503
        assert len(vendor.hits("openai")) == 1
        assert not vendor.hits("openrouter")


class TestValidation:
    async def test_empty_messages_rejected(self, client, runtime, store, vendor, openai_provider, user_headers):
        resp = await client.post(CHAT_URL, json={"model": "gpt-4o-mini", "messages": []}, headers=user_headers)

        assert resp.status_code == 400
        assert resp.json()["error"]["type"] == "invalid_request_error"
        await runtime.tasks.drain()
        assert not vendor.requests
        assert not store.model_calls

    async def test_missing_model_rejected(self, client, vendor, openai_provider, user_headers):
        resp = await client.post(CHAT_URL, json={"messages": [{"role": "user", "content": "x"}]}, headers=user_headers)

        assert resp.status_code == 400
        assert "Model" in resp.json()["error"]["message"]
        assert not vendor.requests

    async def test_invalid_json_rejected(self, client, openai_provider, user_headers):
        resp = await client.post(
            CHAT_URL, content=b"{not json", headers={**user_headers, "Content-Type": "application/json"}
        )

        assert resp.status_code == 400

    async def test_missing_user_identity(self, client, vendor, openai_provider):
        resp = await client.post(CHAT_URL, json=chat_body())

        assert resp.status_code == 401
        assert not vendor.requests

    async def test_unsupported_model(self, client, runtime, store, vendor, openai_provider, user_headers):
        resp = await client.post(CHAT_URL, json=chat_body("totally-unknown-model"), headers=user_headers)

        assert resp.status_code == 400
        assert resp.json()["error"]["type"] == "unsupported_model"
        await runtime.tasks.drain()
        assert not vendor.requests
        assert not store.model_calls

    @pytest.mark.parametrize("settings", [make_settings(only_listed_models=True)])
    async def test_unlisted_model_not_found(self, settings, client, runtime, store, vendor, openai_provider, user_headers):
        resp = await client.post(CHAT_URL, json=chat_body(), headers=user_headers)

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "MODEL_NOT_FOUND"
        await runtime.tasks.drain()
        assert not vendor.requests
        assert not store.model_calls


class TestStreaming:
    async def test_stream_forwards_chunks_and_trailer(self, client, runtime, store, vendor, openai_provider, user_headers):
        vendor.route("openai", openai_stream(["Hel", "lo"]))

        resp = await client.post(CHAT_URL, json=chat_body(stream=True), headers=user_headers)

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")

        frames = sse_frames(resp.text)
        assert frames[-1] == "data: [DONE]"
        assert frames[-2].startswith("event: server-timing\ndata: ")
        assert "streaming;dur=" in frames[-2]

        payloads = [json.loads(f[len("data: "):]) for f in frames[:-2]]
        contents = [p["delta"]["content"] for p in payloads if "delta" in p and "content" in p["delta"]]
        assert contents == ["Hel", "lo"]
        assert payloads[-1] == {"usage": {"inputTokens": 12, "outputTokens": 4, "totalTokens": 16}}

        await runtime.tasks.drain()
        assert [c.status for c in store.model_calls] == ["success"]
        assert store.model_calls[0].total_usage == 16

        sent = json.loads(vendor.hits("openai")[0].content)
        assert sent["stream"] is True
        assert sent["stream_options"] == {"include_usage": True}

    async def test_stream_fails_over_before_first_byte(self, client, runtime, store, vendor, user_headers):
        for name in ("openai", "openrouter"):
            provider = store.add_provider(name)
            store.add_credential(provider, f"sk-{name}")
        vendor.route("openai", vendor_error(502))
        vendor.route("openrouter", openai_stream(["ok"]))

        resp = await client.post(CHAT_URL, json=chat_body("gpt-5-mini", stream=True), headers=user_headers)

        assert resp.status_code == 200
        assert '"content": "ok"' in resp.text

        await runtime.tasks.drain()
        assert sorted(c.status for c in store.model_calls) == ["failed", "success"]


class TestOtherCallTypes:
    async def test_embeddings(self, client, runtime, store, vendor, openai_provider, user_headers):
        vendor.route("openai", lambda request: httpx.Response(200, json={
            "data": [{"index": 0, "embedding": [0.1, 0.2]}],
            "model": "text-embedding-3-small",
            "usage": {"prompt_tokens": 4, "total_tokens": 4},
        }))

        resp = await client.post(
            "/api/v2/embeddings",
            json={"model": "text-embedding-3-small", "input": "hello"},
            headers=user_headers,
        )

        assert resp.status_code == 200
        assert resp.json()["data"] == [{"index": 0, "embedding": [0.1, 0.2]}]
        assert vendor.hits("openai")[0].url.path == "/v1/embeddings"

        await runtime.tasks.drain()
        assert store.model_calls[0].type == "embedding"

    @pytest.mark.parametrize("path", ["/api/v2/image/generations", "/api/v2/images/generations"])
    async def test_image_generation(self, path, client, runtime, store, vendor, openai_provider, user_headers):
        vendor.route("openai", lambda request: httpx.Response(200, json={
            "data": [{"url": "https://img.example/1.png"}, {"url": "https://img.example/2.png"}],
        }))

        resp = await client.post(
            path,
            json={"model": "dall-e-3", "prompt": "a cat", "n": 2, "size": "1024x1024"},
            headers=user_headers,
        )

        assert resp.status_code == 200
        assert len(resp.json()["images"]) == 2
        assert resp.json()["usage"]["imageCount"] == 2

        await runtime.tasks.drain()
        call = store.model_calls[0]
        assert call.type == "imageGeneration"
        assert call.total_usage == 2
        assert call.usage_metrics["size"] == "1024x1024"


class TestStatus:
    async def test_available_with_active_credential(self, client, openai_provider):
        resp = await client.get("/api/v2/status")

        assert resp.status_code == 200
        assert resp.json() == {"available": True}

    async def test_unavailable_without_credentials(self, client, store):
        provider = store.add_provider("openai")
        store.add_credential(provider, "sk-dead", active=False)

        resp = await client.get("/api/v2/status")

        assert resp.json() == {"available": False}

    async def test_status_reads_through_the_cache(self, client, store, openai_provider):
        for _ in range(3):
            assert (await client.get("/api/v2/status")).json() == {"available": True}

        assert store.queries["providers"] == 1
        assert store.queries["credentials"] == 1
