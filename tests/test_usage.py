"""Credit calculation and token estimation."""

import pytest

from aihub.gateway.adapters import TokenUsage
from aihub.gateway.services.usage import (
    calculate_credits,
    count_messages_tokens,
    count_text_tokens,
    estimate_chat_usage,
    find_rate,
)
from aihub.gateway.store import ModelRateRecord


def rate(type: str = "chatCompletion", input_rate: float = 1.0, output_rate: float = 2.0, caching=None):
    return ModelRateRecord(
        provider_id="prov-openai",
        model="gpt-4o",
        type=type,
        input_rate=input_rate,
        output_rate=output_rate,
        caching=caching,
    )


class TestCalculateCredits:
    def test_chat_tokens(self):
        usage = TokenUsage(input_tokens=1000, output_tokens=500)

        credits = calculate_credits("chatCompletion", rate(), base_price=1.0, decimal_places=10, usage=usage)

        assert credits == pytest.approx(2.0)

    def test_base_price_scales(self):
        usage = TokenUsage(input_tokens=2000)

        assert calculate_credits("embedding", rate(), 0.5, 10, usage=usage) == pytest.approx(1.0)

    def test_cache_tokens_use_caching_rates(self):
        usage = TokenUsage(cache_creation_input_tokens=1000, cache_read_input_tokens=1000)
        priced = rate(caching={"writeRate": 1.25, "readRate": 0.1})

        assert calculate_credits("chatCompletion", priced, 1.0, 10, usage=usage) == pytest.approx(1.35)

    def test_cache_tokens_fall_back_to_input_rate(self):
        usage = TokenUsage(cache_read_input_tokens=1000)

        assert calculate_credits("chatCompletion", rate(input_rate=3.0), 1.0, 10, usage=usage) == pytest.approx(3.0)

    def test_images(self):
        credits = calculate_credits("imageGeneration", rate("imageGeneration", output_rate=0.04), 2.0, 10, image_count=3)

        assert credits == pytest.approx(0.24)

    def test_video_seconds(self):
        credits = calculate_credits("video", rate("video", output_rate=0.1), 1.0, 10, duration_seconds=8)

        assert credits == pytest.approx(0.8)

    def test_rounding(self):
        usage = TokenUsage(input_tokens=1)

        assert calculate_credits("chatCompletion", rate(), 1.0, 2, usage=usage) == 0.0
        assert calculate_credits("chatCompletion", rate(input_rate=5.0), 1.0, 3, usage=usage) == 0.005

    def test_missing_rate(self):
        assert calculate_credits("chatCompletion", None, 1.0, 10, usage=TokenUsage(input_tokens=10)) is None


def test_find_rate_matches_type_and_model():
    rates = [rate("embedding"), rate("chatCompletion")]

    assert find_rate(rates, "chatCompletion", "gpt-4o").type == "chatCompletion"
    assert find_rate(rates, "imageGeneration", "gpt-4o") is None
    assert find_rate(rates, "chatCompletion", "gpt-4o-mini") is None


class TestTokenEstimation:
    def test_empty_text(self):
        assert count_text_tokens("") == 0

    def test_longer_text_has_more_tokens(self):
        short = count_text_tokens("hello", "gpt-4o")
        long = count_text_tokens("hello " * 50, "gpt-4o")

        assert 0 < short < long

    def test_messages_include_framing(self):
        messages = [{"role": "user", "content": "hi"}]

        assert count_messages_tokens(messages) > count_text_tokens("hi")
        assert count_messages_tokens([]) == 0

    def test_multipart_content(self):
        messages = [{"role": "user", "content": [{"type": "text", "text": "describe"}, {"type": "image_url", "image_url": {"url": "https://x"}}]}]

        assert count_messages_tokens(messages, "gpt-4o") > count_messages_tokens(
            [{"role": "user", "content": "describe"}], "gpt-4o"
        )

    def test_estimate_chat_usage(self):
        usage = estimate_chat_usage([{"role": "user", "content": "hello"}], "hi there", "gpt-4o")

        assert usage.input_tokens > 0
        assert usage.output_tokens > 0
        assert usage.total_tokens == usage.input_tokens + usage.output_tokens
