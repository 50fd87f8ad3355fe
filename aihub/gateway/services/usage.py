"""
Usage accounting: credit calculation and token estimation.

Credits per call type (rates are per 1000 tokens, scaled by base_price):

- chatCompletion / embedding: prompt and completion tokens at the input and
  output rates, cache writes/reads at caching.writeRate / readRate
  (falling back to the input rate)
- imageGeneration: images * outputRate
- video: seconds * outputRate

A missing rate yields None, never an error.
"""

import json
import re
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from typing import Any, Dict, List, Optional

import structlog
import tiktoken

from aihub.gateway.adapters.base import CALL_IMAGE, CALL_VIDEO, TokenUsage, message_text
from aihub.gateway.store import ModelRateRecord

logger = structlog.get_logger(__name__)

_THOUSAND = Decimal(1000)

# Model id patterns -> tiktoken encoding
_ENCODING_MAP = [
    (re.compile(r"o1[-_]|o3|gpt-4o|gpt-4\.1|gpt-5", re.I), "o200k_base"),
]
_DEFAULT_ENCODING = "cl100k_base"


def _dec(value: Any) -> Decimal:
    return Decimal(str(value or 0))


def calculate_credits(
    call_type: str,
    rate: Optional[ModelRateRecord],
    base_price: float,
    decimal_places: int,
    usage: Optional[TokenUsage] = None,
    image_count: int = 0,
    duration_seconds: float = 0.0,
) -> Optional[float]:
    """Credits consumed by one call, or None when the model has no rate."""
    if rate is None:
        return None

    price = _dec(base_price)
    input_rate = _dec(rate.input_rate)
    output_rate = _dec(rate.output_rate)

    if call_type == CALL_IMAGE:
        total = Decimal(image_count) * output_rate * price
    elif call_type == CALL_VIDEO:
        total = _dec(duration_seconds) * output_rate * price
    else:
        usage = usage or TokenUsage()
        caching = rate.caching or {}
        write_rate = _dec(caching.get("writeRate")) or input_rate
        read_rate = _dec(caching.get("readRate")) or input_rate

        total = (
            Decimal(usage.input_tokens) / _THOUSAND * input_rate
            + Decimal(usage.output_tokens) / _THOUSAND * output_rate
            + Decimal(usage.cache_creation_input_tokens) / _THOUSAND * write_rate
            + Decimal(usage.cache_read_input_tokens) / _THOUSAND * read_rate
        ) * price

    quantum = Decimal(1).scaleb(-decimal_places)
    return float(total.quantize(quantum, rounding=ROUND_HALF_UP))


def find_rate(rates: List[ModelRateRecord], call_type: str, model: str) -> Optional[ModelRateRecord]:
    for rate in rates:
        if rate.type == call_type and rate.model == model:
            return rate
    return None


# =============================================================================
# Token estimation
# =============================================================================

def _encoding_name(model: str) -> str:
    for pattern, encoding in _ENCODING_MAP:
        if pattern.search(model):
            return encoding
    return _DEFAULT_ENCODING


@lru_cache(maxsize=4)
def _get_encoding(name: str) -> Optional[tiktoken.Encoding]:
    try:
        return tiktoken.get_encoding(name)
    except Exception as e:
        # Encoding files are fetched on first use
        logger.warning("tiktoken encoding unavailable, using length estimate", encoding=name, error=str(e))
        return None


def count_text_tokens(text: str, model: str = "") -> int:
    if not text:
        return 0
    encoding = _get_encoding(_encoding_name(model))
    if encoding is None:
        return max(1, len(text) // 4)
    return len(encoding.encode(text))


def count_messages_tokens(messages: List[Dict[str, Any]], model: str = "") -> int:
    """Estimate prompt tokens for chat messages, with per-message framing overhead."""
    if not messages:
        return 0
    total = 0
    for message in messages:
        total += 4
        total += count_text_tokens(str(message.get("role", "")), model)
        content = message.get("content")
        if isinstance(content, list) and any(
            isinstance(p, dict) and p.get("type") != "text" for p in content
        ):
            total += count_text_tokens(json.dumps(content), model)
        else:
            total += count_text_tokens(message_text(content), model)
    return total + 2


def estimate_chat_usage(messages: List[Dict[str, Any]], completion: str, model: str = "") -> TokenUsage:
    """Token usage for vendors that report none."""
    return TokenUsage(
        input_tokens=count_messages_tokens(messages, model),
        output_tokens=count_text_tokens(completion, model),
    )
