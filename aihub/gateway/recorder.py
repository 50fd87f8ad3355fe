"""
Usage & Call Recorder.

Persists the outcome of every dispatch attempt without delaying or risking
the response:

- One ModelCall row per attempt (success or failed), written once through
  ModelCallContext.complete() / fail()
- One Usage row per successful request, plus a throttled meter report
- Model availability rows, upserted only when availability changes
- Credential bookkeeping (usage_count, last_used_at, weight recovery)

Every write is an independent background task with its own error boundary;
a failing Usage write never blocks or rolls back the ModelCall write, and
neither can reach the HTTP caller.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from aihub.core.config import BillingSettings, GatewaySettings
from aihub.gateway.adapters.base import CALL_IMAGE, CALL_VIDEO, TokenUsage
from aihub.gateway.cache import GatewayCache
from aihub.gateway.credit import MeterReporter
from aihub.gateway.errors import ModelError
from aihub.gateway.services.usage import calculate_credits, find_rate
from aihub.gateway.store import (
    CredentialRecord,
    ModelCallRecord,
    ModelStatusRecord,
    RecordStore,
    UsageRecord,
)
from aihub.gateway.tasks import BackgroundTasks
from aihub.models.gateway import CallStatus

logger = structlog.get_logger(__name__)

ERROR_REASON_LIMIT = 1000

# Vendor statuses that say something about model availability
MODEL_STATUS_CODES = frozenset({401, 403, 404, 500, 501, 503})


@dataclass
class CallOutcome:
    """Billable quantities of one successful call."""

    usage: Optional[TokenUsage] = None
    image_count: int = 0
    duration_seconds: float = 0.0
    credits: Optional[float] = None


class ModelCallContext:
    """
    One dispatch attempt.

    complete() or fail() schedules exactly one ModelCall write; any later
    call is ignored.
    """

    def __init__(self, recorder: "CallRecorder", record: ModelCallRecord):
        self.recorder = recorder
        self.record = record
        self._started = time.perf_counter()
        self.completed = False

    @property
    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self._started) * 1000)

    def _total_usage(self, outcome: CallOutcome) -> int:
        if self.record.type == CALL_IMAGE:
            return outcome.image_count
        if self.record.type == CALL_VIDEO:
            return int(round(outcome.duration_seconds))
        return outcome.usage.total_tokens if outcome.usage else 0

    def complete(self, outcome: CallOutcome, ttfb_ms: Optional[int] = None) -> None:
        if self.completed:
            return
        self.completed = True

        record = self.record
        record.status = CallStatus.SUCCESS.value
        record.total_usage = self._total_usage(outcome)
        record.credits = outcome.credits or 0
        record.duration_ms = self.elapsed_ms
        record.ttfb_ms = ttfb_ms
        if outcome.usage is not None:
            record.usage_metrics = {**record.usage_metrics, **outcome.usage.to_dict()}

        logger.info(
            "Model call completed",
            request_id=record.request_id,
            attempt=record.attempt,
            model=record.model,
            duration_ms=record.duration_ms,
            total_usage=record.total_usage,
            credits=record.credits,
        )
        self.recorder.write_model_call(record)

    def fail(self, error_reason: str, outcome: Optional[CallOutcome] = None) -> None:
        if self.completed:
            return
        self.completed = True

        record = self.record
        record.status = CallStatus.FAILED.value
        record.error_reason = error_reason[:ERROR_REASON_LIMIT]
        record.duration_ms = self.elapsed_ms
        record.credits = 0
        if outcome is not None:
            record.total_usage = self._total_usage(outcome)

        logger.warning(
            "Model call failed",
            request_id=record.request_id,
            attempt=record.attempt,
            model=record.model,
            duration_ms=record.duration_ms,
            error_reason=error_reason[:200],
        )
        self.recorder.write_model_call(record)


class CallRecorder:
    """Schedules every post-response write of the dispatch pipeline."""

    def __init__(
        self,
        store: RecordStore,
        cache: GatewayCache,
        tasks: BackgroundTasks,
        meter: MeterReporter,
        gateway_settings: GatewaySettings,
        billing_settings: BillingSettings,
    ):
        self.store = store
        self.cache = cache
        self.tasks = tasks
        self.meter = meter
        self.gateway_settings = gateway_settings
        self.billing_settings = billing_settings

    def start_call(
        self,
        *,
        user_did: str,
        model: str,
        call_type: str,
        request_id: Optional[str] = None,
        attempt: int = 1,
        app_did: Optional[str] = None,
        provider_id: Optional[str] = None,
        credential_id: Optional[str] = None,
        usage_metrics: Optional[Dict[str, Any]] = None,
    ) -> ModelCallContext:
        """In-memory context for one attempt. Nothing is written until it finishes."""
        record = ModelCallRecord(
            user_did=user_did,
            model=model,
            type=call_type,
            status=CallStatus.PROCESSING.value,
            call_time=int(time.time()),
            request_id=request_id,
            attempt=attempt,
            app_did=app_did,
            provider_id=provider_id,
            credential_id=credential_id,
            usage_metrics=dict(usage_metrics or {}),
        )
        return ModelCallContext(self, record)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def write_model_call(self, record: ModelCallRecord) -> None:
        self.tasks.spawn(
            self.store.create_model_call(record),
            name="model-call-write",
            request_id=record.request_id,
            status=record.status,
        )

    async def compute_credits(
        self,
        call_type: str,
        model: str,
        provider_id: Optional[str],
        outcome: CallOutcome,
    ) -> Optional[float]:
        """Credits for a call. Lookup failures are logged and yield None."""
        try:
            rates = await self.cache.get_cached_model_rates(model, provider_id)
        except Exception as e:
            logger.error("Model rate lookup failed", model=model, provider_id=provider_id, error=str(e))
            return None

        return calculate_credits(
            call_type,
            find_rate(rates, call_type, model),
            base_price=self.billing_settings.base_price,
            decimal_places=self.billing_settings.credit_decimal_places,
            usage=outcome.usage,
            image_count=outcome.image_count,
            duration_seconds=outcome.duration_seconds,
        )

    def record_usage(
        self,
        *,
        call_type: str,
        model: str,
        user_did: str,
        app_id: Optional[str],
        provider_id: Optional[str],
        outcome: CallOutcome,
    ) -> None:
        """Schedule the Usage row and the meter report for a billed request."""
        usage = outcome.usage or TokenUsage()
        record = UsageRecord(
            type=call_type,
            model=model,
            user_did=user_did,
            app_id=app_id,
            provider_id=provider_id,
            prompt_tokens=usage.input_tokens,
            completion_tokens=usage.output_tokens,
            cache_creation_input_tokens=usage.cache_creation_input_tokens,
            cache_read_input_tokens=usage.cache_read_input_tokens,
            number_of_image_generation=outcome.image_count,
            media_duration=outcome.duration_seconds,
            used_credits=outcome.credits,
        )
        self.tasks.spawn(self._write_usage(record), name="usage-write", user_did=user_did, model=model)

    async def _write_usage(self, record: UsageRecord) -> None:
        await self.store.create_usage(record)
        usage_tokens = (
            record.prompt_tokens
            + record.completion_tokens
            + record.cache_creation_input_tokens
            + record.cache_read_input_tokens
        )
        self.meter.report(
            app_id=record.app_id or "",
            user_did=record.user_did or "",
            credits=record.used_credits,
            total_tokens=usage_tokens,
            images_generated=record.number_of_image_generation,
        )

    def update_model_status(
        self,
        *,
        provider_id: Optional[str],
        model: str,
        call_type: str,
        available: bool,
        response_time: Optional[int] = None,
        error: Optional[ModelError] = None,
        status_code: Optional[int] = None,
    ) -> None:
        """Schedule an availability upsert for success or a status-bearing failure."""
        if not provider_id:
            return
        if not available and status_code not in MODEL_STATUS_CODES:
            return

        record = ModelStatusRecord(
            provider_id=provider_id,
            model=model,
            type=call_type,
            available=available,
            response_time=response_time,
            error=error.to_dict() if error else None,
        )
        self.tasks.spawn(
            self.store.upsert_model_status(record),
            name="model-status-write",
            provider_id=provider_id,
            model=model,
        )

    def record_credential_use(self, credential: CredentialRecord) -> None:
        default_weight = self.gateway_settings.default_credential_weight
        recover = None
        if not credential.active or credential.weight < default_weight:
            recover = default_weight
        self.tasks.spawn(
            self.cache.record_credential_use(credential.id, credential.provider_id, recover_weight=recover),
            name="credential-use",
            credential_id=credential.id,
        )
