"""
Dispatch Orchestrator.

State machine per user request:

    Validate -> CreditCheck -> SelectProvider -> Invoke
        -> Success
        -> RetryableFailure -> SelectProvider (excluding tried providers)
        -> TerminalFailure

Rules:
- Validation and unsupported-model failures end the request before any
  provider is contacted and write no ModelCall row
- Every vendor invocation ends in exactly one ModelCall row
- Credential reactions (disable on auth errors, demote on 429) complete
  before the next attempt selects a credential
- Only the last failure is surfaced to the caller
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Type

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from aihub.core.config import BillingSettings, GatewaySettings
from aihub.gateway.adapters import (
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
    VendorTarget,
    VideoResult,
    get_adapter,
)
from aihub.gateway.adapters.base import MALFORMED_BODY_ERRORS, malformed_body
from aihub.gateway.cache import GatewayCache
from aihub.gateway.credit import CreditGate
from aihub.gateway.errors import (
    ModelError,
    ModelErrorType,
    ModelNotFoundError,
    ProviderUnavailableError,
    RequestValidationFailed,
    VendorError,
    classify_error,
)
from aihub.gateway.middleware.trace import RequestTimings
from aihub.gateway.recorder import CallOutcome, CallRecorder, ModelCallContext
from aihub.gateway.routing.registry import find_model, model_has_provider, parse_model_with_provider
from aihub.gateway.routing.rotation import ProviderCandidate, RotationSelector
from aihub.gateway.services.secret_manager import mask_credential_value
from aihub.gateway.services.usage import count_text_tokens, estimate_chat_usage
from aihub.gateway.store import CredentialRecord, ProviderRecord
from aihub.gateway.tasks import BackgroundTasks
from aihub.schemas.gateway import (
    ChatCompletionRequest,
    EmbeddingRequest,
    ImageGenerationRequest,
    VideoGenerationRequest,
)

logger = structlog.get_logger(__name__)


CALL_SCHEMAS: Dict[str, Type[BaseModel]] = {
    CALL_CHAT: ChatCompletionRequest,
    CALL_EMBEDDING: EmbeddingRequest,
    CALL_IMAGE: ImageGenerationRequest,
    CALL_VIDEO: VideoGenerationRequest,
}

# Vendor statuses worth another provider
RETRYABLE_STATUS = frozenset({401, 402, 403, 408, 429, 500, 502, 503, 504, 529})


@dataclass
class DispatchRequest:
    """One inbound gateway request."""

    call_type: str
    body: Dict[str, Any]
    user_did: str
    app_did: Optional[str] = None
    request_id: Optional[str] = None
    timings: RequestTimings = field(default_factory=RequestTimings)


@dataclass
class DispatchResult:
    """Successful non-streaming dispatch."""

    result: Any
    provider: ProviderCandidate
    model: str
    outcome: CallOutcome
    attempts: int


@dataclass
class _Attempt:
    candidate: ProviderCandidate
    credential: CredentialRecord
    context: ModelCallContext
    target: VendorTarget


def validate_request(call_type: str, body: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
    """
    Validate a request body and return (model, vendor payload).

    The model may sit at the top level, in input.model or in
    input.modelOptions.model; nested input fields are merged into the payload.

    Raises:
        RequestValidationFailed: On a malformed body or missing model
    """
    if not isinstance(body, dict):
        raise RequestValidationFailed("Request body must be a JSON object")

    model, _ = find_model(body)
    if not model:
        raise RequestValidationFailed("Model parameter is required")

    fields = dict(body)
    nested = fields.pop("input", None)
    if isinstance(nested, dict):
        fields = {**nested, **fields}
        options = nested.get("modelOptions")
        if isinstance(options, dict):
            fields = {**{k: v for k, v in options.items() if k != "model"}, **fields}
    elif nested is not None:
        # Embedding input is a plain value, not a nested request
        fields["input"] = nested
    fields.pop("modelOptions", None)
    fields["model"] = model

    schema = CALL_SCHEMAS[call_type]
    try:
        parsed = schema.model_validate(fields)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(p) for p in first.get("loc", ()))
        message = first.get("msg", "Invalid request")
        raise RequestValidationFailed(f"{location}: {message}" if location else message)

    return model, parsed.to_payload()


def _status_of(error: BaseException) -> Optional[int]:
    if isinstance(error, AdapterError):
        return error.status_code
    if isinstance(error, httpx.TimeoutException):
        return 504
    if isinstance(error, httpx.TransportError):
        return 502
    return None


class DispatchOrchestrator:
    """Retry/failover dispatch across providers and credentials."""

    def __init__(
        self,
        cache: GatewayCache,
        rotation: RotationSelector,
        credit: CreditGate,
        recorder: CallRecorder,
        tasks: BackgroundTasks,
        client: httpx.AsyncClient,
        gateway_settings: GatewaySettings,
        billing_settings: BillingSettings,
    ):
        self.cache = cache
        self.rotation = rotation
        self.credit = credit
        self.recorder = recorder
        self.tasks = tasks
        self.client = client
        self.gateway_settings = gateway_settings
        self.billing_settings = billing_settings
        self.timeout = httpx.Timeout(
            gateway_settings.vendor_timeout_seconds,
            connect=gateway_settings.vendor_connect_timeout_seconds,
        )

    # -------------------------------------------------------------------------
    # Pre-flight
    # -------------------------------------------------------------------------

    async def check_model_rate_available(self, model: str) -> None:
        """
        Reject models missing from the rate table when billing or listed
        models are enforced.

        Raises:
            ModelNotFoundError: No rate row for the model
        """
        billing = self.billing_settings
        if not billing.credit_based_billing_enabled and not billing.only_listed_models:
            return

        rates = await self.cache.get_cached_model_rates(model)
        if not rates:
            raise ModelNotFoundError(
                f'Model "{model}" is not available. Please select a listed model.',
                code="MODEL_NOT_FOUND",
            )

    async def _resolve_candidates(self, request: DispatchRequest, model: str) -> Tuple[ProviderCandidate, int, bool]:
        """First candidate, attempt budget and whether the caller pinned a provider."""
        timings = request.timings
        pinned = model_has_provider(model)

        timings.start("maxProviderRetries")
        if pinned:
            max_attempts = 1
        else:
            info = await self.rotation.get_providers_for_model(model)
            available = info.available_providers if info else 0
            max_attempts = min(max(available, 1), self.gateway_settings.max_provider_retries)
        timings.end("maxProviderRetries")

        timings.start("ensureProvider")
        resolved = await self.rotation.ensure_model_with_provider(request.body)
        parsed = parse_model_with_provider(resolved or model)
        provider: Optional[ProviderRecord] = None
        if parsed.provider_name:
            provider = await self.cache.get_cached_provider(parsed.provider_name)
        timings.end("ensureProvider")

        if provider is None:
            raise ProviderUnavailableError(
                f"Provider '{parsed.provider_name}' is not available or not configured"
            )

        candidate = ProviderCandidate(
            provider_id=provider.id,
            provider_name=provider.name,
            model_name=parsed.model_name,
        )
        return candidate, max_attempts, pinned

    async def _prepare(self, request: DispatchRequest) -> Tuple[str, Dict[str, Any], ProviderCandidate, int, bool]:
        model, payload = validate_request(request.call_type, request.body)
        base_model = parse_model_with_provider(model).model_name

        candidate, max_attempts, pinned = await self._resolve_candidates(request, model)

        request.timings.start("preChecks")
        await self.credit.check_user_credit_balance(request.user_did)
        await self.check_model_rate_available(base_model)
        request.timings.end("preChecks")

        return base_model, payload, candidate, max_attempts, pinned

    # -------------------------------------------------------------------------
    # Attempts
    # -------------------------------------------------------------------------

    async def _start_attempt(
        self,
        request: DispatchRequest,
        base_model: str,
        candidate: ProviderCandidate,
        number: int,
        tried_credentials: List[str],
    ) -> Optional[_Attempt]:
        timings = request.timings
        timings.start("getCredentials")
        credential = await self.rotation.select_credential(candidate.provider_id, exclude=tried_credentials)
        provider = await self.cache.get_cached_provider(candidate.provider_name)
        timings.end("getCredentials")

        if credential is None or provider is None:
            logger.warning(
                "No active credentials for provider",
                provider=candidate.provider_name,
                model=base_model,
                request_id=request.request_id,
            )
            return None

        timings.start("modelCallCreate")
        usage_metrics: Dict[str, Any] = {}
        if request.call_type == CALL_IMAGE:
            usage_metrics = {
                k: request.body.get(k) for k in ("size", "quality", "style") if request.body.get(k)
            }
        context = self.recorder.start_call(
            user_did=request.user_did,
            model=base_model,
            call_type=request.call_type,
            request_id=request.request_id,
            attempt=number,
            app_did=request.app_did,
            provider_id=candidate.provider_id,
            credential_id=credential.id,
            usage_metrics=usage_metrics,
        )
        timings.end("modelCallCreate")

        target = VendorTarget(
            provider_name=candidate.provider_name,
            model=candidate.model_name,
            credential=credential,
            base_url=provider.base_url,
            region=provider.region,
            timeout=self.timeout,
            request_id=request.request_id,
        )
        return _Attempt(candidate=candidate, credential=credential, context=context, target=target)

    async def _recover_weight_later(self, credential: CredentialRecord) -> None:
        await asyncio.sleep(self.gateway_settings.rate_limit_recovery_seconds)
        await self.cache.set_credential_weight(
            credential.id,
            credential.provider_id,
            self.gateway_settings.default_credential_weight,
        )
        logger.info("Recovered rate-limited credential", credential_id=credential.id)

    async def _handle_failure(self, attempt: _Attempt, error: BaseException, request: DispatchRequest) -> ModelError:
        """Record the failed attempt and react on the credential / provider."""
        classified = classify_error(error)
        status = _status_of(error)
        credential = attempt.credential
        candidate = attempt.candidate

        attempt.context.fail(str(error) or classified.code.value)

        logger.warning(
            "Vendor call failed",
            provider=candidate.provider_name,
            model=candidate.model_name,
            credential_id=credential.id,
            key=mask_credential_value(credential.api_key),
            status=status,
            error_code=classified.code.value,
            request_id=request.request_id,
        )

        try:
            if status == 401 or status == 402 or (
                status == 403 and classified.code == ModelErrorType.EXPIRED_CREDENTIAL
            ):
                await self.cache.disable_credential(credential.id, candidate.provider_id, classified.message[:500])
            elif status == 429:
                await self.cache.set_credential_weight(
                    credential.id,
                    candidate.provider_id,
                    self.gateway_settings.rate_limited_credential_weight,
                )
                self.tasks.spawn(
                    self._recover_weight_later(credential),
                    name="credential-weight-recovery",
                    drainable=False,
                    credential_id=credential.id,
                )
                self.rotation.mark_provider_as_failed(candidate.provider_id, candidate.provider_name)
        except Exception as e:
            logger.error(
                "Credential update failed",
                credential_id=credential.id,
                provider=candidate.provider_name,
                error=str(e),
            )

        self.recorder.update_model_status(
            provider_id=candidate.provider_id,
            model=attempt.context.record.model,
            call_type=request.call_type,
            available=False,
            response_time=attempt.context.elapsed_ms,
            error=classified,
            status_code=status,
        )
        return classified

    def _final_error(self, error: BaseException, candidate: ProviderCandidate, classified: ModelError) -> VendorError:
        status = _status_of(error) or 502
        if status >= 500:
            message = f"{candidate.provider_name} service is temporarily unavailable. Please try again later"
        else:
            message = str(error) or classified.code.value
        return VendorError(message, status_code=status, provider=candidate.provider_name, classified=classified)

    async def _next_candidate(
        self,
        base_model: str,
        tried_providers: List[str],
    ) -> Optional[ProviderCandidate]:
        return await self.rotation.get_next_provider_for_model(base_model, exclude=tried_providers)

    # -------------------------------------------------------------------------
    # Success bookkeeping
    # -------------------------------------------------------------------------

    def _outcome(self, call_type: str, payload: Dict[str, Any], result: Any, model: str) -> CallOutcome:
        if isinstance(result, ChatResult):
            usage = result.usage or estimate_chat_usage(payload.get("messages") or [], result.text, model)
            return CallOutcome(usage=usage)
        if isinstance(result, EmbeddingResult):
            usage = result.usage
            if usage is None:
                inputs = payload.get("input")
                texts = inputs if isinstance(inputs, list) else [inputs]
                usage = TokenUsage(input_tokens=sum(count_text_tokens(str(t), model) for t in texts))
            return CallOutcome(usage=usage)
        if isinstance(result, ImageResult):
            return CallOutcome(usage=result.usage, image_count=len(result.images))
        if isinstance(result, VideoResult):
            duration = result.duration_seconds or float(payload.get("seconds") or 0)
            return CallOutcome(usage=result.usage, duration_seconds=duration)
        return CallOutcome()

    async def record_success(
        self,
        request: DispatchRequest,
        attempt: _Attempt,
        outcome: CallOutcome,
        ttfb_ms: Optional[int],
    ) -> None:
        """Credits, Usage, ModelCall, credential and status bookkeeping for a success."""
        timings = request.timings
        context = attempt.context
        base_model = context.record.model

        timings.start("usage")
        outcome.credits = await self.recorder.compute_credits(
            request.call_type, base_model, attempt.candidate.provider_id, outcome
        )
        self.recorder.record_usage(
            call_type=request.call_type,
            model=base_model,
            user_did=request.user_did,
            app_id=request.app_did,
            provider_id=attempt.candidate.provider_id,
            outcome=outcome,
        )
        context.complete(outcome, ttfb_ms=ttfb_ms)
        self.recorder.record_credential_use(attempt.credential)
        self.rotation.clear_failed_provider(attempt.candidate.provider_id)
        timings.end("usage")

        timings.start("modelStatus")
        self.recorder.update_model_status(
            provider_id=attempt.candidate.provider_id,
            model=base_model,
            call_type=request.call_type,
            available=True,
            response_time=context.elapsed_ms,
        )
        timings.end("modelStatus")

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def _run_attempts(self, request: DispatchRequest, invoke):
        """
        Drive attempts until one succeeds.

        `invoke(attempt)` performs the vendor call and returns its result;
        any AdapterError or httpx error is treated as a vendor failure.
        """
        base_model, payload, candidate, max_attempts, pinned = await self._prepare(request)

        tried_providers: List[str] = []
        number = 0
        last: Optional[Tuple[BaseException, ProviderCandidate, ModelError]] = None

        while candidate is not None and number < max_attempts:
            attempt = await self._start_attempt(request, base_model, candidate, number + 1, [])
            tried_providers.append(candidate.provider_id)

            if attempt is not None:
                number += 1
                request.timings.start("providerTtfb")
                try:
                    result = await invoke(attempt, payload)
                except (AdapterError, httpx.HTTPError) as e:
                    request.timings.end("providerTtfb")
                    classified = await self._handle_failure(attempt, e, request)
                    last = (e, candidate, classified)
                    status = _status_of(e)
                    if status is not None and status not in RETRYABLE_STATUS:
                        break
                else:
                    request.timings.end("providerTtfb")
                    return base_model, payload, attempt, result, number

            if pinned:
                break
            candidate = await self._next_candidate(base_model, tried_providers)

        if last is None:
            raise ProviderUnavailableError(
                f'No available provider found for model "{base_model}". You can select a specific '
                "provider to try again, or wait until it becomes available.",
                code=ModelErrorType.NO_CREDENTIALS.value,
            )

        error, failed_candidate, classified = last
        raise self._final_error(error, failed_candidate, classified)

    async def dispatch(self, request: DispatchRequest) -> DispatchResult:
        """
        Non-streaming dispatch.

        Raises:
            GatewayError: Validation, credit, availability or final vendor failure
        """
        async def invoke(attempt: _Attempt, payload: Dict[str, Any]):
            adapter = get_adapter(attempt.candidate.provider_name)
            return await adapter.invoke(self.client, request.call_type, payload, attempt.target)

        base_model, payload, attempt, result, attempts = await self._run_attempts(request, invoke)

        outcome = self._outcome(request.call_type, payload, result, base_model)
        await self.record_success(request, attempt, outcome, ttfb_ms=attempt.context.elapsed_ms)

        return DispatchResult(
            result=result,
            provider=attempt.candidate,
            model=f"{attempt.candidate.provider_name}/{attempt.candidate.model_name}",
            outcome=outcome,
            attempts=attempts,
        )

    async def dispatch_stream(self, request: DispatchRequest) -> "StreamSession":
        """
        Streaming chat dispatch.

        The first chunk is read before returning, so failures up to the
        vendor's first byte are still retried on another provider.
        """
        async def invoke(attempt: _Attempt, payload: Dict[str, Any]):
            adapter = get_adapter(attempt.candidate.provider_name)
            chunks = adapter.stream(self.client, payload, attempt.target)
            try:
                first = await chunks.__anext__()
            except StopAsyncIteration:
                first = None
            except MALFORMED_BODY_ERRORS as e:
                await chunks.aclose()
                raise malformed_body(e) from e
            except BaseException:
                await chunks.aclose()
                raise
            return chunks, first

        base_model, payload, attempt, (chunks, first), attempts = await self._run_attempts(request, invoke)

        return StreamSession(
            orchestrator=self,
            request=request,
            attempt=attempt,
            payload=payload,
            chunks=chunks,
            first=first,
            attempts=attempts,
        )


class StreamSession:
    """
    A committed streaming attempt.

    Iterating yields the vendor chunks (first chunk included). Exactly one
    of succeed(), fail() or abort() finishes the attempt.
    """

    def __init__(
        self,
        orchestrator: DispatchOrchestrator,
        request: DispatchRequest,
        attempt: _Attempt,
        payload: Dict[str, Any],
        chunks: AsyncIterator[ChatChunk],
        first: Optional[ChatChunk],
        attempts: int,
    ):
        self.orchestrator = orchestrator
        self.request = request
        self.attempt = attempt
        self.payload = payload
        self._chunks = chunks
        self._first = first
        self.attempts = attempts
        self.ttfb_ms = attempt.context.elapsed_ms

        self.text_parts: List[str] = []
        self.usage: Optional[TokenUsage] = None

    @property
    def model(self) -> str:
        return f"{self.attempt.candidate.provider_name}/{self.attempt.candidate.model_name}"

    def _observe(self, chunk: ChatChunk) -> None:
        if chunk.text:
            self.text_parts.append(chunk.text)
        if chunk.usage is not None:
            if self.usage is None:
                self.usage = TokenUsage()
            self.usage.merge(chunk.usage)

    async def __aiter__(self) -> AsyncIterator[ChatChunk]:
        if self._first is not None:
            first, self._first = self._first, None
            self._observe(first)
            yield first
        async for chunk in self._chunks:
            self._observe(chunk)
            yield chunk

    def _final_usage(self) -> TokenUsage:
        if self.usage is not None:
            return self.usage
        return estimate_chat_usage(
            self.payload.get("messages") or [],
            "".join(self.text_parts),
            self.attempt.context.record.model,
        )

    async def succeed(self) -> TokenUsage:
        usage = self._final_usage()
        await self.orchestrator.record_success(
            self.request, self.attempt, CallOutcome(usage=usage), ttfb_ms=self.ttfb_ms
        )
        return usage

    async def fail(self, error: BaseException) -> VendorError:
        classified = await self.orchestrator._handle_failure(self.attempt, error, self.request)
        return self.orchestrator._final_error(error, self.attempt.candidate, classified)

    def abort(self) -> None:
        """Client went away; bill what was received, in the background."""
        self.orchestrator.tasks.spawn(
            self.succeed(),
            name="stream-abort-record",
            request_id=self.request.request_id,
        )

    async def aclose(self) -> None:
        await self._chunks.aclose()
