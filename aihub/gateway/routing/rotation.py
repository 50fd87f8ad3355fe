"""
Provider Rotation Selector.

Spreads load for a model across every provider that can serve it and across
the credentials of each provider:

- Providers: round robin per model over the candidates that have at least
  one active credential, skipping providers in failure cooldown
- Credentials: smooth weighted round robin, so higher weights are picked
  proportionally more often while every credential is still visited

Rotation state is per process and advisory. A retrying request must still
exclude the providers it already tried.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, MutableMapping, Optional, Sequence

import structlog

from aihub.core.config import BillingSettings, GatewaySettings
from aihub.gateway.cache import GatewayCache, TTLCache
from aihub.gateway.errors import UnsupportedModelError
from aihub.gateway.routing.registry import (
    AI_PROVIDERS,
    PROVIDER_RANK,
    find_model,
    get_default_provider_for_model,
    get_supported_providers,
    infer_vendor_from_model,
    model_has_provider,
    parse_model_with_provider,
    resolve_provider_model_id,
    write_model,
)
from aihub.gateway.store import CredentialRecord, ProviderRecord

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProviderCandidate:
    """A provider able to serve a model, with the id it expects."""

    provider_id: str
    provider_name: str
    model_name: str


@dataclass
class ProvidersForModel:
    total_providers: int
    available_providers: int
    providers: List[ProviderCandidate]
    available_providers_list: List[ProviderCandidate]


@dataclass
class _RotationState:
    providers: List[ProviderCandidate]
    current_index: int = 0


@dataclass
class _FailedProvider:
    failed_at: float
    failure_count: int = 1


@dataclass
class _CredentialScores:
    scores: Dict[str, float] = field(default_factory=dict)


def _no_provider_message(model: str) -> str:
    return (
        f'No available provider found for model "{model}". You can select a specific '
        "provider to try again, or wait until it becomes available."
    )


class RotationSelector:
    """Provider and credential rotation for one gateway instance."""

    def __init__(
        self,
        cache: GatewayCache,
        gateway_settings: GatewaySettings,
        billing_settings: BillingSettings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cache = cache
        self.gateway_settings = gateway_settings
        self.billing_settings = billing_settings
        self._clock = clock

        # model name -> provider rotation
        self._rotation: TTLCache[_RotationState] = TTLCache(
            gateway_settings.rotation_cache_ttl,
            max_entries=gateway_settings.cache_max_entries,
            clock=clock,
        )
        self._failed: Dict[str, _FailedProvider] = {}
        self._credential_scores: Dict[str, _CredentialScores] = {}

    # -------------------------------------------------------------------------
    # Cooldown
    # -------------------------------------------------------------------------

    def mark_provider_as_failed(self, provider_id: str, provider_name: str) -> None:
        now = self._clock()
        existing = self._failed.get(provider_id)
        count = existing.failure_count + 1 if existing else 1
        self._failed[provider_id] = _FailedProvider(failed_at=now, failure_count=count)
        logger.warning(
            "Provider marked as failed",
            provider=provider_name,
            provider_id=provider_id,
            failure_count=count,
        )

    def clear_failed_provider(self, provider_id: str) -> None:
        if self._failed.pop(provider_id, None) is not None:
            logger.info("Cleared failed provider record", provider_id=provider_id)

    def is_in_cooldown(self, provider_id: str) -> bool:
        failed = self._failed.get(provider_id)
        if failed is None:
            return False

        settings = self.gateway_settings
        if failed.failure_count >= settings.provider_extended_cooldown_failures:
            cooldown = settings.provider_extended_cooldown_seconds
        else:
            cooldown = settings.provider_cooldown_seconds

        if self._clock() - failed.failed_at > cooldown:
            del self._failed[provider_id]
            return False
        return True

    def clear_all_rotation_cache(self) -> None:
        self._rotation.clear()
        self._failed.clear()
        self._credential_scores.clear()
        logger.info("Cleared all provider rotation cache")

    # -------------------------------------------------------------------------
    # Candidate discovery
    # -------------------------------------------------------------------------

    async def _provider_with_credentials(self, name: str) -> Optional[ProviderRecord]:
        provider = await self.cache.get_cached_provider(name)
        if provider is None:
            return None
        credentials = await self.cache.get_cached_credentials([provider.id])
        return provider if credentials else None

    async def _candidates_from_rates(self, model_name: str) -> List[ProviderCandidate]:
        """Providers that have a rate row for the model."""
        rates = await self.cache.get_cached_model_rates(model_name)
        rated = {rate.provider_id for rate in rates}
        if not rated:
            return []

        vendor = infer_vendor_from_model(model_name)
        candidates = []
        for name in sorted(AI_PROVIDERS, key=lambda p: PROVIDER_RANK.get(p, 99)):
            provider = await self._provider_with_credentials(name)
            if provider is not None and provider.id in rated:
                candidates.append(ProviderCandidate(
                    provider_id=provider.id,
                    provider_name=provider.name,
                    model_name=resolve_provider_model_id(provider.name, model_name, vendor),
                ))
        return candidates

    async def _candidates_from_patterns(self, model_name: str) -> List[ProviderCandidate]:
        """Providers whose vendor family matches the model name."""
        supported = get_supported_providers(model_name)
        if not supported:
            return []

        vendor = infer_vendor_from_model(model_name)
        candidates = []
        for name in supported:
            provider = await self._provider_with_credentials(name)
            if provider is not None:
                candidates.append(ProviderCandidate(
                    provider_id=provider.id,
                    provider_name=provider.name,
                    model_name=resolve_provider_model_id(provider.name, model_name, vendor),
                ))

        if not candidates:
            logger.warning(
                "No providers with active credentials",
                model=model_name,
                supported=",".join(supported),
            )
        return candidates

    async def _ensure_state(self, model_name: str) -> Optional[_RotationState]:
        state = self._rotation.get(model_name)
        if state is not None:
            return state

        if self.billing_settings.credit_based_billing_enabled:
            candidates = await self._candidates_from_rates(model_name)
        else:
            candidates = await self._candidates_from_patterns(model_name)

        if not candidates:
            self._rotation.delete(model_name)
            return None

        state = _RotationState(providers=candidates)
        self._rotation.set(model_name, state)
        return state

    def _available(self, state: _RotationState, exclude: Iterable[str]) -> List[ProviderCandidate]:
        excluded = set(exclude)
        return [
            c for c in state.providers
            if c.provider_id not in excluded and not self.is_in_cooldown(c.provider_id)
        ]

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    async def get_next_provider_for_model(
        self,
        model: str,
        exclude: Sequence[str] = (),
        preferred_provider: Optional[str] = None,
    ) -> Optional[ProviderCandidate]:
        """
        Next provider to try for a model.

        Args:
            model: Model name, with or without provider prefix
            exclude: Provider ids already attempted by this request
            preferred_provider: Provider name to return when it is available

        Returns:
            ProviderCandidate, or None when every provider is excluded,
            cooling down or lacks an active credential
        """
        model_name = parse_model_with_provider(model).model_name
        state = await self._ensure_state(model_name)
        if state is None:
            return None

        available = self._available(state, exclude)
        if not available:
            logger.warning("No available providers, all excluded or cooling down", model=model_name)
            return None

        if preferred_provider:
            for candidate in available:
                if candidate.provider_name == preferred_provider:
                    return candidate

        available_ids = {c.provider_id for c in available}
        total = len(state.providers)
        for _ in range(total):
            candidate = state.providers[state.current_index % total]
            state.current_index = (state.current_index + 1) % total
            if candidate.provider_id in available_ids:
                logger.debug(
                    "Provider rotation selection",
                    model=model_name,
                    total_providers=total,
                    available_providers=len(available),
                    selected=candidate.provider_name,
                    next_index=state.current_index,
                )
                return candidate

        return None

    async def get_providers_for_model(self, model: str) -> Optional[ProvidersForModel]:
        model_name = parse_model_with_provider(model).model_name
        state = await self._ensure_state(model_name)
        if state is None:
            return None

        available = self._available(state, ())
        return ProvidersForModel(
            total_providers=len(state.providers),
            available_providers=len(available),
            providers=list(state.providers),
            available_providers_list=available,
        )

    def pick_credential(self, provider_id: str, credentials: Sequence[CredentialRecord]) -> Optional[CredentialRecord]:
        """
        Smooth weighted round robin over a credential snapshot.

        Every pick adds each credential's weight to its running score, takes
        the highest score and subtracts the total weight from the winner.
        Ties go to the earlier credential (least used first).
        """
        active = [c for c in credentials if c.active]
        if not active:
            return None

        weights = {c.id: max(c.weight, 0) for c in active}
        if not any(weights.values()):
            weights = {cid: 1 for cid in weights}
        total = sum(weights.values())

        bucket = self._credential_scores.setdefault(provider_id, _CredentialScores())
        bucket.scores = {cid: bucket.scores.get(cid, 0.0) for cid in weights}

        best: Optional[CredentialRecord] = None
        for credential in active:
            bucket.scores[credential.id] += weights[credential.id]
            if best is None or bucket.scores[credential.id] > bucket.scores[best.id]:
                best = credential

        bucket.scores[best.id] -= total
        return best

    async def select_credential(
        self,
        provider_id: str,
        exclude: Sequence[str] = (),
    ) -> Optional[CredentialRecord]:
        credentials = await self.cache.get_cached_credentials([provider_id])
        excluded = set(exclude)
        return self.pick_credential(provider_id, [c for c in credentials if c.id not in excluded])

    # -------------------------------------------------------------------------
    # Request rewriting
    # -------------------------------------------------------------------------

    async def ensure_model_with_provider(self, body: MutableMapping[str, Any]) -> Optional[str]:
        """
        Give the request model a "provider/" prefix.

        The model is looked up at the top level, then input.model, then
        input.modelOptions.model; the resolved value is written back to
        every location that carried one.

        Returns:
            The prefixed model, or None when the body has no model

        Raises:
            UnsupportedModelError: If no provider can serve the model
        """
        model, locations = find_model(body)
        if not model:
            return None

        if model_has_provider(model):
            return model

        candidate = await self.get_next_provider_for_model(model)
        if candidate is not None:
            resolved = f"{candidate.provider_name}/{candidate.model_name}"
            write_model(body, locations, resolved)
            return resolved

        logger.warning("Provider rotation failed, falling back to default provider", model=model)
        default_provider = get_default_provider_for_model(model)
        if not default_provider or await self._provider_with_credentials(default_provider) is None:
            raise UnsupportedModelError(_no_provider_message(model))

        resolved = f"{default_provider}/{resolve_provider_model_id(default_provider, model)}"
        write_model(body, locations, resolved)
        return resolved
