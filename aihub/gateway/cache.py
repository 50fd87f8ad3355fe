"""
Gateway Cache Layer.

Bounded, time-limited, per-process caches that keep provider selection off
the configuration store on the hot path:

- Credentials per provider-id set (active only)
- Provider per name
- Model rates per (model, provider_id)
- Credit balance per user (positive balances only, see CreditGate)
- Billing meter

Rules:
- Read-through: populate on miss, only cache non-empty results
- Invalidation removes whole entries, never patches them in place
- Mutations (disable/demote a credential) invalidate before returning
- A load that started before an invalidation never writes its stale
  result back (generation check)
"""

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, List, Optional, Sequence, TypeVar

import structlog

from aihub.core.config import BillingSettings, GatewaySettings
from aihub.gateway.store import ConfigStore, CredentialRecord, ModelRateRecord, ProviderRecord

logger = structlog.get_logger(__name__)

V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float


class TTLCache(Generic[V]):
    """
    LRU cache with per-entry expiry.

    Every clear/delete bumps `generation`; loaders capture it before the
    store round trip and pass it back to `set`, which drops the write when
    an invalidation happened in between.
    """

    def __init__(self, ttl_seconds: float, max_entries: int = 50, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._data: "OrderedDict[Hashable, _Entry[V]]" = OrderedDict()
        self.generation = 0

    def get(self, key: Hashable) -> Optional[V]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._data[key]
            return None
        self._data.move_to_end(key)
        return entry.value

    def set(self, key: Hashable, value: V, generation: Optional[int] = None, ttl: Optional[float] = None) -> bool:
        if generation is not None and generation != self.generation:
            return False
        self._data[key] = _Entry(value, self._clock() + (ttl if ttl is not None else self.ttl_seconds))
        self._data.move_to_end(key)
        while len(self._data) > self.max_entries:
            self._data.popitem(last=False)
        return True

    def delete(self, key: Hashable) -> None:
        self.generation += 1
        self._data.pop(key, None)

    def delete_where(self, predicate: Callable[[Hashable], bool]) -> int:
        self.generation += 1
        doomed = [k for k in self._data if predicate(k)]
        for key in doomed:
            del self._data[key]
        return len(doomed)

    def clear(self) -> None:
        self.generation += 1
        self._data.clear()

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._data)


def credential_cache_key(provider_ids: Sequence[str]) -> str:
    return ",".join(sorted(set(provider_ids)))


class GatewayCache:
    """Read-through caches over the ConfigStore plus invalidation primitives."""

    def __init__(
        self,
        store: ConfigStore,
        gateway_settings: GatewaySettings,
        billing_settings: BillingSettings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        max_entries = gateway_settings.cache_max_entries

        self.credentials: TTLCache[List[CredentialRecord]] = TTLCache(
            gateway_settings.credential_cache_ttl, max_entries, clock
        )
        self.providers: TTLCache[ProviderRecord] = TTLCache(
            gateway_settings.provider_cache_ttl, max_entries, clock
        )
        self.enabled_providers: TTLCache[List[ProviderRecord]] = TTLCache(
            gateway_settings.provider_cache_ttl, 1, clock
        )
        self.model_rates: TTLCache[List[ModelRateRecord]] = TTLCache(
            gateway_settings.model_rate_cache_ttl, max_entries * 10, clock
        )
        self.credit: TTLCache[float] = TTLCache(billing_settings.credit_cache_ttl, max_entries * 100, clock)
        self.meter: TTLCache[Dict[str, Any]] = TTLCache(float("inf"), 1, clock)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_cached_credentials(self, provider_ids: Sequence[str]) -> List[CredentialRecord]:
        """Active credentials for the given providers."""
        key = credential_cache_key(provider_ids)
        if not key:
            return []

        cached = self.credentials.get(key)
        if cached is not None:
            return cached

        generation = self.credentials.generation
        rows = await self.store.find_credentials(key.split(","), active=True)
        credentials = [c for c in rows if c.active]
        if credentials:
            self.credentials.set(key, credentials, generation)
        return credentials

    async def get_cached_provider(self, name: str) -> Optional[ProviderRecord]:
        """Enabled provider by vendor name."""
        cached = self.providers.get(name)
        if cached is not None:
            return cached

        generation = self.providers.generation
        rows = await self.store.find_providers(name=name, enabled=True)
        provider = rows[0] if rows else None
        if provider is not None:
            self.providers.set(name, provider, generation)
        return provider

    async def get_cached_enabled_providers(self) -> List[ProviderRecord]:
        cached = self.enabled_providers.get("enabled")
        if cached is not None:
            return cached

        generation = self.enabled_providers.generation
        providers = await self.store.find_providers(enabled=True)
        if providers:
            self.enabled_providers.set("enabled", providers, generation)
        return providers

    async def get_cached_model_rates(self, model: str, provider_id: Optional[str] = None) -> List[ModelRateRecord]:
        """Rates for a model, optionally scoped to one provider."""
        key = (model, provider_id or "")
        cached = self.model_rates.get(key)
        if cached is not None:
            return cached

        generation = self.model_rates.generation
        rates = await self.store.find_model_rates(model=model, provider_id=provider_id)
        if rates:
            self.model_rates.set(key, rates, generation)
        return rates

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    def clear_credential_list_cache(self, provider_id: Optional[str] = None) -> None:
        """Drop every credential snapshot, or only those containing provider_id."""
        if provider_id is None:
            self.credentials.clear()
            return
        self.credentials.delete_where(lambda key: provider_id in str(key).split(","))

    def clear_provider_cache(self) -> None:
        self.providers.clear()
        self.enabled_providers.clear()

    def clear_model_rate_cache(self) -> None:
        self.model_rates.clear()

    def clear_credit_cache(self, user_did: Optional[str] = None) -> None:
        if user_did is None:
            self.credit.clear()
        else:
            self.credit.delete(user_did)

    def clear_meter_cache(self) -> None:
        self.meter.clear()

    def clear_all(self) -> None:
        self.clear_credential_list_cache()
        self.clear_provider_cache()
        self.clear_model_rate_cache()
        self.clear_credit_cache()
        self.clear_meter_cache()

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def disable_credential(self, credential_id: str, provider_id: str, reason: str) -> None:
        """
        Deactivate a credential and invalidate its provider's snapshots.

        Invalidation runs even when the store write fails, so no later
        selection in this process reuses the credential from a stale snapshot.
        """
        logger.warning(
            "Disabling credential",
            credential_id=credential_id,
            provider_id=provider_id,
            reason=reason[:200],
        )
        try:
            await self.store.update_credential(credential_id, {"active": False, "error": reason})
        finally:
            self.clear_credential_list_cache(provider_id)

    async def set_credential_weight(self, credential_id: str, provider_id: str, weight: int) -> None:
        try:
            await self.store.update_credential(credential_id, {"weight": weight})
        finally:
            self.clear_credential_list_cache(provider_id)

    async def record_credential_use(
        self,
        credential_id: str,
        provider_id: str,
        recover_weight: Optional[int] = None,
    ) -> None:
        await self.store.record_credential_use(credential_id, recover_weight=recover_weight)
        # Recovery changes active/weight, plain bookkeeping does not
        if recover_weight is not None:
            self.clear_credential_list_cache(provider_id)
