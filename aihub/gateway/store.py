"""
Gateway Configuration & Record Stores.

The dispatch pipeline reads provider configuration and writes call records
through two narrow interfaces:

- ConfigStore: providers, credentials, model rates, credential updates
- RecordStore: ModelCall, Usage and model status writes

Reads return detached, immutable snapshots so a request keeps using the
snapshot it fetched even if a concurrent request invalidates the cache.

SqlStore implements both on top of the SQLAlchemy async session factory.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aihub.gateway.services.secret_manager import SecretManager
from aihub.models.gateway import (
    AiCredential,
    AiModelRate,
    AiModelStatus,
    AiProvider,
    ModelCall,
    Usage,
)

logger = structlog.get_logger(__name__)


# =============================================================================
# Snapshots
# =============================================================================

@dataclass(frozen=True)
class ProviderRecord:
    """Read-only view of an AiProvider row."""

    id: str
    name: str
    display_name: Optional[str] = None
    base_url: Optional[str] = None
    region: Optional[str] = None
    enabled: bool = True
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CredentialRecord:
    """Read-only view of an AiCredential row with decrypted value."""

    id: str
    provider_id: str
    name: str = ""
    credential_type: str = "api_key"
    value: Dict[str, Any] = field(default_factory=dict)
    active: bool = True
    weight: int = 100
    usage_count: int = 0
    last_used_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def api_key(self) -> Optional[str]:
        return self.value.get("api_key")


@dataclass(frozen=True)
class ModelRateRecord:
    """Read-only view of an AiModelRate row."""

    provider_id: str
    model: str
    type: str
    input_rate: float = 0.0
    output_rate: float = 0.0
    caching: Optional[Dict[str, float]] = None
    model_display: Optional[str] = None
    id: Optional[str] = None


@dataclass
class ModelCallRecord:
    """One dispatch attempt, as written by the call recorder."""

    user_did: str
    model: str
    type: str
    status: str
    call_time: int
    request_id: Optional[str] = None
    attempt: int = 1
    app_did: Optional[str] = None
    provider_id: Optional[str] = None
    credential_id: Optional[str] = None
    total_usage: int = 0
    usage_metrics: Dict[str, Any] = field(default_factory=dict)
    credits: Optional[float] = None
    duration_ms: Optional[int] = None
    ttfb_ms: Optional[int] = None
    error_reason: Optional[str] = None


@dataclass
class UsageRecord:
    """One billed request, as written by the usage recorder."""

    type: str
    model: str
    user_did: Optional[str] = None
    app_id: Optional[str] = None
    provider_id: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    number_of_image_generation: int = 0
    media_duration: float = 0.0
    used_credits: Optional[float] = None


@dataclass
class ModelStatusRecord:
    """Availability observation for a provider model."""

    provider_id: str
    model: str
    available: bool
    type: Optional[str] = None
    response_time: Optional[int] = None
    error: Optional[Dict[str, str]] = None


# =============================================================================
# Interfaces
# =============================================================================

class ConfigStore:
    """Provider configuration source of truth."""

    async def find_providers(
        self,
        name: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> List[ProviderRecord]:
        raise NotImplementedError

    async def find_credentials(
        self,
        provider_ids: Sequence[str],
        active: Optional[bool] = None,
    ) -> List[CredentialRecord]:
        raise NotImplementedError

    async def find_model_rates(
        self,
        model: Optional[str] = None,
        provider_id: Optional[str] = None,
        type: Optional[str] = None,
    ) -> List[ModelRateRecord]:
        raise NotImplementedError

    async def update_credential(self, credential_id: str, patch: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def record_credential_use(self, credential_id: str, recover_weight: Optional[int] = None) -> None:
        """Bump usage_count/last_used_at; reactivate at recover_weight when given."""
        raise NotImplementedError


class RecordStore:
    """Sink for call outcome and billing records."""

    async def create_model_call(self, record: ModelCallRecord) -> None:
        raise NotImplementedError

    async def create_usage(self, record: UsageRecord) -> None:
        raise NotImplementedError

    async def upsert_model_status(self, record: ModelStatusRecord) -> bool:
        """Write the status if availability changed. Returns True when written."""
        raise NotImplementedError


# =============================================================================
# SQLAlchemy implementation
# =============================================================================

def _as_float(value: Any) -> float:
    return float(value) if value is not None else 0.0


class SqlStore(ConfigStore, RecordStore):
    """ConfigStore and RecordStore backed by the gateway tables."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        secret_manager: Optional[SecretManager] = None,
    ):
        self.session_factory = session_factory
        self.secret_manager = secret_manager

    def _decrypt(self, value: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not value:
            return {}
        if self.secret_manager is None:
            return dict(value)
        return self.secret_manager.decrypt_credential(value)

    async def find_providers(
        self,
        name: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> List[ProviderRecord]:
        stmt = select(AiProvider)
        if name is not None:
            stmt = stmt.where(AiProvider.name == name)
        if enabled is not None:
            stmt = stmt.where(AiProvider.enabled == enabled)

        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()

        return [
            ProviderRecord(
                id=p.id,
                name=p.name,
                display_name=p.display_name,
                base_url=p.base_url,
                region=p.region,
                enabled=p.enabled,
                config=dict(p.config or {}),
            )
            for p in rows
        ]

    async def find_credentials(
        self,
        provider_ids: Sequence[str],
        active: Optional[bool] = None,
    ) -> List[CredentialRecord]:
        stmt = select(AiCredential).where(AiCredential.provider_id.in_(list(provider_ids)))
        if active is not None:
            stmt = stmt.where(AiCredential.active == active)
        # Least used first so ties in the weighted rotation favor idle keys
        stmt = stmt.order_by(AiCredential.usage_count.asc(), AiCredential.last_used_at.asc())

        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()

        return [
            CredentialRecord(
                id=c.id,
                provider_id=c.provider_id,
                name=c.name,
                credential_type=c.credential_type,
                value=self._decrypt(c.credential_value),
                active=c.active,
                weight=c.weight,
                usage_count=c.usage_count,
                last_used_at=c.last_used_at,
                error=c.error,
            )
            for c in rows
        ]

    async def find_model_rates(
        self,
        model: Optional[str] = None,
        provider_id: Optional[str] = None,
        type: Optional[str] = None,
    ) -> List[ModelRateRecord]:
        stmt = select(AiModelRate)
        if model is not None:
            stmt = stmt.where(AiModelRate.model == model)
        if provider_id is not None:
            stmt = stmt.where(AiModelRate.provider_id == provider_id)
        if type is not None:
            stmt = stmt.where(AiModelRate.type == type)

        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()

        return [
            ModelRateRecord(
                id=r.id,
                provider_id=r.provider_id,
                model=r.model,
                type=r.type,
                input_rate=_as_float(r.input_rate),
                output_rate=_as_float(r.output_rate),
                caching=dict(r.caching) if r.caching else None,
                model_display=r.model_display,
            )
            for r in rows
        ]

    async def update_credential(self, credential_id: str, patch: Dict[str, Any]) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(AiCredential).where(AiCredential.id == credential_id).values(**patch)
            )
            await session.commit()

    async def record_credential_use(self, credential_id: str, recover_weight: Optional[int] = None) -> None:
        values: Dict[str, Any] = {
            "usage_count": AiCredential.usage_count + 1,
            "last_used_at": datetime.now(timezone.utc),
        }
        if recover_weight is not None:
            values.update(active=True, weight=recover_weight, error=None)

        async with self.session_factory() as session:
            await session.execute(
                update(AiCredential).where(AiCredential.id == credential_id).values(**values)
            )
            await session.commit()

    async def create_model_call(self, record: ModelCallRecord) -> None:
        async with self.session_factory() as session:
            session.add(ModelCall(
                request_id=record.request_id,
                attempt=record.attempt,
                user_did=record.user_did,
                app_did=record.app_did,
                provider_id=record.provider_id,
                credential_id=record.credential_id,
                model=record.model,
                type=record.type,
                status=record.status,
                total_usage=record.total_usage,
                usage_metrics=record.usage_metrics,
                credits=record.credits,
                duration_ms=record.duration_ms,
                ttfb_ms=record.ttfb_ms,
                error_reason=record.error_reason,
                call_time=record.call_time,
            ))
            await session.commit()

    async def create_usage(self, record: UsageRecord) -> None:
        async with self.session_factory() as session:
            session.add(Usage(
                user_did=record.user_did,
                app_id=record.app_id,
                provider_id=record.provider_id,
                type=record.type,
                model=record.model,
                prompt_tokens=record.prompt_tokens,
                completion_tokens=record.completion_tokens,
                cache_creation_input_tokens=record.cache_creation_input_tokens,
                cache_read_input_tokens=record.cache_read_input_tokens,
                number_of_image_generation=record.number_of_image_generation,
                media_duration=record.media_duration,
                used_credits=record.used_credits,
            ))
            await session.commit()

    async def upsert_model_status(self, record: ModelStatusRecord) -> bool:
        stmt = select(AiModelStatus).where(
            AiModelStatus.provider_id == record.provider_id,
            AiModelStatus.model == record.model,
            AiModelStatus.type == record.type,
        )
        async with self.session_factory() as session:
            current = (await session.execute(stmt)).scalar_one_or_none()
            if current is not None and current.available == record.available:
                return False

            if current is None:
                session.add(AiModelStatus(
                    provider_id=record.provider_id,
                    model=record.model,
                    type=record.type,
                    available=record.available,
                    response_time=record.response_time,
                    error=record.error,
                ))
            else:
                current.available = record.available
                current.response_time = record.response_time
                current.error = record.error
            await session.commit()

        logger.info(
            "Model status changed",
            provider_id=record.provider_id,
            model=record.model,
            available=record.available,
        )
        return True
