"""
Gateway Runtime.

Owns every piece of mutable process state of the dispatch pipeline:
caches, rotation state, the credit cache, the meter throttle and the
background task set. Built once per process (or once per test) from an
injected store, ledger and HTTP client.
"""

from typing import Optional

import httpx
import structlog

from aihub.core.config import Settings, get_settings
from aihub.core.database import create_engine_for, create_session_factory, init_db
from aihub.gateway.cache import GatewayCache
from aihub.gateway.credit import CreditGate, CreditLedger, HttpCreditLedger, MeterReporter
from aihub.gateway.dispatch import DispatchOrchestrator
from aihub.gateway.recorder import CallRecorder
from aihub.gateway.routing.rotation import RotationSelector
from aihub.gateway.services.secret_manager import SecretManager
from aihub.gateway.store import ConfigStore, RecordStore, SqlStore
from aihub.gateway.tasks import BackgroundTasks

logger = structlog.get_logger(__name__)

# Seconds to wait for pending background writes on shutdown
SHUTDOWN_DRAIN_SECONDS = 10.0


class GatewayRuntime:
    """Composition root of the dispatch pipeline."""

    def __init__(
        self,
        store: ConfigStore,
        ledger: CreditLedger,
        client: httpx.AsyncClient,
        settings: Optional[Settings] = None,
        record_store: Optional[RecordStore] = None,
        owns_client: bool = False,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.record_store = record_store or store
        self.ledger = ledger
        self.client = client
        self._owns_client = owns_client
        self._engine = None

        gateway_settings = self.settings.gateway
        billing_settings = self.settings.billing

        self.tasks = BackgroundTasks()
        self.cache = GatewayCache(store, gateway_settings, billing_settings)
        self.rotation = RotationSelector(self.cache, gateway_settings, billing_settings)
        self.credit = CreditGate(ledger, self.cache, billing_settings)
        self.meter = MeterReporter(ledger, self.cache, self.tasks, billing_settings)
        self.recorder = CallRecorder(
            self.record_store, self.cache, self.tasks, self.meter, gateway_settings, billing_settings
        )
        self.dispatcher = DispatchOrchestrator(
            cache=self.cache,
            rotation=self.rotation,
            credit=self.credit,
            recorder=self.recorder,
            tasks=self.tasks,
            client=client,
            gateway_settings=gateway_settings,
            billing_settings=billing_settings,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "GatewayRuntime":
        """Production wiring: SQL store, HTTP credit ledger, shared httpx client."""
        settings = settings or get_settings()

        engine = create_engine_for(settings.database, echo=settings.app.debug)
        secret_manager = SecretManager(settings.secret.encryption_key) if settings.secret.encryption_key else None
        store = SqlStore(create_session_factory(engine), secret_manager)

        client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                settings.gateway.vendor_timeout_seconds,
                connect=settings.gateway.vendor_connect_timeout_seconds,
            ),
        )
        ledger = HttpCreditLedger(client, settings.billing)

        runtime = cls(store, ledger, client, settings=settings, owns_client=True)
        runtime._engine = engine
        return runtime

    async def startup(self) -> None:
        if self._engine is not None:
            await init_db(self._engine)
        logger.info(
            "Gateway runtime started",
            credit_billing=self.settings.billing.credit_based_billing_enabled,
            only_listed_models=self.settings.billing.only_listed_models,
        )

    async def shutdown(self) -> None:
        """Flush pending meter reports and background writes, then release connections."""
        logger.info("Shutting down gateway runtime", pending_tasks=self.tasks.pending)
        await self.meter.flush_all()
        await self.tasks.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
        await self.tasks.cancel_all()

        if self._owns_client:
            await self.client.aclose()
        if self._engine is not None:
            await self._engine.dispose()

    async def is_available(self) -> bool:
        """True when at least one enabled provider has an active credential."""
        providers = await self.cache.get_cached_enabled_providers()
        if not providers:
            return False
        credentials = await self.cache.get_cached_credentials([p.id for p in providers])
        return len(credentials) > 0

    def clear_caches(self) -> None:
        """Drop every cache and the rotation state (after admin config changes)."""
        self.cache.clear_all()
        self.rotation.clear_all_rotation_cache()
