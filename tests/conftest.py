import json
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx
import pytest

from aihub.core.config import BillingSettings, GatewaySettings, Settings
from aihub.gateway.credit import CreditLedger, CreditSummary
from aihub.gateway.runtime import GatewayRuntime
from aihub.gateway.store import (
    ConfigStore,
    CredentialRecord,
    ModelCallRecord,
    ModelRateRecord,
    ModelStatusRecord,
    ProviderRecord,
    RecordStore,
    UsageRecord,
)
from aihub.main import create_app


# =============================================================================
# Fakes
# =============================================================================

class FakeStore(ConfigStore, RecordStore):
    """In-memory provider configuration and record sink."""

    def __init__(self):
        self.providers: List[ProviderRecord] = []
        self.credentials: Dict[str, CredentialRecord] = {}
        self.rates: List[ModelRateRecord] = []

        self.model_calls: List[ModelCallRecord] = []
        self.usages: List[UsageRecord] = []
        self.statuses: Dict[tuple, ModelStatusRecord] = {}
        self.status_writes: List[ModelStatusRecord] = []
        self.credential_updates: List[tuple] = []

        self.queries: Dict[str, int] = {"providers": 0, "credentials": 0, "rates": 0}
        self.fail_usage_writes = False
        self.fail_model_call_writes = False

    # Seeding

    def add_provider(self, name: str, base_url: Optional[str] = None, enabled: bool = True) -> ProviderRecord:
        provider = ProviderRecord(id=f"prov-{name}", name=name, base_url=base_url, enabled=enabled)
        self.providers.append(provider)
        return provider

    def add_credential(
        self,
        provider: ProviderRecord,
        key: str,
        weight: int = 100,
        active: bool = True,
        usage_count: int = 0,
    ) -> CredentialRecord:
        credential = CredentialRecord(
            id=f"cred-{key}",
            provider_id=provider.id,
            name=key,
            value={"api_key": key},
            weight=weight,
            active=active,
            usage_count=usage_count,
        )
        self.credentials[credential.id] = credential
        return credential

    def add_rate(
        self,
        provider: ProviderRecord,
        model: str,
        type: str = "chatCompletion",
        input_rate: float = 1.0,
        output_rate: float = 2.0,
        caching: Optional[Dict[str, float]] = None,
    ) -> ModelRateRecord:
        rate = ModelRateRecord(
            provider_id=provider.id,
            model=model,
            type=type,
            input_rate=input_rate,
            output_rate=output_rate,
            caching=caching,
        )
        self.rates.append(rate)
        return rate

    # ConfigStore

    async def find_providers(self, name=None, enabled=None) -> List[ProviderRecord]:
        self.queries["providers"] += 1
        return [
            p for p in self.providers
            if (name is None or p.name == name) and (enabled is None or p.enabled == enabled)
        ]

    async def find_credentials(self, provider_ids: Sequence[str], active=None) -> List[CredentialRecord]:
        self.queries["credentials"] += 1
        ids = set(provider_ids)
        rows = [
            c for c in self.credentials.values()
            if c.provider_id in ids and (active is None or c.active == active)
        ]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(rows, key=lambda c: (c.usage_count, c.last_used_at or epoch))

    async def find_model_rates(self, model=None, provider_id=None, type=None) -> List[ModelRateRecord]:
        self.queries["rates"] += 1
        return [
            r for r in self.rates
            if (model is None or r.model == model)
            and (provider_id is None or r.provider_id == provider_id)
            and (type is None or r.type == type)
        ]

    async def update_credential(self, credential_id: str, patch: Dict[str, Any]) -> None:
        self.credential_updates.append((credential_id, dict(patch)))
        self.credentials[credential_id] = replace(self.credentials[credential_id], **patch)

    async def record_credential_use(self, credential_id: str, recover_weight: Optional[int] = None) -> None:
        credential = self.credentials[credential_id]
        patch: Dict[str, Any] = {
            "usage_count": credential.usage_count + 1,
            "last_used_at": datetime.now(timezone.utc),
        }
        if recover_weight is not None:
            patch.update(active=True, weight=recover_weight, error=None)
        self.credentials[credential_id] = replace(credential, **patch)

    # RecordStore

    async def create_model_call(self, record: ModelCallRecord) -> None:
        if self.fail_model_call_writes:
            raise RuntimeError("model_calls table unavailable")
        self.model_calls.append(record)

    async def create_usage(self, record: UsageRecord) -> None:
        if self.fail_usage_writes:
            raise RuntimeError("usages table unavailable")
        self.usages.append(record)

    async def upsert_model_status(self, record: ModelStatusRecord) -> bool:
        key = (record.provider_id, record.model, record.type)
        existing = self.statuses.get(key)
        if existing is not None and existing.available == record.available:
            return False
        self.statuses[key] = record
        self.status_writes.append(record)
        return True

    # Helpers

    def calls_with_status(self, status: str) -> List[ModelCallRecord]:
        return [c for c in self.model_calls if c.status == status]


class FakeLedger(CreditLedger):
    """Payment service double with call counters."""

    def __init__(self, balance: float = 0.0, can_continue: bool = False):
        self.balances: Dict[str, float] = {}
        self.default_balance = balance
        self.can_continue = can_continue
        self.meter = {"name": "aihub_credit", "currency_id": "cur-credit"}

        self.summary_calls: List[str] = []
        self.verify_calls: List[str] = []
        self.meter_calls = 0
        self.events: List[Dict[str, Any]] = []

    async def get_meter(self, name: str) -> Dict[str, Any]:
        self.meter_calls += 1
        return dict(self.meter)

    async def get_balance_summary(self, user_did: str, currency_id: Optional[str]) -> CreditSummary:
        self.summary_calls.append(user_did)
        return CreditSummary(remaining_amount=self.balances.get(user_did, self.default_balance))

    async def verify_auto_purchase(self, user_did: str, currency_id: Optional[str]) -> bool:
        self.verify_calls.append(user_did)
        return self.can_continue

    async def record_meter_event(self, user_did, amount, metadata=None, source_data=None) -> None:
        self.events.append({
            "user_did": user_did,
            "amount": amount,
            "metadata": metadata or {},
            "source_data": source_data or [],
        })


# =============================================================================
# Vendor doubles
# =============================================================================

VENDOR_HOSTS = {
    "openai": "api.openai.com",
    "openrouter": "openrouter.ai",
    "anthropic": "api.anthropic.com",
    "deepseek": "api.deepseek.com",
    "google": "generativelanguage.googleapis.com",
}


class VendorMock:
    """httpx.MockTransport handler dispatching on the request host."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}

    def route(self, provider: str, *handlers: Callable[[httpx.Request], httpx.Response]) -> None:
        """Serve `handlers` in order for the provider; the last one repeats."""
        queue = list(handlers)

        def handler(request: httpx.Request) -> httpx.Response:
            current = queue.pop(0) if len(queue) > 1 else queue[0]
            return current(request)

        self.routes[VENDOR_HOSTS[provider]] = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(request.url.host)
        if handler is None:
            return httpx.Response(404, json={"error": {"message": f"no route for {request.url.host}"}})
        return handler(request)

    def hits(self, provider: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.host == VENDOR_HOSTS[provider]]


def openai_chat(text: str = "Hello there", prompt_tokens: int = 12, completion_tokens: int = 3):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            "id": "chatcmpl-1",
            "model": json.loads(request.content)["model"],
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": text},
                "finish_reason": "stop",
            }],
            "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
        })
    return handler


def openai_stream(parts: Sequence[str], prompt_tokens: int = 12, completion_tokens: int = 4):
    def handler(request: httpx.Request) -> httpx.Response:
        lines = [
            {"choices": [{"index": 0, "delta": {"role": "assistant", "content": ""}}]},
            *({"choices": [{"index": 0, "delta": {"content": p}}]} for p in parts),
            {"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]},
            {"choices": [], "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens}},
        ]
        body = "".join(f"data: {json.dumps(line)}\n\n" for line in lines) + "data: [DONE]\n\n"
        return httpx.Response(200, content=body.encode(), headers={"Content-Type": "text/event-stream"})
    return handler


def vendor_error(status: int, message: str = "upstream failure"):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"error": {"message": message, "type": "api_error"}})
    return handler


# =============================================================================
# Fixtures
# =============================================================================

def make_settings(**billing: Any) -> Settings:
    billing.setdefault("credit_based_billing_enabled", False)
    billing.setdefault("only_listed_models", False)
    billing.setdefault("usage_report_throttle_seconds", 0)
    return Settings(
        gateway=GatewaySettings(max_provider_retries=5),
        billing=BillingSettings(**billing),
    )


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def vendor() -> VendorMock:
    return VendorMock()


@pytest.fixture
async def runtime(store, ledger, vendor, settings):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(vendor))
    runtime = GatewayRuntime(store, ledger, http_client, settings=settings)
    yield runtime
    await runtime.tasks.cancel_all()
    await http_client.aclose()


@pytest.fixture
async def client(runtime):
    app = create_app(runtime=runtime)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


@pytest.fixture
def user_headers() -> Dict[str, str]:
    return {"X-User-DID": "z1user", "X-App-DID": "z1app"}


@pytest.fixture
def openai_provider(store: FakeStore) -> ProviderRecord:
    provider = store.add_provider("openai")
    store.add_credential(provider, "sk-openai-1")
    return provider
