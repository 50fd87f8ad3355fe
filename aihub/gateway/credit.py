"""
Credit Gate & Metering.

Before a vendor is ever called, the CreditGate decides whether the caller
may spend:

- Billing disabled: always allow
- Cached positive balance: allow without a ledger round trip
- Otherwise: fresh balance from the ledger; when still <= 0, ask the ledger
  whether auto-purchase can continue; deny with 402 if not

Zero or negative balances are never cached, so a top-up is seen on the
very next request.

After a request is billed, the MeterReporter batches credits per
(app, user) behind a trailing throttle and sends one meter event per
window, then drops the user's cached balance.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog

from aihub.core.config import BillingSettings
from aihub.gateway.cache import GatewayCache
from aihub.gateway.errors import InsufficientCreditError, InternalGatewayError
from aihub.gateway.tasks import BackgroundTasks

logger = structlog.get_logger(__name__)


@dataclass
class CreditSummary:
    """Balance of one user in the meter currency."""

    remaining_amount: float = 0.0
    pending_amount: float = 0.0

    @property
    def balance(self) -> float:
        return self.remaining_amount - self.pending_amount


# =============================================================================
# Ledger
# =============================================================================

class CreditLedger(ABC):
    """Payment / credit service used by the gate and the meter reporter."""

    @abstractmethod
    async def get_meter(self, name: str) -> Dict[str, Any]:
        """Meter definition, including its currency_id."""

    @abstractmethod
    async def get_balance_summary(self, user_did: str, currency_id: Optional[str]) -> CreditSummary:
        """Current balance of a user."""

    @abstractmethod
    async def verify_auto_purchase(self, user_did: str, currency_id: Optional[str]) -> bool:
        """Whether the user may keep spending through auto-purchase or grace."""

    @abstractmethod
    async def record_meter_event(
        self,
        user_did: str,
        amount: float,
        metadata: Optional[Dict[str, Any]] = None,
        source_data: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        """Report consumed credits."""


class HttpCreditLedger(CreditLedger):
    """
    CreditLedger speaking to the payment service over HTTP.

    Endpoints:
    - GET  /credit-grants/summary
    - POST /credit-grants/verify-availability
    - POST /meter-events
    - GET  /meters/{name}
    """

    def __init__(self, client: httpx.AsyncClient, billing_settings: BillingSettings):
        self.client = client
        self.base_url = billing_settings.url.rstrip("/")
        self.timeout = httpx.Timeout(billing_settings.timeout_seconds)
        self.headers = {"Accept": "application/json"}
        if billing_settings.api_key:
            self.headers["Authorization"] = f"Bearer {billing_settings.api_key}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.request(
                method, url, headers=self.headers, timeout=self.timeout, **kwargs
            )
        except httpx.HTTPError as e:
            raise CreditLedgerError(f"Payment service unreachable: {e}")

        if response.status_code >= 400:
            raise CreditLedgerError(
                f"Payment service returned {response.status_code} for {method} {path}"
            )
        if not response.content:
            return {}
        return response.json()

    async def get_meter(self, name: str) -> Dict[str, Any]:
        return await self._request("GET", f"/meters/{name}")

    async def get_balance_summary(self, user_did: str, currency_id: Optional[str]) -> CreditSummary:
        params = {"customer_id": user_did}
        if currency_id:
            params["currency_id"] = currency_id
        data = await self._request("GET", "/credit-grants/summary", params=params)

        entry: Dict[str, Any] = {}
        if currency_id and isinstance(data.get(currency_id), dict):
            entry = data[currency_id]
        elif data:
            entry = next((v for v in data.values() if isinstance(v, dict)), {})

        return CreditSummary(
            remaining_amount=float(entry.get("remainingAmount", 0) or 0),
            pending_amount=float(entry.get("pendingAmount", 0) or 0),
        )

    async def verify_auto_purchase(self, user_did: str, currency_id: Optional[str]) -> bool:
        data = await self._request(
            "POST",
            "/credit-grants/verify-availability",
            json={"customer_id": user_did, "currency_id": currency_id},
        )
        return bool(data.get("can_continue"))

    async def record_meter_event(
        self,
        user_did: str,
        amount: float,
        metadata: Optional[Dict[str, Any]] = None,
        source_data: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        await self._request(
            "POST",
            "/meter-events",
            json={
                "customer_id": user_did,
                "value": amount,
                "metadata": metadata or {},
                "source_data": source_data or [],
            },
        )


# =============================================================================
# Gate
# =============================================================================

class CreditGate:
    """Pre-flight spending check."""

    def __init__(self, ledger: CreditLedger, cache: GatewayCache, billing_settings: BillingSettings):
        self.ledger = ledger
        self.cache = cache
        self.billing_settings = billing_settings

    @property
    def enabled(self) -> bool:
        return self.billing_settings.credit_based_billing_enabled

    async def get_meter(self) -> Dict[str, Any]:
        """Billing meter, cached until clear_meter_cache()."""
        name = self.billing_settings.meter_name
        cached = self.cache.meter.get(name)
        if cached is not None:
            return cached

        generation = self.cache.meter.generation
        meter = await self.ledger.get_meter(name)
        if meter:
            self.cache.meter.set(name, meter, generation)
        return meter

    async def _currency_id(self) -> Optional[str]:
        meter = await self.get_meter()
        return meter.get("currency_id") if meter else None

    async def check_user_credit_balance(self, user_did: str) -> None:
        """
        Raise InsufficientCreditError unless the user may spend.

        Raises:
            InsufficientCreditError: Balance <= 0 and auto-purchase declined
            CreditLedgerError: Payment service unavailable
        """
        if not self.enabled:
            return

        cached = self.cache.credit.get(user_did)
        if cached is not None and cached > 0:
            return

        currency_id = await self._currency_id()
        generation = self.cache.credit.generation
        summary = await self.ledger.get_balance_summary(user_did, currency_id)
        balance = summary.balance

        if balance > 0:
            self.cache.credit.set(user_did, balance, generation)
            return

        if await self.ledger.verify_auto_purchase(user_did, currency_id):
            logger.info("Zero balance, auto-purchase allowed", user_did=user_did)
            return

        logger.info("Insufficient credit", user_did=user_did, balance=balance)
        raise InsufficientCreditError(
            "Insufficient credits. Please purchase more credits to continue.",
            code="NOT_ENOUGH_CREDITS",
        )


# =============================================================================
# Meter reporting
# =============================================================================

@dataclass
class _PendingUsage:
    credits: Decimal = Decimal(0)
    record_count: int = 0
    total_tokens: int = 0
    images_generated: int = 0
    scheduled: bool = False


class MeterReporter:
    """
    Trailing-throttled meter events per (app_id, user_did).

    The first usage in a window schedules a flush after
    usage_report_throttle_seconds; later usages in the same window are
    folded into that flush.
    """

    def __init__(
        self,
        ledger: CreditLedger,
        cache: GatewayCache,
        tasks: BackgroundTasks,
        billing_settings: BillingSettings,
    ):
        self.ledger = ledger
        self.cache = cache
        self.tasks = tasks
        self.billing_settings = billing_settings
        self._pending: Dict[Tuple[str, str], _PendingUsage] = {}

    def report(
        self,
        app_id: str,
        user_did: str,
        credits: Optional[float],
        total_tokens: int = 0,
        images_generated: int = 0,
    ) -> None:
        if not self.billing_settings.credit_based_billing_enabled:
            return

        key = (app_id, user_did)
        pending = self._pending.setdefault(key, _PendingUsage())
        pending.credits += Decimal(str(credits or 0))
        pending.record_count += 1
        pending.total_tokens += total_tokens
        pending.images_generated += images_generated

        if not pending.scheduled:
            pending.scheduled = True
            self.tasks.spawn(
                self._flush_later(key),
                name="meter-report",
                app_id=app_id,
                user_did=user_did,
            )

    async def _flush_later(self, key: Tuple[str, str]) -> None:
        await asyncio.sleep(self.billing_settings.usage_report_throttle_seconds)
        await self.flush(key)

    async def flush(self, key: Tuple[str, str]) -> None:
        pending = self._pending.pop(key, None)
        if pending is None:
            return

        app_id, user_did = key
        amount = float(round(pending.credits, self.billing_settings.credit_decimal_places))
        source_data = [
            {"key": "source", "label": "Source", "value": self.billing_settings.meter_source},
            {"key": "record_count", "label": "API Calls", "value": str(pending.record_count)},
            {"key": "total_tokens", "label": "Total Tokens", "value": str(pending.total_tokens)},
        ]
        if pending.images_generated > 0:
            source_data.append({
                "key": "images_generated",
                "label": "Images Generated",
                "value": str(pending.images_generated),
            })

        logger.info(
            "Create meter event",
            user_did=user_did,
            app_id=app_id,
            quantity=amount,
            record_count=pending.record_count,
        )
        try:
            await self.ledger.record_meter_event(user_did, amount, {"appId": app_id}, source_data)
        finally:
            self.cache.clear_credit_cache(user_did)

    async def flush_all(self) -> None:
        for key in list(self._pending):
            await self.flush(key)


class CreditLedgerError(InternalGatewayError):
    """Payment service unreachable or returned an error."""
    pass
