import copy
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from policy_billing_api.api.dependencies.engine import get_reconciliation_engine  # noqa: E402
from policy_billing_api.app import create_app  # noqa: E402
from policy_billing_api.db.base import Base  # noqa: E402
from policy_billing_api.db.session import get_session  # noqa: E402
from policy_billing_api.observability.reconciliation import ReconciliationObservabilityStore  # noqa: E402
from policy_billing_api.services.billing.context import BillingContext  # noqa: E402
from policy_billing_api.services.billing.engine import ReconciliationEngine  # noqa: E402
from policy_billing_api.services.billing.providers.stripe import StripeRefundResponse  # noqa: E402
import policy_billing_api.models  # noqa: E402,F401

# 10:00 in Johannesburg
FIXED_NOW = datetime(2025, 1, 15, 8, 0, tzinfo=timezone.utc)


class StubStripeProvider:
    """In-memory stand-in for the Stripe provider that records every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []
        self.schedules: dict[str, dict[str, Any]] = {}
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.invoices: dict[str, dict[str, Any]] = {}
        self.invoice_reads: dict[str, list[dict[str, Any]]] = {}
        self.charges: dict[str, dict[str, Any]] = {}
        self.customer_charges: list[dict[str, Any]] = []
        self.payment_methods: dict[str, dict[str, Any]] = {}
        self._counter = 0

    def _record(self, name: str, /, *args: Any, **kwargs: Any) -> None:
        self.calls.append((name, args, kwargs))

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def calls_to(self, name: str) -> list[tuple[str, tuple[Any, ...], dict[str, Any]]]:
        return [call for call in self.calls if call[0] == name]

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]

    async def create_price(self, params):
        self._record("create_price", params)
        return {"id": self._next_id("price"), **params}

    async def create_subscription_schedule(self, params):
        self._record("create_subscription_schedule", params)
        schedule = {"id": self._next_id("sub_sched"), "status": "not_started", "subscription": None, **params}
        self.schedules[schedule["id"]] = schedule
        return copy.deepcopy(schedule)

    async def create_schedule_from_subscription(self, subscription_id):
        self._record("create_schedule_from_subscription", subscription_id)
        subscription = self.subscriptions.get(subscription_id, {})
        schedule = {
            "id": self._next_id("sub_sched"),
            "status": "active",
            "subscription": subscription_id,
            "current_phase": {"start_date": subscription.get("current_period_start")},
            "phases": [{"start_date": subscription.get("start_date")}],
        }
        self.schedules[schedule["id"]] = schedule
        return copy.deepcopy(schedule)

    async def retrieve_schedule(self, schedule_id):
        self._record("retrieve_schedule", schedule_id)
        return copy.deepcopy(self.schedules[schedule_id])

    async def update_schedule(self, schedule_id, **params):
        self._record("update_schedule", schedule_id, **params)
        self.schedules[schedule_id].update(params)
        return copy.deepcopy(self.schedules[schedule_id])

    async def cancel_schedule(self, schedule_id, *, prorate=False, invoice_now=False):
        self._record("cancel_schedule", schedule_id, prorate=prorate, invoice_now=invoice_now)
        schedule = self.schedules[schedule_id]
        schedule["status"] = "canceled"
        subscription_id = schedule.get("subscription")
        if subscription_id in self.subscriptions:
            self.subscriptions[subscription_id]["status"] = "canceled"
        return copy.deepcopy(schedule)

    async def retrieve_subscription(self, subscription_id):
        self._record("retrieve_subscription", subscription_id)
        return copy.deepcopy(self.subscriptions[subscription_id])

    async def update_subscription(self, subscription_id, **params):
        self._record("update_subscription", subscription_id, **params)
        self.subscriptions.setdefault(subscription_id, {"id": subscription_id}).update(params)
        return copy.deepcopy(self.subscriptions[subscription_id])

    async def cancel_subscription(self, subscription_id, *, prorate=False, invoice_now=False):
        self._record("cancel_subscription", subscription_id, prorate=prorate, invoice_now=invoice_now)
        self.subscriptions[subscription_id]["status"] = "canceled"
        return copy.deepcopy(self.subscriptions[subscription_id])

    async def create_customer(self, **params):
        self._record("create_customer", **params)
        return {"id": self._next_id("cus"), **params}

    async def update_customer(self, customer_id, **params):
        self._record("update_customer", customer_id, **params)
        return {"id": customer_id, **params}

    async def retrieve_payment_method(self, payment_method_id):
        self._record("retrieve_payment_method", payment_method_id)
        return copy.deepcopy(self.payment_methods.get(payment_method_id, {"id": payment_method_id, "customer": None}))

    async def attach_payment_method(self, payment_method_id, *, customer_id):
        self._record("attach_payment_method", payment_method_id, customer_id=customer_id)
        return {"id": payment_method_id, "customer": customer_id}

    async def create_payment_intent(self, *, idempotency_key=None, **params):
        self._record("create_payment_intent", idempotency_key=idempotency_key, **params)
        return {"id": self._next_id("pi"), "status": "succeeded", **params}

    async def list_charges(self, customer_id, *, limit=3):
        self._record("list_charges", customer_id, limit=limit)
        return copy.deepcopy(self.customer_charges[:limit])

    async def retrieve_charge(self, charge_id):
        self._record("retrieve_charge", charge_id)
        return copy.deepcopy(self.charges[charge_id])

    async def create_refund(self, charge_id, *, amount=None, reason="requested_by_customer"):
        self._record("create_refund", charge_id, amount=amount)
        return StripeRefundResponse(
            refund_id=self._next_id("re"),
            charge_id=charge_id,
            amount=amount or 0,
            status="succeeded",
            reason=reason,
        )

    async def retrieve_invoice(self, invoice_id):
        self._record("retrieve_invoice", invoice_id)
        queued = self.invoice_reads.get(invoice_id)
        if queued:
            return copy.deepcopy(queued.pop(0))
        return copy.deepcopy(self.invoices[invoice_id])

    async def update_invoice_metadata(self, invoice_id, metadata):
        self._record("update_invoice_metadata", invoice_id, metadata=dict(metadata))
        invoice = self.invoices.setdefault(invoice_id, {"id": invoice_id})
        invoice.setdefault("metadata", {}).update(metadata)
        return copy.deepcopy(invoice)


class StubPolicyClient:
    """In-memory stand-in for the policy service client."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []
        self.policies: dict[str, dict[str, Any]] = {}
        self.policyholders: dict[str, dict[str, Any]] = {}
        self.policy_payment_methods: dict[str, dict[str, Any]] = {}
        self.policyholder_payment_methods: dict[str, list[dict[str, Any]]] = {}
        self.payments: list[tuple[str, dict[str, Any]]] = []
        self.payment_updates: list[list[dict[str, Any]]] = []
        self.notifications: list[dict[str, Any]] = []
        self.app_data_writes: list[tuple[str, dict[str, Any]]] = []
        self.assignments: list[tuple[str, str]] = []
        self._counter = 0

    def _record(self, name: str, /, *args: Any, **kwargs: Any) -> None:
        self.calls.append((name, args, kwargs))

    async def get_policy(self, policy_id):
        self._record("get_policy", policy_id)
        return copy.deepcopy(self.policies[policy_id])

    async def update_policy_app_data(self, policy_id, app_data):
        self._record("update_policy_app_data", policy_id, app_data)
        self.app_data_writes.append((policy_id, dict(app_data)))
        self.policies[policy_id]["app_data"] = dict(app_data)
        return copy.deepcopy(self.policies[policy_id])

    async def get_policyholder(self, policyholder_id):
        self._record("get_policyholder", policyholder_id)
        return copy.deepcopy(self.policyholders.get(policyholder_id, {"policyholder_id": policyholder_id}))

    async def get_policy_payment_method(self, policy_id):
        self._record("get_policy_payment_method", policy_id)
        method = self.policy_payment_methods.get(policy_id)
        return copy.deepcopy(method) if method is not None else None

    async def get_policyholder_payment_methods(self, policyholder_id):
        self._record("get_policyholder_payment_methods", policyholder_id)
        return copy.deepcopy(self.policyholder_payment_methods.get(policyholder_id, []))

    async def assign_policy_payment_method(self, policy_id, payment_method_id):
        self._record("assign_policy_payment_method", policy_id, payment_method_id)
        self.assignments.append((policy_id, payment_method_id))
        return {"policy_id": policy_id, "payment_method_id": payment_method_id}

    async def create_policyholder_payment_method(self, policyholder_id, payload):
        self._record("create_policyholder_payment_method", policyholder_id, payload)
        self._counter += 1
        method = {"payment_method_id": f"pm_root_new_{self._counter}", **payload}
        self.policyholder_payment_methods.setdefault(policyholder_id, []).append(method)
        return copy.deepcopy(method)

    async def create_policy_payment(self, policy_id, payload):
        self._record("create_policy_payment", policy_id, payload)
        self._counter += 1
        payment = {"payment_id": f"payment_{self._counter}", **payload}
        self.payments.append((policy_id, payment))
        return copy.deepcopy(payment)

    async def update_payments(self, updates):
        self._record("update_payments", updates)
        self.payment_updates.append([dict(update) for update in updates])

    async def trigger_custom_notification_event(self, **kwargs):
        self._record("trigger_custom_notification_event", **kwargs)
        self.notifications.append(kwargs)


def build_policy(**overrides: Any) -> dict[str, Any]:
    policy = {
        "policy_id": "policy_1",
        "policy_number": "POL-0001",
        "policyholder_id": "ph_1",
        "monthly_premium": 10000,
        "currency": "ZAR",
        "billing_frequency": "monthly",
        "billing_day": 15,
        "start_date": "2025-01-01T00:00:00",
        "end_date": "2026-01-01T00:00:00",
        "status": "active",
        "module": {"claimed_against": False},
        "app_data": {},
    }
    policy.update(overrides)
    return policy


@pytest.fixture
def make_policy():
    return build_policy


@pytest.fixture
def stripe_stub() -> StubStripeProvider:
    return StubStripeProvider()


@pytest.fixture
def policy_stub() -> StubPolicyClient:
    return StubPolicyClient()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def billing_context(stripe_stub, policy_stub, sleeps) -> BillingContext:
    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    return BillingContext(
        stripe=stripe_stub,  # type: ignore[arg-type]
        policies=policy_stub,  # type: ignore[arg-type]
        product_id="prod_policy",
        collection_module_key="cm_stripe",
        clock=lambda: FIXED_NOW,
        sleep=record_sleep,
    )


@pytest.fixture
def reconciliation_store() -> ReconciliationObservabilityStore:
    return ReconciliationObservabilityStore()


@pytest.fixture
def reconciliation_engine(billing_context, reconciliation_store) -> ReconciliationEngine:
    return ReconciliationEngine(billing_context, store=reconciliation_store)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory, reconciliation_engine):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_reconciliation_engine] = lambda: reconciliation_engine

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()
