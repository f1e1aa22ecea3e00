from __future__ import annotations

import json

import pytest

from policy_billing_api.core.settings import settings
from policy_billing_api.services.billing.engine import ReconciliationEngine
from policy_billing_api.services.billing.errors import (
    ConfigurationError,
    InvalidStateError,
    MissingLinkageError,
    MissingMetadataError,
    UpstreamCallError,
)
from policy_billing_api.services.billing.event_handlers import handle_stripe_event
from policy_billing_api.services.billing.events import PaymentCreated, PolicyUpdated
from policy_billing_api.services.billing.routing import resolve_policy_id

COLLECTION_METHOD = {
    "payment_method_id": "pm_root_1",
    "collection_module_definition_id": "cmd_1",
    "module": {"payment_method": "pm_card_1"},
}


@pytest.fixture
def stored_invoice(stripe_stub):
    stripe_stub.invoices["in_1"] = {"id": "in_1", "metadata": {"rootPolicyId": "policy_1"}}
    stripe_stub.charges["ch_1"] = {"id": "ch_1", "invoice": "in_1"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("event_type", "data_object"),
    [
        ("invoice.created", {"id": "in_1", "subscription_details": {"metadata": {"rootPolicyId": "policy_1"}}}),
        ("invoice.paid", {"id": "in_1"}),
        ("invoice.voided", {"id": "in_1", "metadata": {"rootPolicyId": "policy_1"}}),
        ("charge.refunded", {"id": "ch_1", "invoice": "in_1"}),
        ("charge.dispute.funds_withdrawn", {"id": "dp_1", "charge": "ch_1"}),
        ("subscription_schedule.updated", {"id": "sub_sched_1", "metadata": {"rootPolicyId": "policy_1"}}),
        ("payment_intent.succeeded", {"id": "pi_1", "metadata": {"rootPolicyId": "policy_1"}}),
    ],
)
async def test_processor_events_resolve_to_their_policy(
    billing_context, stored_invoice, event_type, data_object
) -> None:
    assert await resolve_policy_id(billing_context, event_type, data_object) == "policy_1"


@pytest.mark.asyncio
async def test_unsupported_event_types_are_not_routed(billing_context, stripe_stub) -> None:
    assert await resolve_policy_id(billing_context, "customer.created", {"metadata": {"rootPolicyId": "x"}}) is None
    assert stripe_stub.calls == []


@pytest.mark.asyncio
async def test_dispatching_unsupported_event_type_fails(billing_context) -> None:
    with pytest.raises(InvalidStateError):
        await handle_stripe_event(billing_context, "customer.created", {})


@pytest.mark.asyncio
async def test_event_without_policy_is_ignored(reconciliation_engine, reconciliation_store, policy_stub) -> None:
    outcome = await reconciliation_engine.handle_processor_event("payment_intent.succeeded", {"id": "pi_1"})

    assert outcome == "ignored"
    assert reconciliation_store.snapshot().totals["ignored"] == {"payment_intent.succeeded": 1}
    assert policy_stub.calls == []


@pytest.mark.asyncio
async def test_policy_outside_collection_module_is_ignored(
    reconciliation_engine, reconciliation_store, policy_stub
) -> None:
    policy_stub.policy_payment_methods["policy_1"] = {"payment_method_id": "pm_debit_order"}
    intent = {"id": "pi_1", "metadata": {"rootPolicyId": "policy_1", "rootPaymentId": "payment_9"}}

    outcome = await reconciliation_engine.handle_processor_event("payment_intent.succeeded", intent)

    assert outcome == "ignored"
    assert policy_stub.payment_updates == []


@pytest.mark.asyncio
async def test_linked_event_is_processed(reconciliation_engine, reconciliation_store, policy_stub) -> None:
    policy_stub.policy_payment_methods["policy_1"] = COLLECTION_METHOD
    intent = {"id": "pi_1", "metadata": {"rootPolicyId": "policy_1", "rootPaymentId": "payment_9"}}

    outcome = await reconciliation_engine.handle_processor_event("payment_intent.succeeded", intent, event_id="evt_1")

    assert outcome == "processed"
    assert policy_stub.payment_updates == [[{"payment_id": "payment_9", "status": "successful"}]]
    assert reconciliation_store.snapshot().totals["processed"] == {"payment_intent.succeeded": 1}


@pytest.mark.asyncio
async def test_failed_event_is_recorded_with_context(
    reconciliation_engine, reconciliation_store, stripe_stub, policy_stub, stored_invoice
) -> None:
    policy_stub.policy_payment_methods["policy_1"] = COLLECTION_METHOD

    with pytest.raises(MissingMetadataError) as exc_info:
        await reconciliation_engine.handle_processor_event(
            "invoice.paid",
            {"id": "in_1", "amount_due": 10000, "lines": {"data": [{"id": "il_1"}]}},
            event_id="evt_1",
        )

    assert exc_info.value.context["event_type"] == "invoice.paid"
    assert exc_info.value.context["policy_id"] == "policy_1"
    assert exc_info.value.context["event_id"] == "evt_1"
    snapshot = reconciliation_store.snapshot()
    assert snapshot.totals["failed"] == {"invoice.paid": 1}
    assert snapshot.failures.last_failure_policy_id == "policy_1"
    assert "no associated policy payments" in snapshot.failures.last_failure_reason
    assert policy_stub.payment_updates == []


@pytest.mark.asyncio
async def test_late_invoice_mapping_is_processed_after_retry(
    reconciliation_engine, stripe_stub, policy_stub, stored_invoice, sleeps
) -> None:
    policy_stub.policy_payment_methods["policy_1"] = COLLECTION_METHOD
    mapped = {
        "id": "in_1",
        "metadata": {
            "rootPolicyId": "policy_1",
            "associatedRootPaymentIds": json.dumps([{"invoiceLineItemId": "il_1", "rootPaymentId": "payment_a"}]),
        },
        "lines": {"data": [{"id": "il_1"}]},
    }
    stripe_stub.invoice_reads["in_1"] = [stripe_stub.invoices["in_1"], stripe_stub.invoices["in_1"]]
    stripe_stub.invoices["in_1"] = mapped

    outcome = await reconciliation_engine.handle_processor_event(
        "invoice.paid",
        {"id": "in_1", "amount_due": 10000, "lines": {"data": [{"id": "il_1"}]}},
    )

    assert outcome == "processed"
    assert sleeps == [10.0]


@pytest.mark.asyncio
async def test_policy_events_are_recorded(reconciliation_engine, reconciliation_store) -> None:
    await reconciliation_engine.handle_policy_event(PolicyUpdated(policy_id="policy_1", updates={"name": "x"}))

    assert reconciliation_store.snapshot().totals["processed"] == {"policy_updated": 1}


@pytest.mark.asyncio
async def test_policy_event_failure_is_recorded(
    reconciliation_engine, reconciliation_store, policy_stub, make_policy
) -> None:
    policy_stub.policies["policy_1"] = make_policy()
    event = PaymentCreated(policy_id="policy_1", payment={"payment_id": "payment_9", "status": "pending", "amount": 1})

    with pytest.raises(MissingLinkageError):
        await reconciliation_engine.handle_policy_event(event)

    snapshot = reconciliation_store.snapshot()
    assert snapshot.totals["failed"] == {"payment_created": 1}
    assert snapshot.failures.last_failure_type == "payment_created"


@pytest.mark.asyncio
async def test_unexpected_processor_error_is_wrapped_and_recorded(
    reconciliation_engine, reconciliation_store, policy_stub, monkeypatch: pytest.MonkeyPatch
) -> None:
    policy_stub.policy_payment_methods["policy_1"] = COLLECTION_METHOD

    async def broken_update(updates):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(policy_stub, "update_payments", broken_update)
    intent = {"id": "pi_1", "metadata": {"rootPolicyId": "policy_1", "rootPaymentId": "payment_9"}}

    with pytest.raises(UpstreamCallError) as exc_info:
        await reconciliation_engine.handle_processor_event("payment_intent.succeeded", intent, event_id="evt_1")

    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert exc_info.value.context["policy_id"] == "policy_1"
    assert exc_info.value.context["event_id"] == "evt_1"
    snapshot = reconciliation_store.snapshot()
    assert snapshot.totals["failed"] == {"payment_intent.succeeded": 1}
    assert "connection reset" in snapshot.failures.last_failure_reason


@pytest.mark.asyncio
async def test_unexpected_policy_event_error_is_wrapped_and_recorded(
    reconciliation_engine, reconciliation_store, policy_stub, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def broken_get_policy(policy_id):
        raise KeyError("billing_day")

    monkeypatch.setattr(policy_stub, "get_policy", broken_get_policy)
    event = PaymentCreated(policy_id="policy_1", payment={"payment_id": "payment_9", "status": "pending", "amount": 1})

    with pytest.raises(UpstreamCallError) as exc_info:
        await reconciliation_engine.handle_policy_event(event)

    assert isinstance(exc_info.value.__cause__, KeyError)
    assert exc_info.value.context["cause"] == "KeyError"
    assert reconciliation_store.snapshot().totals["failed"] == {"payment_created": 1}


def test_engine_requires_billing_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "stripe_secret_key", "")
    monkeypatch.setattr(settings, "policy_api_key", "")

    with pytest.raises(ConfigurationError) as exc_info:
        ReconciliationEngine.from_settings()

    assert "stripe_secret_key" in str(exc_info.value)
    assert "policy_api_key" in str(exc_info.value)
