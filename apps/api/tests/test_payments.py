from __future__ import annotations

import pytest

from policy_billing_api.services.billing.errors import MissingLinkageError
from policy_billing_api.services.billing.events import PaymentCreated
from policy_billing_api.services.billing.payments import handle_payment_created

PENDING_PAYMENT = {
    "payment_id": "payment_9",
    "status": "pending",
    "amount": 5000,
    "description": "Arrears - January",
}


@pytest.fixture
def linked_policy(policy_stub, make_policy):
    policy_stub.policies["policy_1"] = make_policy(app_data={"stripe_customer_id": "cus_1"})
    policy_stub.policy_payment_methods["policy_1"] = {
        "payment_method_id": "pm_root_1",
        "module": {"payment_method": "pm_card_1"},
    }
    return policy_stub.policies["policy_1"]


@pytest.mark.asyncio
async def test_pending_payment_is_charged_off_session(billing_context, stripe_stub, linked_policy) -> None:
    await handle_payment_created(billing_context, PaymentCreated(policy_id="policy_1", payment=PENDING_PAYMENT))

    (_, _, kwargs), = stripe_stub.calls_to("create_payment_intent")
    assert kwargs["idempotency_key"] == "policy-payment-payment_9"
    assert kwargs["amount"] == 5000
    assert kwargs["currency"] == "zar"
    assert kwargs["customer"] == "cus_1"
    assert kwargs["payment_method"] == "pm_card_1"
    assert kwargs["metadata"] == {"rootPaymentId": "payment_9", "rootPolicyId": "policy_1"}
    assert kwargs["confirm"] is True
    assert kwargs["off_session"] is True


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payment",
    [
        {**PENDING_PAYMENT, "description": "Stripe created invoice item: Policy premium"},
        {**PENDING_PAYMENT, "description": "Stripe created invoice item: Refund for Stripe charge: ch_1"},
        {**PENDING_PAYMENT, "status": "successful"},
    ],
    ids=["invoice-item", "refund", "not-pending"],
)
async def test_payment_is_not_charged_twice(billing_context, stripe_stub, policy_stub, linked_policy, payment) -> None:
    await handle_payment_created(billing_context, PaymentCreated(policy_id="policy_1", payment=payment))

    assert stripe_stub.calls == []
    assert policy_stub.calls == []


@pytest.mark.asyncio
async def test_payment_without_customer_fails(billing_context, stripe_stub, policy_stub, make_policy) -> None:
    policy_stub.policies["policy_1"] = make_policy()

    with pytest.raises(MissingLinkageError):
        await handle_payment_created(billing_context, PaymentCreated(policy_id="policy_1", payment=PENDING_PAYMENT))

    assert stripe_stub.calls == []


@pytest.mark.asyncio
async def test_payment_without_processor_method_fails(billing_context, stripe_stub, policy_stub, make_policy) -> None:
    policy_stub.policies["policy_1"] = make_policy(app_data={"stripe_customer_id": "cus_1"})
    policy_stub.policy_payment_methods["policy_1"] = {"payment_method_id": "pm_root_1", "module": {}}

    with pytest.raises(MissingLinkageError):
        await handle_payment_created(billing_context, PaymentCreated(policy_id="policy_1", payment=PENDING_PAYMENT))

    assert stripe_stub.calls == []
