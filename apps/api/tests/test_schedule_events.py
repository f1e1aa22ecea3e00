from __future__ import annotations

import pytest

from policy_billing_api.services.billing.errors import MissingMetadataError
from policy_billing_api.services.billing.schedule_events import handle_schedule_updated

SCHEDULE = {
    "id": "sub_sched_1",
    "status": "active",
    "subscription": "sub_1",
    "customer": "cus_1",
    "metadata": {"rootPolicyId": "policy_1"},
}
LINKED = {
    "stripe_customer_id": "cus_1",
    "stripe_subscription_id": "sub_1",
    "stripe_subscription_schedule_id": "sub_sched_1",
}


@pytest.fixture
def started_schedule(stripe_stub, policy_stub, make_policy):
    policy_stub.policies["policy_1"] = make_policy(
        app_data={"stripe_customer_id": "cus_1", "stripe_subscription_schedule_id": "sub_sched_1"},
    )
    stripe_stub.subscriptions["sub_1"] = {"id": "sub_1", "status": "active", "default_payment_method": "pm_card_1"}
    policy_stub.policy_payment_methods["policy_1"] = {
        "payment_method_id": "pm_root_old",
        "module": {"payment_method": "pm_card_old"},
    }


@pytest.mark.asyncio
async def test_started_schedule_records_subscription_and_assigns_matching_method(
    billing_context, policy_stub, started_schedule
) -> None:
    policy_stub.policyholder_payment_methods["ph_1"] = [
        {"payment_method_id": "pm_root_other", "module": {"payment_method": "pm_card_other"}},
        {"payment_method_id": "pm_root_2", "module": {"payment_method": "pm_card_1"}},
    ]

    await handle_schedule_updated(billing_context, SCHEDULE)

    assert policy_stub.app_data_writes == [("policy_1", LINKED)]
    assert policy_stub.assignments == [("policy_1", "pm_root_2")]
    assert not [call for call in policy_stub.calls if call[0] == "create_policyholder_payment_method"]


@pytest.mark.asyncio
async def test_unknown_processor_method_is_created_for_policyholder(
    billing_context, policy_stub, started_schedule
) -> None:
    await handle_schedule_updated(billing_context, SCHEDULE)

    ((_, args, _),) = [call for call in policy_stub.calls if call[0] == "create_policyholder_payment_method"]
    assert args == (
        "ph_1",
        {
            "type": "collection_module",
            "collection_module_key": "cm_stripe",
            "module": {"payment_method": "pm_card_1"},
            "policy_ids": ["policy_1"],
        },
    )
    assert policy_stub.assignments == [("policy_1", "pm_root_new_1")]


@pytest.mark.asyncio
async def test_schedule_already_in_sync_changes_nothing(billing_context, stripe_stub, policy_stub, make_policy) -> None:
    policy_stub.policies["policy_1"] = make_policy(app_data=dict(LINKED))
    stripe_stub.subscriptions["sub_1"] = {"id": "sub_1", "status": "active", "default_payment_method": "pm_card_1"}
    policy_stub.policy_payment_methods["policy_1"] = {
        "payment_method_id": "pm_root_1",
        "module": {"payment_method": "pm_card_1"},
    }

    await handle_schedule_updated(billing_context, SCHEDULE)

    assert policy_stub.app_data_writes == []
    assert policy_stub.assignments == []


@pytest.mark.asyncio
async def test_inactive_schedule_is_ignored(billing_context, stripe_stub, policy_stub) -> None:
    await handle_schedule_updated(billing_context, {**SCHEDULE, "status": "not_started", "subscription": None})

    assert stripe_stub.calls == []
    assert policy_stub.calls == []


@pytest.mark.asyncio
async def test_schedule_without_policy_metadata_fails(billing_context) -> None:
    with pytest.raises(MissingMetadataError):
        await handle_schedule_updated(billing_context, {**SCHEDULE, "metadata": {}})
