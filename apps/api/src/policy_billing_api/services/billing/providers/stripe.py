"""Stripe provider used by the reconciliation engine."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Mapping

import stripe
from loguru import logger

from policy_billing_api.core.settings import settings
from policy_billing_api.services.billing.errors import ConfigurationError, UpstreamCallError


@dataclass(slots=True)
class StripeRefundResponse:
    """Result payload returned after issuing a refund."""

    refund_id: str
    charge_id: str
    amount: int
    status: str | None
    reason: str | None


class StripeBillingProvider:
    """Asynchronous wrapper around the Stripe SDK resources the engine touches."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str | None = None,
        *,
        api_version: str | None = None,
    ) -> None:
        if not secret_key:
            raise ConfigurationError("Stripe secret key must be provided")
        self._webhook_secret = webhook_secret
        stripe.api_key = secret_key
        if api_version:
            stripe.api_version = api_version

    @classmethod
    def from_settings(cls) -> "StripeBillingProvider":
        """Build the provider using application settings."""

        return cls(
            settings.stripe_secret_key,
            settings.stripe_webhook_secret,
            api_version=settings.stripe_api_version,
        )

    @property
    def webhook_secret(self) -> str | None:
        return self._webhook_secret

    @staticmethod
    def _as_mapping(obj: Any) -> dict[str, Any]:
        to_dict = getattr(obj, "to_dict", None)
        if callable(to_dict):
            return to_dict()
        return dict(obj)

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any, **params: Any) -> Any:
        """Execute a blocking SDK call in a worker thread, wrapping Stripe failures."""

        try:
            return await asyncio.to_thread(func, *args, **params)
        except stripe.StripeError as exc:
            logger.warning(
                "Stripe call failed",
                operation=operation,
                error=str(exc),
                http_status=getattr(exc, "http_status", None),
            )
            raise UpstreamCallError(
                f"Stripe {operation} failed: {exc.user_message or exc}",
                operation=operation,
                params={"args": list(args), **params},
                status_code=getattr(exc, "http_status", None),
            ) from exc

    async def create_price(self, params: Mapping[str, Any]) -> dict[str, Any]:
        price = await self._call("create_price", stripe.Price.create, **dict(params))
        return self._as_mapping(price)

    async def create_subscription_schedule(self, params: Mapping[str, Any]) -> dict[str, Any]:
        schedule = await self._call("create_subscription_schedule", stripe.SubscriptionSchedule.create, **dict(params))
        return self._as_mapping(schedule)

    async def create_schedule_from_subscription(self, subscription_id: str) -> dict[str, Any]:
        schedule = await self._call(
            "create_subscription_schedule",
            stripe.SubscriptionSchedule.create,
            from_subscription=subscription_id,
        )
        return self._as_mapping(schedule)

    async def retrieve_schedule(self, schedule_id: str) -> dict[str, Any]:
        schedule = await self._call("retrieve_schedule", stripe.SubscriptionSchedule.retrieve, schedule_id)
        return self._as_mapping(schedule)

    async def update_schedule(self, schedule_id: str, **params: Any) -> dict[str, Any]:
        schedule = await self._call("update_schedule", stripe.SubscriptionSchedule.modify, schedule_id, **params)
        return self._as_mapping(schedule)

    async def cancel_schedule(self, schedule_id: str, *, prorate: bool = False, invoice_now: bool = False) -> dict[str, Any]:
        schedule = await self._call(
            "cancel_schedule",
            stripe.SubscriptionSchedule.cancel,
            schedule_id,
            prorate=prorate,
            invoice_now=invoice_now,
        )
        return self._as_mapping(schedule)

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        subscription = await self._call("retrieve_subscription", stripe.Subscription.retrieve, subscription_id)
        return self._as_mapping(subscription)

    async def update_subscription(self, subscription_id: str, **params: Any) -> dict[str, Any]:
        subscription = await self._call("update_subscription", stripe.Subscription.modify, subscription_id, **params)
        return self._as_mapping(subscription)

    async def cancel_subscription(
        self,
        subscription_id: str,
        *,
        prorate: bool = False,
        invoice_now: bool = False,
    ) -> dict[str, Any]:
        subscription = await self._call(
            "cancel_subscription",
            stripe.Subscription.cancel,
            subscription_id,
            prorate=prorate,
            invoice_now=invoice_now,
        )
        return self._as_mapping(subscription)

    async def create_customer(self, **params: Any) -> dict[str, Any]:
        customer = await self._call("create_customer", stripe.Customer.create, **params)
        return self._as_mapping(customer)

    async def update_customer(self, customer_id: str, **params: Any) -> dict[str, Any]:
        customer = await self._call("update_customer", stripe.Customer.modify, customer_id, **params)
        return self._as_mapping(customer)

    async def retrieve_payment_method(self, payment_method_id: str) -> dict[str, Any]:
        method = await self._call("retrieve_payment_method", stripe.PaymentMethod.retrieve, payment_method_id)
        return self._as_mapping(method)

    async def attach_payment_method(self, payment_method_id: str, *, customer_id: str) -> dict[str, Any]:
        method = await self._call(
            "attach_payment_method",
            stripe.PaymentMethod.attach,
            payment_method_id,
            customer=customer_id,
        )
        return self._as_mapping(method)

    async def create_payment_intent(self, *, idempotency_key: str | None = None, **params: Any) -> dict[str, Any]:
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        intent = await self._call("create_payment_intent", stripe.PaymentIntent.create, **params)
        return self._as_mapping(intent)

    async def list_charges(self, customer_id: str, *, limit: int = 3) -> list[dict[str, Any]]:
        response = await self._call("list_charges", stripe.Charge.list, customer=customer_id, limit=limit)
        return [self._as_mapping(charge) for charge in self._as_mapping(response).get("data", [])]

    async def retrieve_charge(self, charge_id: str) -> dict[str, Any]:
        if not charge_id:
            raise ValueError("charge_id is required")
        charge = await self._call("retrieve_charge", stripe.Charge.retrieve, charge_id)
        return self._as_mapping(charge)

    async def create_refund(
        self,
        charge_id: str,
        *,
        amount: int | None = None,
        reason: str = "requested_by_customer",
    ) -> StripeRefundResponse:
        """Refund ``charge_id`` in full, or ``amount`` minor units of it."""

        params: dict[str, Any] = {"charge": charge_id, "reason": reason}
        if amount is not None:
            params["amount"] = amount
        refund = self._as_mapping(await self._call("create_refund", stripe.Refund.create, **params))
        return StripeRefundResponse(
            refund_id=refund["id"],
            charge_id=refund.get("charge") or charge_id,
            amount=int(refund.get("amount") or amount or 0),
            status=refund.get("status"),
            reason=refund.get("reason"),
        )

    async def retrieve_invoice(self, invoice_id: str) -> dict[str, Any]:
        invoice = await self._call("retrieve_invoice", stripe.Invoice.retrieve, invoice_id)
        return self._as_mapping(invoice)

    async def update_invoice_metadata(self, invoice_id: str, metadata: Mapping[str, str]) -> dict[str, Any]:
        invoice = await self._call("update_invoice_metadata", stripe.Invoice.modify, invoice_id, metadata=dict(metadata))
        return self._as_mapping(invoice)


__all__ = ["StripeBillingProvider", "StripeRefundResponse"]
