"""Entry point tying event dispatch, routing, and observability together."""

from __future__ import annotations

from typing import Any, Mapping

from loguru import logger

from policy_billing_api.core.settings import settings
from policy_billing_api.observability.reconciliation import (
    ReconciliationObservabilityStore,
    get_reconciliation_store,
)
from policy_billing_api.observability.tracing import get_tracer
from policy_billing_api.services.billing.context import BillingContext
from policy_billing_api.services.billing.errors import BillingError, ConfigurationError, UpstreamCallError
from policy_billing_api.services.billing.event_handlers import handle_stripe_event
from policy_billing_api.services.billing.events import PolicyEvent
from policy_billing_api.services.billing.invoice_mapping import MetadataRetryPolicy
from policy_billing_api.services.billing.lifecycle import handle_policy_event
from policy_billing_api.services.billing.providers.stripe import StripeBillingProvider
from policy_billing_api.services.billing.routing import is_assigned_to_collection_module, resolve_policy_id
from policy_billing_api.services.policy.client import PolicyServiceClient


class ReconciliationEngine:
    """Reconciles policy and processor events against the billing linkage."""

    def __init__(
        self,
        context: BillingContext,
        *,
        store: ReconciliationObservabilityStore | None = None,
    ) -> None:
        self.context = context
        self._store = store or get_reconciliation_store()

    @classmethod
    def from_settings(cls) -> "ReconciliationEngine":
        missing = settings.missing_billing_settings()
        if missing:
            raise ConfigurationError("Billing settings are incomplete", missing=", ".join(missing))

        context = BillingContext(
            stripe=StripeBillingProvider.from_settings(),
            policies=PolicyServiceClient.from_settings(),
            product_id=settings.stripe_product_id,
            collection_module_key=settings.collection_module_key,
            currency=settings.billing_currency,
            timezone=settings.billing_timezone,
            cooling_off_period_days=settings.cooling_off_period_days,
            retry_policy=MetadataRetryPolicy(
                max_attempts=settings.invoice_metadata_retry_attempts,
                delay_seconds=settings.invoice_metadata_retry_delay_seconds,
            ),
        )
        return cls(context)

    async def handle_policy_event(self, event: PolicyEvent) -> None:
        event_type = event.kind.value
        with get_tracer().start_as_current_span(f"billing.policy.{event_type}") as span:
            span.set_attribute("billing.policy_id", event.policy_id)
            try:
                await handle_policy_event(self.context, event)
            except BillingError as exc:
                self._fail(exc, event_type=event_type, policy_id=event.policy_id)
                raise
            except Exception as exc:
                error = _unexpected(exc, event_type)
                self._fail(error, event_type=event_type, policy_id=event.policy_id)
                raise error from exc
        self._store.record(event_type, "processed", policy_id=event.policy_id)
        logger.info("Policy event reconciled", event_type=event_type, policy_id=event.policy_id)

    async def handle_processor_event(
        self,
        event_type: str,
        data_object: Mapping[str, Any],
        *,
        event_id: str | None = None,
    ) -> str:
        """Route and reconcile a processor event, returning ``processed`` or ``ignored``."""

        with get_tracer().start_as_current_span(f"billing.processor.{event_type}") as span:
            policy_id: str | None = None
            try:
                policy_id = await resolve_policy_id(self.context, event_type, data_object)
                if policy_id is None:
                    logger.info("Processor event not linked to a policy", event_type=event_type, event_id=event_id)
                    self._store.record(event_type, "ignored")
                    return "ignored"
                span.set_attribute("billing.policy_id", policy_id)
                if not await is_assigned_to_collection_module(self.context, policy_id):
                    self._store.record(event_type, "ignored", policy_id=policy_id)
                    return "ignored"
                await handle_stripe_event(self.context, event_type, data_object)
            except BillingError as exc:
                self._fail(exc, event_type=event_type, policy_id=policy_id, event_id=event_id)
                raise
            except Exception as exc:
                error = _unexpected(exc, event_type)
                self._fail(error, event_type=event_type, policy_id=policy_id, event_id=event_id)
                raise error from exc

        self._store.record(event_type, "processed", policy_id=policy_id)
        logger.info("Processor event reconciled", event_type=event_type, policy_id=policy_id, event_id=event_id)
        return "processed"

    def _fail(self, exc: BillingError, **context: Any) -> None:
        exc.add_context(**context)
        self._store.record(str(context["event_type"]), "failed", policy_id=context.get("policy_id"), error=str(exc))
        logger.bind(**exc.context).error(
            "Billing reconciliation failed",
            error_type=type(exc).__name__,
            error=exc.message,
        )


def _unexpected(exc: Exception, event_type: str) -> UpstreamCallError:
    return UpstreamCallError(
        f"Unexpected {type(exc).__name__} while reconciling {event_type}: {exc}",
        operation=event_type,
        cause=type(exc).__name__,
    )


__all__ = ["ReconciliationEngine"]
