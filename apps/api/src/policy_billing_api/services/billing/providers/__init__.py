"""Payment processor provider adapters for billing operations."""

from .stripe import StripeBillingProvider, StripeRefundResponse

__all__ = ["StripeBillingProvider", "StripeRefundResponse"]
