"""Billing reconciliation between the policy platform and Stripe."""
