"""Dependency wiring for the reconciliation engine."""

from __future__ import annotations

from fastapi import HTTPException, status

from policy_billing_api.services.billing.engine import ReconciliationEngine
from policy_billing_api.services.billing.errors import ConfigurationError


def get_reconciliation_engine() -> ReconciliationEngine:
    try:
        return ReconciliationEngine.from_settings()
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
