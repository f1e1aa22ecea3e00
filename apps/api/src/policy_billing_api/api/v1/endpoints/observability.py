"""Observability endpoints for reconciliation outcomes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from policy_billing_api.api.dependencies.security import require_hook_api_key
from policy_billing_api.observability.reconciliation import get_reconciliation_store

router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/reconciliation",
    dependencies=[Depends(require_hook_api_key)],
    summary="Reconciliation observability snapshot",
)
async def get_reconciliation_snapshot() -> dict[str, object]:
    """Aggregated reconciliation counters per event type and the most recent failure."""
    return get_reconciliation_store().snapshot().as_dict()
