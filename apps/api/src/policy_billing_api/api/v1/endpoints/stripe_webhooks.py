"""Webhook endpoint for the Stripe payment processor."""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from policy_billing_api.api.dependencies.engine import get_reconciliation_engine
from policy_billing_api.core.settings import settings
from policy_billing_api.db.session import get_session
from policy_billing_api.models.processor_event import (
    ProcessorEventStatus,
    mark_replay_requested,
    record_processor_event,
    register_replay_attempt,
)
from policy_billing_api.services.billing.engine import ReconciliationEngine
from policy_billing_api.services.billing.errors import BillingError

router = APIRouter(prefix="/billing/webhooks", tags=["billing-webhooks"])


@router.post("/stripe", status_code=status.HTTP_200_OK)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_session),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> dict[str, str]:
    """Verify a Stripe delivery, record it on the ledger, and reconcile it against the policy."""

    secret = settings.stripe_webhook_secret
    if not secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe webhook secret not configured")

    payload_bytes = await request.body()
    payload_text = payload_bytes.decode("utf-8")
    payload_hash = hashlib.sha256(payload_bytes).hexdigest()
    signature = request.headers.get("Stripe-Signature")
    if not signature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Stripe signature header")

    try:
        event = stripe.Webhook.construct_event(payload=payload_text, sig_header=signature, secret=secret)
    except stripe.SignatureVerificationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid Stripe signature") from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload body") from exc

    payload_dict: dict[str, Any] = json.loads(payload_text)
    event_id = str(payload_dict.get("id") or event["id"])
    event_type = str(payload_dict.get("type") or event["type"])
    data_object: dict[str, Any] = (payload_dict.get("data") or {}).get("object") or {}

    record = await record_processor_event(
        db,
        external_id=event_id,
        event_type=event_type,
        payload_hash=payload_hash,
        payload=payload_dict,
    )
    if not record.created and record.event.is_settled:
        await db.rollback()
        logger.info("Duplicate processor event ignored", event_id=event_id, event_type=event_type)
        return {"status": "duplicate"}

    now = datetime.now(timezone.utc)
    await mark_replay_requested(db, event=record.event, requested_at=now)

    try:
        result = await engine.handle_processor_event(event_type, data_object, event_id=event_id)
    except BillingError as exc:
        await register_replay_attempt(
            db,
            event=record.event,
            attempted_at=now,
            outcome=ProcessorEventStatus.FAILED,
            error=str(exc),
            policy_id=exc.context.get("policy_id"),
        )
        await db.commit()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to reconcile {event_type}",
        ) from exc

    outcome = ProcessorEventStatus.PROCESSED if result == "processed" else ProcessorEventStatus.IGNORED
    await register_replay_attempt(db, event=record.event, attempted_at=now, outcome=outcome)
    await db.commit()
    return {"status": outcome.value}
