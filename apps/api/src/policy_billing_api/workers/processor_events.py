"""Worker utilities for processor event replays."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Awaitable, Callable
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from policy_billing_api.core.settings import settings
from policy_billing_api.models.processor_event import (
    ProcessorEvent,
    ProcessorEventStatus,
    fetch_events_for_replay,
    register_replay_attempt,
)
from policy_billing_api.services.billing.engine import ReconciliationEngine
from policy_billing_api.services.billing.errors import BillingError


class ReplayLimitExceededError(RuntimeError):
    """Raised when replay attempts exceed configured thresholds."""


async def apply_processor_event(
    session: AsyncSession,
    engine: ReconciliationEngine,
    event: ProcessorEvent,
) -> ProcessorEventStatus:
    """Reconcile a ledger entry and record the attempt, without raising on billing failures."""

    now = datetime.now(timezone.utc)
    payload = event.payload_json or {}
    data_object = (payload.get("data") or {}).get("object")
    if not data_object:
        await register_replay_attempt(
            session,
            event=event,
            attempted_at=now,
            outcome=ProcessorEventStatus.FAILED,
            error="invalid_payload",
        )
        return ProcessorEventStatus.FAILED

    try:
        result = await engine.handle_processor_event(event.event_type, data_object, event_id=event.external_id)
    except BillingError as exc:
        await register_replay_attempt(
            session,
            event=event,
            attempted_at=now,
            outcome=ProcessorEventStatus.FAILED,
            error=str(exc),
            policy_id=exc.context.get("policy_id"),
        )
        return ProcessorEventStatus.FAILED

    outcome = ProcessorEventStatus.PROCESSED if result == "processed" else ProcessorEventStatus.IGNORED
    await register_replay_attempt(session, event=event, attempted_at=now, outcome=outcome)
    return outcome


class ProcessorEventReplayWorker:
    """Re-drives processor events whose reconciliation previously failed."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]],
        *,
        engine: ReconciliationEngine | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine
        self._max_attempts = max_attempts if max_attempts is not None else settings.processor_replay_max_attempts

    @property
    def engine(self) -> ReconciliationEngine:
        if self._engine is None:
            self._engine = ReconciliationEngine.from_settings()
        return self._engine

    async def process_pending(self, *, limit: int = 50) -> dict[str, int]:
        """Replay events flagged for replay, returning a summary of outcomes."""

        summary = {"processed": 0, "ignored": 0, "failed": 0, "skipped": 0}
        session = await self._ensure_session()
        async with session as db:
            events = await fetch_events_for_replay(db, limit=limit)
            for event in events:
                try:
                    outcome = await self._replay_single(db, event=event, force=False)
                except ReplayLimitExceededError:
                    summary["skipped"] += 1
                    continue
                summary[outcome.value] += 1
            await db.commit()
        logger.info("Processor event replay sweep finished", **summary)
        return summary

    async def replay_event(self, event_id: UUID, *, force: bool = False) -> ProcessorEvent:
        """Explicitly trigger replay for a single processor event."""

        session = await self._ensure_session()
        async with session as db:
            event = await db.get(ProcessorEvent, event_id)
            if event is None:
                raise ValueError(f"Processor event {event_id} not found")
            await self._replay_single(db, event=event, force=force)
            await db.commit()
            return event

    async def _replay_single(self, session: AsyncSession, *, event: ProcessorEvent, force: bool) -> ProcessorEventStatus:
        if not force and event.replay_attempts >= self._max_attempts:
            raise ReplayLimitExceededError(f"Replay attempts exhausted for {event.id}")
        outcome = await apply_processor_event(session, self.engine, event)
        logger.info(
            "Replayed processor event",
            event_id=event.external_id,
            event_type=event.event_type,
            outcome=outcome.value,
            attempts=event.replay_attempts,
        )
        return outcome

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session


__all__ = ["ProcessorEventReplayWorker", "ReplayLimitExceededError", "apply_processor_event"]
