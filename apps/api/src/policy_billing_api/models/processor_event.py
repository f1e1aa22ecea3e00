"""Processor event ledger models and helpers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from policy_billing_api.db.base import Base


class ProcessorEventSource(str, Enum):
    STRIPE = "stripe"


class ProcessorEventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"


SETTLED_STATUSES = frozenset({ProcessorEventStatus.PROCESSED, ProcessorEventStatus.IGNORED})


class ProcessorEvent(Base):
    """Durable record of every processor webhook delivery."""

    __tablename__ = "processor_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    source = Column(
        SqlEnum(ProcessorEventSource, name="processor_event_source_enum"),
        nullable=False,
        default=ProcessorEventSource.STRIPE,
    )
    external_id = Column(String(128), nullable=False)
    event_type = Column(String(128), nullable=False)
    payload_hash = Column(String(128), nullable=False)
    policy_id = Column(String(128), nullable=True)
    payload_json = Column("payload", JSON, nullable=True)
    status = Column(
        SqlEnum(ProcessorEventStatus, name="processor_event_status_enum"),
        nullable=False,
        default=ProcessorEventStatus.RECEIVED,
    )
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    replay_requested = Column(Boolean, nullable=False, default=False, server_default="0")
    replay_requested_at = Column(DateTime(timezone=True), nullable=True)
    replay_attempts = Column(Integer, nullable=False, default=0, server_default="0")
    replayed_at = Column(DateTime(timezone=True), nullable=True)
    last_replay_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (UniqueConstraint("source", "external_id", name="uq_processor_event_source_external"),)

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_STATUSES


@dataclass(slots=True)
class RecordedProcessorEvent:
    """Result container for processor event logging."""

    event: ProcessorEvent
    created: bool


async def record_processor_event(
    session: AsyncSession,
    *,
    external_id: str,
    event_type: str,
    payload_hash: str,
    payload: dict[str, Any] | None,
    source: ProcessorEventSource = ProcessorEventSource.STRIPE,
) -> RecordedProcessorEvent:
    """Persist the processor event unless this delivery was already recorded."""

    stmt = select(ProcessorEvent).where(
        ProcessorEvent.source == source,
        ProcessorEvent.external_id == external_id,
    )
    existing = (await session.execute(stmt)).scalar_one_or_none()
    if existing:
        return RecordedProcessorEvent(event=existing, created=False)

    event = ProcessorEvent(
        source=source,
        external_id=external_id,
        event_type=event_type,
        payload_hash=payload_hash,
        payload_json=payload,
        status=ProcessorEventStatus.RECEIVED,
        replay_requested=False,
        replay_attempts=0,
    )
    session.add(event)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        found = (await session.execute(stmt)).scalar_one_or_none()
        if found is None:
            raise
        return RecordedProcessorEvent(event=found, created=False)

    return RecordedProcessorEvent(event=event, created=True)


async def mark_replay_requested(
    session: AsyncSession,
    *,
    event: ProcessorEvent,
    requested_at: datetime,
) -> ProcessorEvent:
    event.replay_requested = True
    event.replay_requested_at = requested_at
    await session.flush()
    return event


class ProcessorEventReplayAttempt(Base):
    """Audit log capturing each processing attempt for a processor event."""

    __tablename__ = "processor_event_replay_attempts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    event_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("processor_events.id", ondelete="CASCADE"),
        nullable=False,
    )
    attempted_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    status = Column(String(32), nullable=False)
    error = Column(Text, nullable=True)
    metadata_snapshot = Column(JSON, nullable=True)


async def register_replay_attempt(
    session: AsyncSession,
    *,
    event: ProcessorEvent,
    attempted_at: datetime,
    outcome: ProcessorEventStatus,
    error: str | None = None,
    policy_id: str | None = None,
) -> ProcessorEvent:
    """Record an attempt to reconcile ``event`` and its outcome.

    Failed attempts leave the event flagged for replay; settled ones clear the flag.
    """

    event.replay_attempts = (event.replay_attempts or 0) + 1
    event.status = outcome
    event.last_replay_error = error
    if policy_id:
        event.policy_id = policy_id
    if outcome in SETTLED_STATUSES:
        event.replayed_at = attempted_at
        event.replay_requested = False
    else:
        event.replay_requested = True
        event.replay_requested_at = event.replay_requested_at or attempted_at

    session.add(
        ProcessorEventReplayAttempt(
            event_id=event.id,
            attempted_at=attempted_at,
            status=outcome.value,
            error=error,
            metadata_snapshot={"policy_id": policy_id} if policy_id else None,
        )
    )
    await session.flush()
    return event


async def fetch_replay_attempts(
    session: AsyncSession,
    *,
    event_id: UUID,
    limit: int = 25,
) -> list[ProcessorEventReplayAttempt]:
    stmt = (
        select(ProcessorEventReplayAttempt)
        .where(ProcessorEventReplayAttempt.event_id == event_id)
        .order_by(ProcessorEventReplayAttempt.attempted_at.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def fetch_events_for_replay(session: AsyncSession, *, limit: int = 50) -> list[ProcessorEvent]:
    """Return replay-eligible events, oldest request first."""

    stmt = (
        select(ProcessorEvent)
        .where(ProcessorEvent.replay_requested.is_(True))
        .order_by(ProcessorEvent.replay_requested_at.asc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
