"""SQLAlchemy models package."""

from .processor_event import (  # noqa: F401
    ProcessorEvent,
    ProcessorEventReplayAttempt,
    ProcessorEventSource,
    ProcessorEventStatus,
)

__all__ = [
    "ProcessorEvent",
    "ProcessorEventReplayAttempt",
    "ProcessorEventSource",
    "ProcessorEventStatus",
]
