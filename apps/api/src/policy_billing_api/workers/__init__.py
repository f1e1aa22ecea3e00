"""Background workers supporting async processing."""

from .processor_events import ProcessorEventReplayWorker, ReplayLimitExceededError

__all__ = ["ProcessorEventReplayWorker", "ReplayLimitExceededError"]
