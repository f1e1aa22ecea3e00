"""In-memory counters describing reconciliation outcomes."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict

OUTCOMES = ("processed", "ignored", "failed")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FailureLog:
    last_failure_at: datetime | None = None
    last_failure_type: str | None = None
    last_failure_policy_id: str | None = None
    last_failure_reason: str | None = None


@dataclass
class ReconciliationSnapshot:
    totals: Dict[str, Dict[str, int]]
    last_event_at: datetime | None
    failures: FailureLog

    def as_dict(self) -> dict[str, object]:
        return {
            "totals": self.totals,
            "last_event_at": self.last_event_at.isoformat() if self.last_event_at else None,
            "failures": {
                "last_failure_at": self.failures.last_failure_at.isoformat() if self.failures.last_failure_at else None,
                "last_failure_type": self.failures.last_failure_type,
                "last_failure_policy_id": self.failures.last_failure_policy_id,
                "last_failure_reason": self.failures.last_failure_reason,
            },
        }


@dataclass
class ReconciliationObservabilityStore:
    _lock: Lock = field(default_factory=Lock)
    _totals: Dict[str, Counter[str]] = field(default_factory=lambda: {outcome: Counter() for outcome in OUTCOMES})
    _last_event_at: datetime | None = None
    _failures: FailureLog = field(default_factory=FailureLog)

    def record(self, event_type: str, outcome: str, *, policy_id: str | None = None, error: str | None = None) -> None:
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown reconciliation outcome {outcome!r}")
        with self._lock:
            now = _utcnow()
            self._totals[outcome][event_type] += 1
            self._last_event_at = now
            if outcome == "failed":
                self._failures = FailureLog(
                    last_failure_at=now,
                    last_failure_type=event_type,
                    last_failure_policy_id=policy_id,
                    last_failure_reason=error,
                )

    def snapshot(self) -> ReconciliationSnapshot:
        with self._lock:
            return ReconciliationSnapshot(
                totals={outcome: dict(counter) for outcome, counter in self._totals.items()},
                last_event_at=self._last_event_at,
                failures=FailureLog(
                    last_failure_at=self._failures.last_failure_at,
                    last_failure_type=self._failures.last_failure_type,
                    last_failure_policy_id=self._failures.last_failure_policy_id,
                    last_failure_reason=self._failures.last_failure_reason,
                ),
            )

    def reset(self) -> None:
        with self._lock:
            for counter in self._totals.values():
                counter.clear()
            self._last_event_at = None
            self._failures = FailureLog()


_RECONCILIATION_STORE = ReconciliationObservabilityStore()


def get_reconciliation_store() -> ReconciliationObservabilityStore:
    return _RECONCILIATION_STORE
