"""In-memory CRM sync observability store for runtime metrics."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class CrmSyncEventLog:
    """Stores details about noteworthy sync queue events."""

    last_failure_at: datetime | None = None
    last_failure_message: str | None = None
    last_failure_entry_id: str | None = None
    last_retry_scheduled_at: datetime | None = None
    last_retry_delay_seconds: int | None = None
    last_superseded_at: datetime | None = None


@dataclass
class CrmSyncMetricsSnapshot:
    """Serializable snapshot returned to API consumers."""

    totals: Dict[str, int]
    per_action: Dict[str, Dict[str, int]]
    events: CrmSyncEventLog

    def as_dict(self) -> Dict[str, object]:
        return {
            "totals": self.totals,
            "per_action": self.per_action,
            "events": {
                "last_failure_at": _iso(self.events.last_failure_at),
                "last_failure_message": self.events.last_failure_message,
                "last_failure_entry_id": self.events.last_failure_entry_id,
                "last_retry_scheduled_at": _iso(self.events.last_retry_scheduled_at),
                "last_retry_delay_seconds": self.events.last_retry_delay_seconds,
                "last_superseded_at": _iso(self.events.last_superseded_at),
            },
        }


@dataclass
class CrmSyncObservabilityStore:
    """Tracks queue outcomes per action type."""

    _lock: Lock = field(default_factory=Lock)
    _totals: Counter = field(default_factory=Counter)
    _per_action: Dict[str, Counter] = field(
        default_factory=lambda: {
            "enqueued": Counter(),
            "superseded": Counter(),
            "completed": Counter(),
            "retried": Counter(),
            "failed": Counter(),
        }
    )
    _events: CrmSyncEventLog = field(default_factory=CrmSyncEventLog)

    def record_enqueued(self, action_type: str) -> None:
        self._increment("enqueued", action_type)

    def record_superseded(self, action_type: str) -> None:
        with self._lock:
            self._bump("superseded", action_type)
            self._events.last_superseded_at = _utcnow()

    def record_completed(self, action_type: str) -> None:
        self._increment("completed", action_type)

    def record_retry(self, action_type: str, next_retry_at: datetime | None, delay_seconds: int) -> None:
        with self._lock:
            self._bump("retried", action_type)
            self._events.last_retry_scheduled_at = next_retry_at
            self._events.last_retry_delay_seconds = delay_seconds

    def record_failure(self, action_type: str, entry_id: str, error_message: str) -> None:
        with self._lock:
            self._bump("failed", action_type)
            self._events.last_failure_at = _utcnow()
            self._events.last_failure_message = error_message
            self._events.last_failure_entry_id = entry_id

    def snapshot(self) -> CrmSyncMetricsSnapshot:
        with self._lock:
            totals = dict(self._totals)
            per_action = {key: dict(counter) for key, counter in self._per_action.items()}
            events_copy = CrmSyncEventLog(
                last_failure_at=self._events.last_failure_at,
                last_failure_message=self._events.last_failure_message,
                last_failure_entry_id=self._events.last_failure_entry_id,
                last_retry_scheduled_at=self._events.last_retry_scheduled_at,
                last_retry_delay_seconds=self._events.last_retry_delay_seconds,
                last_superseded_at=self._events.last_superseded_at,
            )
        return CrmSyncMetricsSnapshot(totals=totals, per_action=per_action, events=events_copy)

    def reset(self) -> None:
        with self._lock:
            self._totals.clear()
            for counter in self._per_action.values():
                counter.clear()
            self._events = CrmSyncEventLog()

    def _increment(self, bucket: str, action_type: str) -> None:
        with self._lock:
            self._bump(bucket, action_type)

    def _bump(self, bucket: str, action_type: str) -> None:
        self._totals[bucket] += 1
        self._per_action[bucket][action_type] += 1


_CRM_SYNC_STORE = CrmSyncObservabilityStore()


def get_crm_sync_store() -> CrmSyncObservabilityStore:
    return _CRM_SYNC_STORE


__all__ = [
    "CrmSyncEventLog",
    "CrmSyncMetricsSnapshot",
    "CrmSyncObservabilityStore",
    "get_crm_sync_store",
]
