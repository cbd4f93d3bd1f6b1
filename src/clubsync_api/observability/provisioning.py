"""Counters for tier provisioning outcomes."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List


@dataclass
class ProvisioningSnapshot:
    totals: Dict[str, int]
    failed_steps: Dict[str, int]
    last_compensation_warnings: List[str]
    last_failure_at: datetime | None

    def as_dict(self) -> Dict[str, object]:
        return {
            "totals": self.totals,
            "failed_steps": self.failed_steps,
            "last_compensation_warnings": list(self.last_compensation_warnings),
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
        }


@dataclass
class ProvisioningObservabilityStore:
    _lock: Lock = field(default_factory=Lock)
    _totals: Counter = field(default_factory=Counter)
    _failed_steps: Counter = field(default_factory=Counter)
    _last_warnings: List[str] = field(default_factory=list)
    _last_failure_at: datetime | None = None

    def record_provisioned(self) -> None:
        with self._lock:
            self._totals["provisioned"] += 1

    def record_rolled_back(self, failed_step: str, compensation_failures: List[str]) -> None:
        with self._lock:
            self._totals["rolled_back"] += 1
            if compensation_failures:
                self._totals["compensation_incomplete"] += 1
            self._failed_steps[failed_step] += 1
            self._last_warnings = list(compensation_failures)
            self._last_failure_at = datetime.now(timezone.utc)

    def record_persistence_failure(self) -> None:
        with self._lock:
            self._totals["persistence_failed"] += 1
            self._last_failure_at = datetime.now(timezone.utc)

    def record_deprovisioned(self, warnings: List[str]) -> None:
        with self._lock:
            self._totals["deprovisioned"] += 1
            if warnings:
                self._totals["deprovision_warnings"] += len(warnings)

    def snapshot(self) -> ProvisioningSnapshot:
        with self._lock:
            return ProvisioningSnapshot(
                totals=dict(self._totals),
                failed_steps=dict(self._failed_steps),
                last_compensation_warnings=list(self._last_warnings),
                last_failure_at=self._last_failure_at,
            )

    def reset(self) -> None:
        with self._lock:
            self._totals.clear()
            self._failed_steps.clear()
            self._last_warnings = []
            self._last_failure_at = None


_PROVISIONING_STORE = ProvisioningObservabilityStore()


def get_provisioning_store() -> ProvisioningObservabilityStore:
    return _PROVISIONING_STORE
