from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Optional


@dataclass
class SettlementSnapshot:
    unlocks: Dict[str, int]
    expirations: Dict[str, int]
    sweeps: Dict[str, int]
    failures: Dict[str, int]
    last_sweep_status: Optional[str]

    def as_dict(self) -> Dict[str, object]:
        return {
            "unlocks": dict(self.unlocks),
            "expirations": dict(self.expirations),
            "sweeps": dict(self.sweeps),
            "failures": dict(self.failures),
            "lastSweepStatus": self.last_sweep_status,
        }


class SettlementObservabilityStore:
    """Collect deferred-settlement telemetry for dashboards and readiness probes."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._unlocks: Dict[str, int] = defaultdict(int)
        self._expirations: Dict[str, int] = defaultdict(int)
        self._sweeps: Dict[str, int] = defaultdict(int)
        self._failures: Dict[str, int] = defaultdict(int)
        self._last_sweep_status: Optional[str] = None

    def record_unlock(self, trigger: str) -> None:
        with self._lock:
            self._unlocks["total"] += 1
            self._unlocks[f"trigger:{trigger}"] += 1

    def record_expirations(self, kind: str, count: int) -> None:
        if count <= 0:
            return
        with self._lock:
            self._expirations[kind] += count

    def record_sweep(self, status: str) -> None:
        with self._lock:
            self._sweeps["total"] += 1
            self._sweeps[f"status:{status}"] += 1
            self._last_sweep_status = status

    def record_failure(self, stage: str) -> None:
        with self._lock:
            self._failures[stage] += 1

    def snapshot(self) -> SettlementSnapshot:
        with self._lock:
            return SettlementSnapshot(
                unlocks=dict(self._unlocks),
                expirations=dict(self._expirations),
                sweeps=dict(self._sweeps),
                failures=dict(self._failures),
                last_sweep_status=self._last_sweep_status,
            )

    def reset(self) -> None:
        with self._lock:
            self._unlocks.clear()
            self._expirations.clear()
            self._sweeps.clear()
            self._failures.clear()
            self._last_sweep_status = None


_STORE = SettlementObservabilityStore()


def get_settlement_store() -> SettlementObservabilityStore:
    return _STORE


__all__ = ["get_settlement_store", "SettlementObservabilityStore", "SettlementSnapshot"]
