from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class MembershipSnapshot:
    admissions: Dict[str, int]
    transitions: Dict[str, int]
    failures: Dict[str, int]
    ledger: Dict[str, int]
    notifications: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "admissions": dict(self.admissions),
            "transitions": dict(self.transitions),
            "failures": dict(self.failures),
            "ledger": dict(self.ledger),
            "notifications": dict(self.notifications),
        }


class MembershipTelemetryStore:
    """Collect minting and lifecycle telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._admissions: Dict[str, int] = defaultdict(int)
        self._transitions: Dict[str, int] = defaultdict(int)
        self._failures: Dict[str, int] = defaultdict(int)
        self._ledger: Dict[str, int] = defaultdict(int)
        self._notifications: Dict[str, int] = defaultdict(int)

    def record_admission(self, outcome: str) -> None:
        with self._lock:
            self._admissions[outcome] += 1

    def record_transition(self, transition: str) -> None:
        with self._lock:
            self._transitions[transition] += 1

    def record_failure(self, kind: str) -> None:
        with self._lock:
            self._failures[kind] += 1

    def record_ledger_call(self, outcome: str) -> None:
        with self._lock:
            self._ledger[outcome] += 1

    def record_notification(self, outcome: str) -> None:
        with self._lock:
            self._notifications[outcome] += 1

    def snapshot(self) -> MembershipSnapshot:
        with self._lock:
            return MembershipSnapshot(
                admissions=dict(self._admissions),
                transitions=dict(self._transitions),
                failures=dict(self._failures),
                ledger=dict(self._ledger),
                notifications=dict(self._notifications),
            )

    def reset(self) -> None:
        with self._lock:
            self._admissions.clear()
            self._transitions.clear()
            self._failures.clear()
            self._ledger.clear()
            self._notifications.clear()


_STORE = MembershipTelemetryStore()


def get_membership_telemetry() -> MembershipTelemetryStore:
    return _STORE


__all__ = ["get_membership_telemetry", "MembershipTelemetryStore", "MembershipSnapshot"]
