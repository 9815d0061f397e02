from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock

from .conditions import utc_now


@dataclass
class PassResult:
    fleet: str
    outcome: str  # ok|converging|failed|skipped
    message: str = ""
    remediated: str | None = None
    started_at: str = field(default_factory=utc_now)
    finished_at: str | None = None


class RuntimeState:
    """In-memory state shared by the reconciler threads and the API."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.fleet_locks: dict[str, Lock] = {}  # fleet name -> pass lock
        self.results: dict[str, PassResult] = {}  # fleet name -> last pass

    def fleet_lock(self, fleet: str) -> Lock:
        """The lock serializing reconciliation passes of one fleet."""
        with self.lock:
            lk = self.fleet_locks.get(fleet)
            if lk is None:
                lk = Lock()
                self.fleet_locks[fleet] = lk
            return lk

    def forget(self, fleet: str) -> None:
        with self.lock:
            self.fleet_locks.pop(fleet, None)
            self.results.pop(fleet, None)

    def record(self, result: PassResult) -> None:
        with self.lock:
            result.finished_at = utc_now()
            self.results[result.fleet] = result

    def get_result(self, fleet: str) -> PassResult | None:
        with self.lock:
            return self.results.get(fleet)

    def list_results(self) -> list[PassResult]:
        with self.lock:
            return list(self.results.values())
