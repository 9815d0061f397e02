from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# Condition types
READY = "Ready"
REPLICAS_COMPUTED = "ReplicasComputed"
UPGRADE_PLAN = "UpgradePlan"
HEALTH_CHECK_SUCCEEDED = "HealthCheckSucceeded"
OWNER_REMEDIATED = "OwnerRemediated"

# Reasons
AVAILABLE = "Available"
UNREACHABLE = "Unable to connect to the workload cluster API"
UPGRADE_IN_PROGRESS = "UpgradeInProgress"
INVALID_PLAN = "InvalidPlan"
INVALID_VERSION = "InvalidVersion"
UNSUPPORTED_STRATEGY = "UnsupportedStrategy"
PLAN_NOT_READY = "PlanNotReady"
WAITING_FOR_REMEDIATION = "WaitingForRemediation"
REMEDIATION_FAILED = "RemediationFailed"
HEALTH_CHECK_FAILED = "HealthCheckFailed"

TRUE = "True"
FALSE = "False"
UNKNOWN = "Unknown"

SEVERITY_INFO = "Info"
SEVERITY_WARNING = "Warning"
SEVERITY_ERROR = "Error"


@dataclass
class Condition:
    type: str
    status: str
    reason: str = ""
    message: str = ""
    severity: str = ""
    last_transition_time: str = field(default_factory=utc_now)


class ConditionLedger:
    """Conditions keyed by type.

    Ready always sorts first; the remaining types keep the order in which they
    were first set. Re-setting a condition with the same status keeps its
    transition time.
    """

    def __init__(self, conditions: Iterable[Condition] = ()) -> None:
        self._items: dict[str, Condition] = {}
        for c in conditions:
            self._items[c.type] = c

    def set(self, cond: Condition) -> None:
        prev = self._items.get(cond.type)
        if prev is not None and prev.status == cond.status:
            cond.last_transition_time = prev.last_transition_time
        self._items[cond.type] = cond

    def mark_true(self, type_: str, reason: str = "", message: str = "") -> None:
        self.set(Condition(type=type_, status=TRUE, reason=reason, message=message))

    def mark_false(self, type_: str, reason: str, severity: str, message: str) -> None:
        self.set(Condition(type=type_, status=FALSE, reason=reason, message=message, severity=severity))

    def get(self, type_: str) -> Condition | None:
        return self._items.get(type_)

    def delete(self, type_: str) -> None:
        self._items.pop(type_, None)

    def is_true(self, type_: str) -> bool:
        c = self._items.get(type_)
        return c is not None and c.status == TRUE

    def is_false(self, type_: str) -> bool:
        c = self._items.get(type_)
        return c is not None and c.status == FALSE

    def __contains__(self, type_: object) -> bool:
        return type_ in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(self.to_list())

    def to_list(self) -> list[Condition]:
        items = list(self._items.values())
        return sorted(items, key=lambda c: 0 if c.type == READY else 1)

    def to_dicts(self) -> list[dict[str, Any]]:
        return [asdict(c) for c in self.to_list()]

    @classmethod
    def from_dicts(cls, raw: Iterable[dict[str, Any]] | None) -> "ConditionLedger":
        return cls(Condition(**r) for r in (raw or []))
