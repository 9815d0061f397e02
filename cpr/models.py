from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .conditions import HEALTH_CHECK_SUCCEEDED, OWNER_REMEDIATED, ConditionLedger, utc_now


REMEDIATION_IN_PROGRESS_ANNOTATION = "controlplane.cluster.x-k8s.io/remediation-in-progress"


class UpdateStrategy(str, Enum):
    IN_PLACE = "InPlace"
    RECREATE = "Recreate"


class Phase(str, Enum):
    PROVISIONING = "Provisioning"
    PROVISIONED = "Provisioned"
    RUNNING = "Running"
    DELETING = "Deleting"
    DELETED = "Deleted"
    FAILED = "Failed"


@dataclass
class ControlPlaneSpec:
    replicas: int
    version: str
    update_strategy: UpdateStrategy = UpdateStrategy.IN_PLACE
    worker_enabled: bool = False
    failure_domains: list[str] = field(default_factory=list)


@dataclass
class ControlPlaneStatus:
    replicas: int = 0
    ready_replicas: int = 0
    updated_replicas: int = 0
    unavailable_replicas: int = 0
    version: str = ""
    selector: str = ""
    ready: bool = False
    initialized: bool = False
    external_managed_control_plane: bool = False
    conditions: ConditionLedger = field(default_factory=ConditionLedger)

    def counters(self) -> tuple[int, int, int, int, str]:
        return (self.replicas, self.ready_replicas, self.updated_replicas, self.unavailable_replicas, self.version)


@dataclass
class Fleet:
    name: str
    spec: ControlPlaneSpec
    status: ControlPlaneStatus = field(default_factory=ControlPlaneStatus)
    api_url: str | None = None
    annotations: dict[str, str] = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now)

    @property
    def remediation_in_progress(self) -> bool:
        return REMEDIATION_IN_PROGRESS_ANNOTATION in self.annotations


@dataclass
class Replica:
    name: str
    fleet: str
    version: str | None = None
    phase: Phase = Phase.PROVISIONING
    healthy: bool | None = None
    deletion_requested: bool = False
    failure_domain: str | None = None
    has_node: bool = False
    instance_id: str | None = None
    live_version: str | None = None
    conditions: ConditionLedger = field(default_factory=ConditionLedger)
    created_at: str = field(default_factory=utc_now)
    id: int | None = None

    @property
    def is_healthy(self) -> bool:
        """Health-check signal; prefers the condition ledger over the raw flag."""
        if HEALTH_CHECK_SUCCEEDED in self.conditions:
            return self.conditions.is_true(HEALTH_CHECK_SUCCEEDED)
        return bool(self.healthy)

    @property
    def needs_remediation(self) -> bool:
        """Marked unhealthy by the health check and acknowledged by the owner."""
        return self.conditions.is_false(HEALTH_CHECK_SUCCEEDED) and self.conditions.is_false(OWNER_REMEDIATED)

    @property
    def active(self) -> bool:
        return not self.deletion_requested


def age_key(r: Replica) -> tuple:
    # Rows created within the same second tie on created_at; the row id keeps insertion order.
    return (r.created_at, r.id if r.id is not None else -1, r.name)


def oldest(replicas: list[Replica]) -> Replica | None:
    if not replicas:
        return None
    return min(replicas, key=age_key)
