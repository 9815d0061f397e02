from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable

from . import conditions as cond
from . import versions
from .errors import (
    ClusterUnreachable,
    InvalidVersion,
    ReconcileError,
    UnsupportedPlanShape,
    UnsupportedPlanState,
    UnsupportedStrategy,
    UpgradeNotCompleted,
)
from .models import ControlPlaneSpec, ControlPlaneStatus, Fleet, Phase, Replica, UpdateStrategy
from .plans import COMPLETED, K0S_UPDATE, SCHEDULABLE_WAIT, TARGET_COMPLETED, TARGET_PENDING, UpdatePlan

Probe = Callable[[], tuple[bool, str, float | None]]
PlanReader = Callable[[], UpdatePlan | None]


def selector_for(fleet_name: str) -> str:
    return f"cluster.x-k8s.io/cluster-name={fleet_name},cluster.x-k8s.io/control-plane"


class ReplicaStatusComputer(ABC):
    """Computes the replica counters and version of a control plane.

    Implementations mutate `replicas`, `ready_replicas`, `updated_replicas`,
    `unavailable_replicas` and `version` of the given status. A fatal error
    leaves the status exactly as it was passed in.
    """

    @abstractmethod
    def compute(self, status: ControlPlaneStatus) -> None: ...


class PlanStatusComputer(ReplicaStatusComputer):
    """Status derived from the state of an in-place update plan."""

    def __init__(self, plan: UpdatePlan):
        self.plan = plan

    def compute(self, status: ControlPlaneStatus) -> None:
        commands = self.plan.commands
        if len(commands) != 1:
            raise UnsupportedPlanShape(f"plan must declare exactly one command, found {len(commands)}")
        command = commands[0]
        if command.kind != K0S_UPDATE:
            raise UnsupportedPlanShape(f"unsupported plan command {command.kind!r}, expected {K0S_UPDATE}")

        if self.plan.state == COMPLETED:
            # Every replica converged; readiness and version are already known.
            status.updated_replicas = status.replicas
            return

        if self.plan.state != SCHEDULABLE_WAIT:
            raise UnsupportedPlanState(f"unsupported plan state {self.plan.state!r}")

        updated = ready = unavailable = 0
        for target in command.statuses:
            if target.state == TARGET_COMPLETED:
                updated += 1
                ready += 1
            elif target.state == TARGET_PENDING:
                # Not signalled yet, still serving on the old version.
                ready += 1
            else:
                # Sent: the replica is restarting into the new version.
                unavailable += 1

        # Partial progress is committed even though the upgrade is still running.
        status.updated_replicas = updated
        status.ready_replicas = ready
        status.unavailable_replicas = unavailable
        raise UpgradeNotCompleted(
            f"waiting for plan to complete: {updated}/{len(command.statuses)} targets updated to {command.version}"
        )


class MachineStatusComputer(ReplicaStatusComputer):
    """Status derived from the phase and version of every replica."""

    def __init__(self, replicas: list[Replica], spec: ControlPlaneSpec):
        self.replicas = list(replicas)
        self.spec = spec

    def compute(self, status: ControlPlaneStatus) -> None:
        ready = updated = unavailable = 0
        counted_versions: list[str] = []

        for r in self.replicas:
            if r.phase in {Phase.DELETING, Phase.DELETED}:
                continue
            if r.phase == Phase.RUNNING:
                ready += 1
            elif r.phase == Phase.PROVISIONED:
                # Without the worker role a replica never gets past Provisioned.
                if not self.spec.worker_enabled:
                    ready += 1
                else:
                    unavailable += 1
            else:
                unavailable += 1

            if r.version:
                counted_versions.append(r.version)
                if versions.equal(r.version, self.spec.version):
                    updated += 1

        lowest = versions.min_version(counted_versions)
        # Keep the desired build suffix so literal comparisons against the desired version still match.
        desired_suffix = versions.suffix_of(self.spec.version)
        if lowest and desired_suffix and "+" not in lowest:
            lowest = f"{lowest}+{desired_suffix}"

        status.replicas = len(self.replicas)
        status.ready_replicas = ready
        status.updated_replicas = updated
        status.unavailable_replicas = unavailable
        status.version = lowest
        if not self.spec.worker_enabled:
            status.external_managed_control_plane = True


class StatusAggregator:
    """Picks the status computer for a fleet's update strategy and runs it.

    Afterwards the managed cluster API is probed to decide readiness; that
    happens whatever the computer returned.
    """

    def __init__(self, probe: Probe | None = None, read_plan: PlanReader | None = None):
        self.probe = probe
        self.read_plan = read_plan

    def computers_for(self, fleet: Fleet, replicas: list[Replica]) -> list[ReplicaStatusComputer]:
        machines = MachineStatusComputer(replicas, fleet.spec)
        strategy = fleet.spec.update_strategy
        if strategy == UpdateStrategy.RECREATE:
            return [machines]
        if strategy == UpdateStrategy.IN_PLACE:
            plan = self.read_plan() if self.read_plan else None
            if plan is None:
                # No upgrade was ever requested: the replicas describe the fleet.
                return [machines]
            # The plan only knows about progress; the replicas provide the baseline.
            return [machines, PlanStatusComputer(plan)]
        raise UnsupportedStrategy(f"update strategy {strategy!r} not found")

    def update_status(self, fleet: Fleet, replicas: list[Replica]) -> ReconcileError | None:
        """Recompute `fleet.status`. Returns the computation error, if any."""
        status = fleet.status
        status.selector = selector_for(fleet.name)
        err: ReconcileError | None = None
        try:
            self._compute_replicas(fleet, replicas)
            status.conditions.mark_true(cond.REPLICAS_COMPUTED)
        except UpgradeNotCompleted as e:
            err = e
            status.conditions.mark_false(cond.REPLICAS_COMPUTED, cond.UPGRADE_IN_PROGRESS, cond.SEVERITY_INFO, str(e))
        except (UnsupportedPlanShape, UnsupportedPlanState) as e:
            err = e
            status.conditions.mark_false(cond.REPLICAS_COMPUTED, cond.INVALID_PLAN, cond.SEVERITY_ERROR, str(e))
        except InvalidVersion as e:
            err = e
            status.conditions.mark_false(cond.REPLICAS_COMPUTED, cond.INVALID_VERSION, cond.SEVERITY_ERROR, str(e))
        except UnsupportedStrategy as e:
            err = e
            status.conditions.mark_false(cond.REPLICAS_COMPUTED, cond.UNSUPPORTED_STRATEGY, cond.SEVERITY_ERROR, str(e))
        except ClusterUnreachable as e:
            err = e
            status.conditions.mark_false(cond.REPLICAS_COMPUTED, cond.UNREACHABLE, cond.SEVERITY_WARNING, str(e))
        finally:
            self.compute_availability(fleet)
        return err

    def _compute_replicas(self, fleet: Fleet, replicas: list[Replica]) -> None:
        computers = self.computers_for(fleet, replicas)
        # Work on a scratch copy so a fatal error anywhere leaves the fleet untouched.
        scratch = ControlPlaneStatus(
            replicas=fleet.status.replicas,
            ready_replicas=fleet.status.ready_replicas,
            updated_replicas=fleet.status.updated_replicas,
            unavailable_replicas=fleet.status.unavailable_replicas,
            version=fleet.status.version,
            external_managed_control_plane=fleet.status.external_managed_control_plane,
        )
        try:
            for c in computers:
                c.compute(scratch)
        except UpgradeNotCompleted:
            self._commit(fleet.status, scratch)
            raise
        self._commit(fleet.status, scratch)

    @staticmethod
    def _commit(status: ControlPlaneStatus, scratch: ControlPlaneStatus) -> None:
        status.replicas = scratch.replicas
        status.ready_replicas = scratch.ready_replicas
        status.updated_replicas = scratch.updated_replicas
        status.unavailable_replicas = scratch.unavailable_replicas
        status.version = scratch.version
        status.external_managed_control_plane = scratch.external_managed_control_plane

    def compute_availability(self, fleet: Fleet) -> None:
        status = fleet.status
        status.ready = False
        if self.probe is None:
            status.conditions.mark_false(
                cond.READY, cond.UNREACHABLE, cond.SEVERITY_WARNING, "No API address known for the control plane"
            )
            return
        ok, msg, _latency = self.probe()
        if not ok:
            status.conditions.mark_false(cond.READY, cond.UNREACHABLE, cond.SEVERITY_WARNING, f"Failed to reach API: {msg}")
            return
        status.conditions.mark_true(cond.READY, cond.AVAILABLE)
        status.ready = True
        status.initialized = True
