from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Protocol

from . import conditions as cond
from .errors import AggregateError, ClusterUnreachable, NotFound, ReconcileError, RemediationError
from .models import REMEDIATION_IN_PROGRESS_ANNOTATION, Fleet, Replica, oldest


class RemediationStore(Protocol):
    def patch_replica_conditions(self, replica: Replica) -> None: ...

    def delete_replica(self, fleet_name: str, replica_name: str) -> None: ...

    def set_fleet_annotation(self, fleet_name: str, key: str, value: str) -> None: ...

    def log_event(
        self, level: str, message: str, fleet_name: str | None = None, replica_name: str | None = None
    ) -> None: ...


@dataclass
class RemediationOutcome:
    deleted: Replica | None = None
    # Condition writes that failed; already logged, retried next pass.
    errors: list[Exception] = field(default_factory=list)

    @property
    def error(self) -> ReconcileError | None:
        if not self.errors:
            return None
        return AggregateError(self.errors)


class RemediationEngine:
    """Replaces at most one unhealthy replica per reconciliation pass.

    The remediation-in-progress annotation on the fleet serializes remediations
    across passes: it is set when a replica is deleted here and removed by the
    reconciler once the replacement replica shows up.
    """

    def __init__(
        self,
        store: RemediationStore,
        mark_leave: Callable[[str], None] | None = None,
        remove_instance: Callable[[str], None] | None = None,
    ):
        self.store = store
        self.mark_leave = mark_leave
        self.remove_instance = remove_instance

    def reconcile_unhealthy(self, fleet: Fleet, replicas: list[Replica]) -> RemediationOutcome:
        """Run one remediation decision.

        Failed condition writes are collected on the outcome rather than
        raised; only a failed deletion raises (RemediationError).
        """
        healthy = [r for r in replicas if r.is_healthy]
        outcome = RemediationOutcome(errors=self._sanitize(fleet, healthy))

        if fleet.remediation_in_progress:
            self.store.log_event("INFO", "Another remediation is already in progress, skipping", fleet_name=fleet.name)
            return outcome

        candidates = [r for r in replicas if r.needs_remediation]
        target = oldest(candidates)
        if target is None:
            return outcome

        if target.deletion_requested:
            self.store.log_event("INFO", "Replica to remediate is already being deleted", fleet.name, target.name)
            return outcome

        try:
            blocked = self._safety_gate(fleet, replicas, healthy, target) if fleet.status.ready else None
            if blocked:
                self.store.log_event("INFO", f"Remediation deferred: {blocked}", fleet.name, target.name)
                target.conditions.mark_false(
                    cond.OWNER_REMEDIATED, cond.WAITING_FOR_REMEDIATION, cond.SEVERITY_WARNING, blocked
                )
            else:
                self._delete(fleet, target)
                outcome.deleted = target
        finally:
            # The target's conditions always explain where remediation stands.
            try:
                if outcome.deleted is None:
                    self.store.patch_replica_conditions(target)
            except Exception as e:
                self.store.log_event(
                    "ERROR", f"Failed to patch replica conditions: {type(e).__name__}: {e}", fleet.name, target.name
                )
                outcome.errors.append(e)

        return outcome

    def _sanitize(self, fleet: Fleet, healthy: list[Replica]) -> list[Exception]:
        """Clear leftover remediation markers from replicas that recovered."""
        errors: list[Exception] = []
        for r in healthy:
            if r.conditions.is_false(cond.OWNER_REMEDIATED) and not r.deletion_requested:
                r.conditions.delete(cond.OWNER_REMEDIATED)
                try:
                    self.store.patch_replica_conditions(r)
                    self.store.log_event("INFO", "Replica recovered, remediation marker cleared", fleet.name, r.name)
                except Exception as e:
                    self.store.log_event(
                        "ERROR",
                        f"Failed to clean unhealthy condition: {type(e).__name__}: {e}",
                        fleet.name,
                        r.name,
                    )
                    errors.append(e)
        return errors

    @staticmethod
    def _safety_gate(fleet: Fleet, replicas: list[Replica], healthy: list[Replica], target: Replica) -> str | None:
        """Return why remediating `target` now would put the fleet at risk, or None."""
        # One replica is the smallest fleet with no tolerance for losing a store member.
        if len(replicas) <= 1:
            return f"Can't remediate if current replicas ({len(replicas)}) are less or equal to 1"
        remaining = [r for r in healthy if r.name != target.name]
        if len(remaining) <= 1:
            return f"Can't remediate while it would leave {len(remaining)} healthy replica(s)"
        if any(not r.has_node for r in healthy if r.name != target.name):
            return "Waiting for control plane replica provisioning to complete before triggering remediation"
        if any(r.deletion_requested for r in replicas if r.name != target.name):
            return "Waiting for control plane replica deletion to complete before triggering remediation"
        return None

    def retire(self, fleet_name: str, replica: Replica) -> None:
        """Take a replica out of the consensus group, then delete it and its instance."""
        if self.mark_leave is not None:
            try:
                self.mark_leave(replica.name)
            except (NotFound, ClusterUnreachable) as e:
                # Best effort: the member may already be gone or the API down.
                self.store.log_event("WARN", f"Could not mark replica to leave: {e}", fleet_name, replica.name)

        if self.remove_instance is not None and replica.instance_id:
            self.remove_instance(replica.instance_id)
        self.store.delete_replica(fleet_name, replica.name)

    def _delete(self, fleet: Fleet, target: Replica) -> None:
        try:
            self.retire(fleet.name, target)
        except Exception as e:
            target.conditions.mark_false(cond.OWNER_REMEDIATED, cond.REMEDIATION_FAILED, cond.SEVERITY_ERROR, str(e))
            self.store.log_event("ERROR", f"Failed to delete unhealthy replica: {e}", fleet.name, target.name)
            raise RemediationError(f"failed to delete unhealthy replica {target.name}: {e}") from e

        # Hold further remediations until the replacement replica exists.
        fleet.annotations[REMEDIATION_IN_PROGRESS_ANNOTATION] = "true"
        self.store.set_fleet_annotation(fleet.name, REMEDIATION_IN_PROGRESS_ANNOTATION, "true")
        self.store.log_event(
            "WARN",
            "Remediated unhealthy replica, a replacement should take its place soon",
            fleet.name,
            target.name,
        )
