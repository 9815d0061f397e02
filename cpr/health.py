from __future__ import annotations

from . import conditions as cond
from . import db
from .errors import NotFound
from .models import Replica


def apply_health(replica: Replica, ok: bool, message: str = "") -> bool | None:
    """Record a health-check result on the replica's conditions.

    A failed check also marks the replica as waiting for its owner to
    remediate it, the acknowledgement the remediation engine looks for.
    Returns the previous health signal.
    """
    prev = replica.healthy
    replica.healthy = ok
    if ok:
        replica.conditions.mark_true(cond.HEALTH_CHECK_SUCCEEDED)
        return prev
    replica.conditions.mark_false(
        cond.HEALTH_CHECK_SUCCEEDED, cond.HEALTH_CHECK_FAILED, cond.SEVERITY_WARNING, message or "Health check failed"
    )
    if cond.OWNER_REMEDIATED not in replica.conditions:
        replica.conditions.mark_false(
            cond.OWNER_REMEDIATED, cond.WAITING_FOR_REMEDIATION, cond.SEVERITY_WARNING, "Remediation requested"
        )
    return prev


def report_health(fleet_name: str, replica_name: str, ok: bool, message: str = "") -> Replica:
    replica = db.get_replica(fleet_name, replica_name)
    if replica is None:
        raise NotFound(f"replica {replica_name!r} not found in fleet {fleet_name!r}")

    prev = apply_health(replica, ok, message)
    db.patch_replica(fleet_name, replica_name, healthy=ok)
    db.patch_replica_conditions(replica)

    if prev is None:
        # first report
        pass
    elif prev and not ok:
        db.log_event("WARN", f"Replica became unhealthy: {message or 'health check failed'}", fleet_name, replica_name)
    elif (prev is False) and ok:
        db.log_event("INFO", "Replica recovered", fleet_name, replica_name)
    return replica
