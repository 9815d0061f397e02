from __future__ import annotations


class ReconcileError(Exception):
    """Base class for everything a reconciliation pass can raise."""


# Fatal to the current pass, status left untouched.


class InvalidVersion(ReconcileError, ValueError):
    pass


class VersionSkewError(ReconcileError, ValueError):
    pass


class IncompatibleVersion(ReconcileError, ValueError):
    pass


class UnsupportedPlanShape(ReconcileError):
    pass


class UnsupportedPlanState(ReconcileError):
    pass


class UnsupportedStrategy(ReconcileError):
    pass


# Convergence pending: counters were committed, come back later.


class UpgradeNotCompleted(ReconcileError):
    pass


class PlanNotReady(ReconcileError):
    """A plan for an older version is still running."""


# Transient external errors.


class ClusterUnreachable(ReconcileError):
    pass


class RemoteExecError(ReconcileError):
    pass


class AddressNotAssigned(ReconcileError):
    pass


class NotFound(ReconcileError, KeyError):
    pass


# Remediation and persistence.


class RemediationError(ReconcileError):
    pass


class AggregateError(ReconcileError):
    """Several independent failures collected during one pass."""

    def __init__(self, errors: list[Exception]):
        self.errors = list(errors)
        super().__init__("; ".join(f"{type(e).__name__}: {e}" for e in self.errors))
