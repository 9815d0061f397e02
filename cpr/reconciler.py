from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from threading import Thread
from typing import Any, Callable, Protocol

from . import conditions as cond
from . import db, docker_ops, versions
from .cluster_api import ClusterAPI, wait_for_address
from .errors import AddressNotAssigned, ClusterUnreachable, PlanNotReady, ReconcileError, RemoteExecError, UpgradeNotCompleted
from .failure_domains import stats_for
from .models import REMEDIATION_IN_PROGRESS_ANNOTATION, Fleet, Phase, Replica, UpdateStrategy, age_key
from .plans import UpdatePlan, ensure_plan, plan_from_document
from .remediation import RemediationEngine
from .runtime import PassResult, RuntimeState
from .settings import settings
from .status import StatusAggregator


class ManagedCluster(Protocol):
    def ping(self) -> tuple[bool, str, float | None]: ...

    def get_plan(self) -> dict[str, Any] | None: ...

    def delete_plan(self) -> None: ...

    def post_plan(self, doc: dict[str, Any]) -> None: ...

    def mark_leave(self, name: str) -> None: ...


def default_cluster_api(fleet: Fleet) -> ManagedCluster | None:
    return ClusterAPI(fleet.api_url) if fleet.api_url else None


def replica_name(fleet_name: str, existing: set[str]) -> str:
    i = 0
    while f"{fleet_name}-{i}" in existing:
        i += 1
    return f"{fleet_name}-{i}"


def add_replica(fleet: Fleet, name: str, **fields: Any) -> Replica:
    """Register a replica and release a pending remediation lock.

    A new replica is the replacement a remediation was waiting for.
    """
    replica = db.insert_replica(fleet.name, name, **fields)
    if fleet.remediation_in_progress:
        db.remove_fleet_annotation(fleet.name, REMEDIATION_IN_PROGRESS_ANNOTATION)
        fleet.annotations.pop(REMEDIATION_IN_PROGRESS_ANNOTATION, None)
        db.log_event("INFO", "Replacement replica observed, remediation completed", fleet.name, name)
    return replica


class Reconciler:
    """Continuously reconciles every fleet's status and health."""

    def __init__(
        self,
        runtime: RuntimeState,
        cluster_api: Callable[[Fleet], ManagedCluster | None] = default_cluster_api,
        workers: int | None = None,
    ):
        self.runtime = runtime
        self.cluster_api = cluster_api
        self.workers = max(1, int(workers if workers is not None else settings.reconcile_workers))
        self._stop = threading.Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, daemon=True)
        self._thr.start()

    def stop(self) -> None:
        # Also cancels address waits of passes still running.
        self._stop.set()

    def _loop(self) -> None:
        db.log_event("INFO", "Reconciler started")
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="cpr-pass") as pool:
            while not self._stop.is_set():
                try:
                    self._tick(pool)
                except Exception as e:
                    db.log_event("ERROR", f"Reconciler tick failed: {type(e).__name__}: {e}")
                self._stop.wait(max(1, settings.poll_interval_s))

    def _tick(self, pool: ThreadPoolExecutor) -> None:
        futures = [pool.submit(self.reconcile_fleet, f.name, self._stop) for f in db.list_fleets()]
        for fut in futures:
            fut.result()

    def reconcile_fleet(self, name: str, cancel: threading.Event | None = None) -> PassResult:
        """Run one pass for a fleet unless another pass for it is in flight."""
        lk = self.runtime.fleet_lock(name)
        if not lk.acquire(blocking=False):
            return PassResult(fleet=name, outcome="skipped", message="Another pass is in progress")
        try:
            result = self._pass(name, cancel or threading.Event())
        except ReconcileError as e:
            result = PassResult(fleet=name, outcome="failed", message=f"{type(e).__name__}: {e}")
            db.log_event("ERROR", f"Reconciliation failed: {result.message}", fleet_name=name)
        except Exception as e:
            result = PassResult(fleet=name, outcome="failed", message=f"{type(e).__name__}: {e}")
            db.log_event("ERROR", f"Reconciliation crashed: {result.message}", fleet_name=name)
        finally:
            lk.release()
        self.runtime.record(result)
        return result

    def _pass(self, name: str, cancel: threading.Event) -> PassResult:
        fleet = db.get_fleet(name)
        if fleet is None:
            return PassResult(fleet=name, outcome="skipped", message="Fleet not found")

        replicas = db.list_replicas_for(name)
        api = self._connect(fleet, replicas, cancel)
        engine = RemediationEngine(
            db,
            mark_leave=api.mark_leave if api else None,
            remove_instance=docker_ops.remove_instance if settings.enable_docker_exec else None,
        )
        replicas = self._finish_deletions(fleet, replicas, engine)
        if settings.enable_docker_exec and docker_ops.docker_available():
            self._observe_live_versions(fleet, replicas)

        aggregator = StatusAggregator(
            probe=api.ping if api else None,
            read_plan=self._plan_reader(api) if api else None,
        )
        active = [r for r in replicas if r.active]
        status_err = aggregator.update_status(fleet, active)
        if fleet.status.version:
            fleet.status.version = versions.format_status_version(fleet.spec.version, fleet.status.version)

        result = PassResult(fleet=name, outcome="ok")
        if status_err is not None:
            converging = isinstance(status_err, UpgradeNotCompleted)
            result.outcome = "converging" if converging else "failed"
            result.message = str(status_err)
            db.log_event("INFO" if converging else "ERROR", f"Status: {status_err}", fleet_name=name)

        try:
            outcome = engine.reconcile_unhealthy(fleet, replicas)
            if outcome.error is not None:
                db.log_event("ERROR", f"Remediation bookkeeping: {outcome.error}", fleet_name=name)
                result.message = "; ".join(m for m in (result.message, str(outcome.error)) if m)
            if outcome.deleted is not None:
                result.remediated = outcome.deleted.name
            else:
                self._scale(fleet, replicas)
                if api is not None:
                    self._ensure_upgrade_plan(fleet, active, api)
        finally:
            db.patch_fleet_status(name, fleet.status)
        return result

    def _connect(self, fleet: Fleet, replicas: list[Replica], cancel: threading.Event) -> ManagedCluster | None:
        if not fleet.api_url and any(r.phase == Phase.RUNNING for r in replicas):
            # Replicas are serving, so the external address is about to be assigned.
            try:
                fleet.api_url = wait_for_address(lambda: self._lookup_address(fleet.name), cancel)
            except AddressNotAssigned as e:
                fleet.status.ready = False
                fleet.status.conditions.mark_false(cond.READY, cond.UNREACHABLE, cond.SEVERITY_WARNING, str(e))
                db.patch_fleet_status(fleet.name, fleet.status)
                raise
        return self.cluster_api(fleet)

    @staticmethod
    def _lookup_address(fleet_name: str) -> str | None:
        current = db.get_fleet(fleet_name)
        return current.api_url if current else None

    @staticmethod
    def _plan_reader(api: ManagedCluster) -> Callable[[], UpdatePlan | None]:
        def read() -> UpdatePlan | None:
            doc = api.get_plan()
            return plan_from_document(doc) if doc is not None else None

        return read

    @staticmethod
    def _finish_deletions(fleet: Fleet, replicas: list[Replica], engine: RemediationEngine) -> list[Replica]:
        """Delete replicas an earlier scale-down marked, returning the ones left."""
        remaining = []
        for r in replicas:
            if not r.deletion_requested:
                remaining.append(r)
                continue
            try:
                engine.retire(fleet.name, r)
            except RemoteExecError as e:
                db.log_event("WARN", f"Scale-down deletion failed, will retry: {e}", fleet.name, r.name)
                remaining.append(r)
                continue
            db.log_event("INFO", "Scale-down deletion completed", fleet.name, r.name)
        return remaining

    @staticmethod
    def _observe_live_versions(fleet: Fleet, replicas: list[Replica]) -> None:
        for r in replicas:
            if r.phase != Phase.RUNNING or not r.instance_id:
                continue
            if not docker_ops.instance_is_running(r.instance_id):
                continue
            try:
                live = docker_ops.read_live_version(r.instance_id)
            except RemoteExecError as e:
                db.log_event("WARN", f"Could not read live version: {e}", fleet.name, r.name)
                continue
            if live != r.live_version:
                db.patch_replica(fleet.name, r.name, live_version=live)
                r.live_version = live
            if r.version and not versions.equal(live, r.version):
                db.log_event("WARN", f"Running {live} but assigned {r.version}", fleet.name, r.name)

    def _scale(self, fleet: Fleet, replicas: list[Replica]) -> None:
        """Bring the number of active replicas to the desired count."""
        active = [r for r in replicas if r.active]
        missing = fleet.spec.replicas - len(active)

        if missing < 0:
            # Remove the newest extras first.
            extras = sorted(active, key=age_key, reverse=True)[: -missing]
            for r in extras:
                db.patch_replica(fleet.name, r.name, deletion_requested=True, phase=Phase.DELETING)
                db.log_event("INFO", "Scaling down, replica marked for deletion", fleet.name, r.name)
            return

        existing = {r.name for r in replicas}
        placement = stats_for(fleet.spec.failure_domains, (r.failure_domain for r in active))
        for _ in range(missing):
            name = replica_name(fleet.name, existing)
            existing.add(name)
            fd = placement.select() or None
            add_replica(fleet, name, version=fleet.spec.version, phase=Phase.PROVISIONING, failure_domain=fd)
            if fd:
                placement.add(fd)
            db.log_event("INFO", f"Requested new replica in failure domain {fd or '-'}", fleet.name, name)

    @staticmethod
    def _ensure_upgrade_plan(fleet: Fleet, active: list[Replica], api: ManagedCluster) -> None:
        if fleet.spec.update_strategy != UpdateStrategy.IN_PLACE or not fleet.status.ready:
            return
        if not active or not fleet.status.version or versions.equal(fleet.status.version, fleet.spec.version):
            return
        try:
            outcome = ensure_plan(api, fleet.name, fleet.spec.version, db.replica_names(active))
        except PlanNotReady as e:
            fleet.status.conditions.mark_false(cond.UPGRADE_PLAN, cond.PLAN_NOT_READY, cond.SEVERITY_INFO, str(e))
            return
        except ClusterUnreachable as e:
            fleet.status.conditions.mark_false(cond.UPGRADE_PLAN, cond.UNREACHABLE, cond.SEVERITY_WARNING, str(e))
            db.log_event("WARN", f"Could not post upgrade plan: {e}", fleet_name=fleet.name)
            return
        fleet.status.conditions.mark_true(cond.UPGRADE_PLAN, reason=outcome)
        if outcome == "posted":
            db.log_event("INFO", f"Posted upgrade plan towards {fleet.spec.version}", fleet_name=fleet.name)
        elif outcome == "completed":
            # Updated in place: the replicas now run the desired version.
            for r in active:
                if r.version != fleet.spec.version:
                    db.patch_replica(fleet.name, r.name, version=fleet.spec.version)
            db.log_event("INFO", f"Upgrade plan towards {fleet.spec.version} completed", fleet_name=fleet.name)


def run_once(runtime: RuntimeState, **kwargs: Any) -> list[PassResult]:
    """Reconcile every fleet once, sequentially."""
    rec = Reconciler(runtime, **kwargs)
    return [rec.reconcile_fleet(f.name) for f in db.list_fleets()]
