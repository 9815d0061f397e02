import threading

from cpr import conditions as cond
from cpr import db
from cpr.health import report_health
from cpr.models import REMEDIATION_IN_PROGRESS_ANNOTATION, ControlPlaneSpec, Phase
from cpr.reconciler import Reconciler, replica_name, run_once
from cpr.runtime import RuntimeState


class FakeCluster:
    def __init__(self, reachable=True):
        self.reachable = reachable
        self.plan = None
        self.posted = []
        self.left = []

    def ping(self):
        if self.reachable:
            return True, "Reachable", 3.0
        return False, "No response", None

    def get_plan(self):
        return self.plan

    def delete_plan(self):
        self.plan = None

    def post_plan(self, doc):
        self.posted.append(doc)
        self.plan = doc

    def mark_leave(self, name):
        self.left.append(name)


def _reconciler(cluster):
    return Reconciler(RuntimeState(), cluster_api=lambda fleet: cluster if fleet.api_url else None)


def test_replica_name_takes_first_free_index():
    assert replica_name("demo", set()) == "demo-0"
    assert replica_name("demo", {"demo-0", "demo-2"}) == "demo-1"


def test_steady_fleet_reports_ready(fleet_with_replicas):
    fleet_with_replicas()
    result = _reconciler(FakeCluster()).reconcile_fleet("demo")

    assert result.outcome == "ok"
    status = db.get_fleet("demo").status
    assert status.counters() == (3, 3, 3, 0, "v1.31.2+k0s.0")
    assert status.ready is True
    assert status.conditions.is_true(cond.READY)


def test_unreachable_api_leaves_fleet_not_ready(fleet_with_replicas):
    fleet_with_replicas()
    _reconciler(FakeCluster(reachable=False)).reconcile_fleet("demo")

    status = db.get_fleet("demo").status
    assert status.ready is False
    assert status.conditions.get(cond.READY).reason == cond.UNREACHABLE
    # Counters are still computed.
    assert status.replicas == 3


def test_status_version_drops_decoration_when_spec_has_none(fleet_with_replicas):
    fleet_with_replicas(version="v1.31.2", replica_version="v1.31.2+k0s.0")
    _reconciler(FakeCluster()).reconcile_fleet("demo")

    assert db.get_fleet("demo").status.version == "v1.31.2"


def test_scale_up_spreads_over_failure_domains(tmp_db):
    db.upsert_fleet(
        "demo",
        ControlPlaneSpec(replicas=3, version="v1.31.2+k0s.0", failure_domains=["az-a", "az-b", "az-c"]),
        api_url="https://demo.example:6443",
    )
    db.insert_replica("demo", "demo-0", version="v1.31.2+k0s.0", phase=Phase.RUNNING, failure_domain="az-a")

    _reconciler(FakeCluster()).reconcile_fleet("demo")

    placed = {r.name: r.failure_domain for r in db.list_replicas_for("demo")}
    assert placed == {"demo-0": "az-a", "demo-1": "az-b", "demo-2": "az-c"}
    assert all(r.version == "v1.31.2+k0s.0" for r in db.list_replicas_for("demo"))


def test_scale_down_marks_newest_for_deletion(fleet_with_replicas):
    fleet_with_replicas()
    spec = db.get_fleet("demo").spec
    spec.replicas = 2
    db.upsert_fleet("demo", spec)
    cluster = FakeCluster()
    rec = _reconciler(cluster)

    rec.reconcile_fleet("demo")

    newest = db.get_replica("demo", "demo-2")
    assert newest.deletion_requested is True
    assert newest.phase == Phase.DELETING
    assert not db.get_replica("demo", "demo-0").deletion_requested

    # The next pass completes the deletion.
    rec.reconcile_fleet("demo")

    assert db.get_replica("demo", "demo-2") is None
    assert cluster.left == ["demo-2"]
    assert [r.name for r in db.list_replicas_for("demo")] == ["demo-0", "demo-1"]


def test_unhealthy_replica_is_replaced_one_pass_at_a_time(fleet_with_replicas):
    fleet_with_replicas()
    cluster = FakeCluster()
    rec = _reconciler(cluster)
    rec.reconcile_fleet("demo")
    report_health("demo", "demo-0", False, "etcd member unhealthy")

    result = rec.reconcile_fleet("demo")

    assert result.remediated == "demo-0"
    assert cluster.left == ["demo-0"]
    assert db.get_replica("demo", "demo-0") is None
    assert db.get_fleet("demo").remediation_in_progress
    # No replacement in the pass that remediated.
    assert len(db.list_replicas_for("demo")) == 2

    rec.reconcile_fleet("demo")

    assert len(db.list_replicas_for("demo")) == 3
    assert not db.get_fleet("demo").remediation_in_progress
    assert REMEDIATION_IN_PROGRESS_ANNOTATION not in db.get_fleet("demo").annotations


def test_remediation_resumes_once_scale_down_completes(fleet_with_replicas):
    fleet_with_replicas(replicas=4)
    spec = db.get_fleet("demo").spec
    spec.replicas = 3
    db.upsert_fleet("demo", spec)
    cluster = FakeCluster()
    rec = _reconciler(cluster)

    rec.reconcile_fleet("demo")
    assert db.get_replica("demo", "demo-3").deletion_requested
    report_health("demo", "demo-0", False, "etcd member unhealthy")

    result = rec.reconcile_fleet("demo")

    assert db.get_replica("demo", "demo-3") is None
    assert result.remediated == "demo-0"
    assert cluster.left == ["demo-3", "demo-0"]
    assert [r.name for r in db.list_replicas_for("demo")] == ["demo-1", "demo-2"]


def test_failed_marker_cleanup_does_not_block_scaling(fleet_with_replicas, monkeypatch):
    fleet_with_replicas()
    spec = db.get_fleet("demo").spec
    spec.replicas = 4
    db.upsert_fleet("demo", spec)
    stale = db.get_replica("demo", "demo-1")
    stale.conditions.mark_false(
        cond.OWNER_REMEDIATED, cond.WAITING_FOR_REMEDIATION, cond.SEVERITY_WARNING, "Remediation requested"
    )
    db.patch_replica_conditions(stale)

    def conflict(replica):
        raise RuntimeError("write conflict")

    monkeypatch.setattr(db, "patch_replica_conditions", conflict)

    result = _reconciler(FakeCluster()).reconcile_fleet("demo")

    assert result.outcome != "failed"
    assert "write conflict" in result.message
    assert len(db.list_replicas_for("demo")) == 4
    assert any(e["level"] == "ERROR" and "write conflict" in e["message"] for e in db.latest_events(50, "demo"))


def test_in_place_upgrade_posts_then_completes(fleet_with_replicas):
    fleet_with_replicas(replica_version="v1.30.4+k0s.0")
    cluster = FakeCluster()
    rec = _reconciler(cluster)

    rec.reconcile_fleet("demo")

    assert len(cluster.posted) == 1
    nodes = cluster.posted[0]["spec"]["commands"][0]["k0supdate"]["targets"]["controllers"]["discovery"]["static"]["nodes"]
    assert nodes == ["demo-0", "demo-1", "demo-2"]
    assert db.get_fleet("demo").status.conditions.get(cond.UPGRADE_PLAN).reason == "posted"

    cluster.plan = dict(cluster.plan, status={"state": "Completed"})
    rec.reconcile_fleet("demo")

    assert db.get_fleet("demo").status.updated_replicas == 3
    assert {r.version for r in db.list_replicas_for("demo")} == {"v1.31.2+k0s.0"}
    assert len(cluster.posted) == 1


def test_upgrade_in_progress_is_reported_as_converging(fleet_with_replicas):
    fleet_with_replicas(replica_version="v1.30.4+k0s.0")
    cluster = FakeCluster()
    rec = _reconciler(cluster)
    rec.reconcile_fleet("demo")

    cluster.plan = dict(
        cluster.plan,
        status={
            "state": "SchedulableWait",
            "commands": [{"k0supdate": {"controllers": [{"name": "demo-0", "state": "Completed"}]}}],
        },
    )
    result = rec.reconcile_fleet("demo")

    assert result.outcome == "converging"
    status = db.get_fleet("demo").status
    assert status.updated_replicas == 1
    assert status.conditions.get(cond.REPLICAS_COMPUTED).reason == cond.UPGRADE_IN_PROGRESS


def test_cancelled_address_wait_fails_the_pass(fleet_with_replicas):
    fleet_with_replicas(api_url=None)
    cancel = threading.Event()
    cancel.set()

    result = _reconciler(FakeCluster()).reconcile_fleet("demo", cancel)

    assert result.outcome == "failed"
    assert "AddressNotAssigned" in result.message
    assert db.get_fleet("demo").status.conditions.is_false(cond.READY)


def test_concurrent_pass_for_same_fleet_is_skipped(fleet_with_replicas):
    fleet_with_replicas()
    rec = _reconciler(FakeCluster())
    lk = rec.runtime.fleet_lock("demo")
    lk.acquire()
    try:
        assert rec.reconcile_fleet("demo").outcome == "skipped"
    finally:
        lk.release()


def test_run_once_reconciles_every_fleet(fleet_with_replicas):
    fleet_with_replicas(name="alpha")
    fleet_with_replicas(name="beta", replicas=1)
    runtime = RuntimeState()
    cluster = FakeCluster()

    results = run_once(runtime, cluster_api=lambda fleet: cluster)

    assert [r.fleet for r in results] == ["alpha", "beta"]
    assert runtime.get_result("beta").outcome == "ok"
