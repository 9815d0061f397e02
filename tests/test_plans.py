import pytest

from cpr.errors import PlanNotReady
from cpr.plans import build_plan_document, ensure_plan, plan_from_document


class FakePlanClient:
    def __init__(self, plan=None):
        self.plan = plan
        self.deleted = 0
        self.posted = []

    def get_plan(self):
        return self.plan

    def delete_plan(self):
        self.deleted += 1
        self.plan = None

    def post_plan(self, doc):
        self.posted.append(doc)
        self.plan = doc


def _with_state(doc, state):
    doc = dict(doc)
    doc["status"] = {"state": state}
    return doc


def test_build_plan_document_targets_given_nodes():
    doc = build_plan_document("demo", "v1.31.2+k0s.0", ["demo-0", "demo-1"], timestamp=1700000000)

    assert doc["metadata"]["name"] == "autopilot"
    assert doc["spec"]["id"] == "id-demo-1700000000"
    update = doc["spec"]["commands"][0]["k0supdate"]
    assert update["version"] == "v1.31.2+k0s.0"
    assert update["targets"]["controllers"]["discovery"]["static"]["nodes"] == ["demo-0", "demo-1"]
    assert update["platforms"]["linux-amd64"]["url"].endswith("/v1.31.2+k0s.0/k0s-v1.31.2+k0s.0-amd64")

    plan = plan_from_document(doc)
    assert plan.commands[0].targets == ["demo-0", "demo-1"]


def test_ensure_plan_posts_when_none_exists():
    client = FakePlanClient()
    assert ensure_plan(client, "demo", "v1.31.2+k0s.0", ["demo-0"]) == "posted"
    assert len(client.posted) == 1


def test_ensure_plan_waits_for_previous_version():
    old = _with_state(build_plan_document("demo", "v1.30.4+k0s.0", ["demo-0"]), "SchedulableWait")
    client = FakePlanClient(old)

    with pytest.raises(PlanNotReady):
        ensure_plan(client, "demo", "v1.31.2+k0s.0", ["demo-0"])
    assert client.posted == []


def test_ensure_plan_reports_running_and_completed():
    running = _with_state(build_plan_document("demo", "v1.31.2+k0s.0", ["demo-0"]), "Schedulable")
    assert ensure_plan(FakePlanClient(running), "demo", "v1.31.2+k0s.0", ["demo-0"]) == "running"

    done = _with_state(build_plan_document("demo", "v1.31.2+k0s.0", ["demo-0"]), "Completed")
    assert ensure_plan(FakePlanClient(done), "demo", "v1.31.2+k0s.0", ["demo-0"]) == "completed"


def test_completed_plan_for_older_version_is_replaced():
    old = _with_state(build_plan_document("demo", "v1.30.4+k0s.0", ["demo-0"]), "Completed")
    client = FakePlanClient(old)

    assert ensure_plan(client, "demo", "v1.31.2+k0s.0", ["demo-0"]) == "posted"
    assert client.deleted == 1
    assert client.posted[0]["spec"]["commands"][0]["k0supdate"]["version"] == "v1.31.2+k0s.0"
