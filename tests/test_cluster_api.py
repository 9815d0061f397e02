import json
import threading

import httpx
import pytest

from cpr import cluster_api
from cpr.cluster_api import ClusterAPI, wait_for_address
from cpr.errors import AddressNotAssigned, ClusterUnreachable


def _api(monkeypatch, handler):
    api = ClusterAPI("https://demo.example:6443", timeout_s=1)
    transport = httpx.MockTransport(handler)
    monkeypatch.setattr(api, "_client", lambda: httpx.Client(base_url=api.base_url, transport=transport))
    return api


def test_ping_reports_reachable(monkeypatch):
    api = _api(monkeypatch, lambda request: httpx.Response(200, json={"metadata": {"name": "kube-system"}}))
    ok, msg, latency = api.ping()
    assert ok is True
    assert msg == "Reachable"
    assert latency is not None


def test_ping_reports_http_errors_and_timeouts(monkeypatch):
    api = _api(monkeypatch, lambda request: httpx.Response(503))
    assert api.ping()[:2] == (False, "HTTP 503")

    def timeout(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    api = _api(monkeypatch, timeout)
    assert api.ping()[:2] == (False, "No response")


def test_missing_plan_reads_as_none(monkeypatch):
    api = _api(monkeypatch, lambda request: httpx.Response(404))
    assert api.get_plan() is None


def test_transport_errors_become_cluster_unreachable(monkeypatch):
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    api = _api(monkeypatch, refuse)
    with pytest.raises(ClusterUnreachable):
        api.post_plan({"kind": "Plan"})


def test_mark_leave_falls_back_to_control_node(monkeypatch):
    seen = []

    def handler(request):
        seen.append((request.method, request.url.path, json.loads(request.content)))
        if request.url.path.startswith(cluster_api.ETCD_MEMBERS_PATH):
            return httpx.Response(404)
        return httpx.Response(200)

    _api(monkeypatch, handler).mark_leave("demo-0")

    assert [p for _, p, _ in seen] == [
        f"{cluster_api.ETCD_MEMBERS_PATH}/demo-0",
        f"{cluster_api.CONTROL_NODES_PATH}/demo-0",
    ]
    assert seen[0][2]["spec"] == {"leave": True}


def test_mark_leave_on_missing_node_is_not_an_error(monkeypatch):
    _api(monkeypatch, lambda request: httpx.Response(404)).mark_leave("demo-0")


def test_wait_for_address_polls_until_assigned():
    answers = iter([None, "", "https://demo.example:6443"])
    assert wait_for_address(lambda: next(answers), interval_s=0, timeout_s=5) == "https://demo.example:6443"


def test_wait_for_address_gives_up():
    with pytest.raises(AddressNotAssigned):
        wait_for_address(lambda: None, interval_s=0, timeout_s=0)

    cancel = threading.Event()
    cancel.set()
    with pytest.raises(AddressNotAssigned):
        wait_for_address(lambda: None, cancel=cancel, interval_s=0, timeout_s=60)
