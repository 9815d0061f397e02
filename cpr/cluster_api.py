from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable

import httpx

from .errors import AddressNotAssigned, ClusterUnreachable
from .settings import settings


PLANS_PATH = "/apis/autopilot.k0sproject.io/v1beta2/plans"
ETCD_MEMBERS_PATH = "/apis/etcd.k0sproject.io/v1beta1/etcdmembers"
CONTROL_NODES_PATH = "/apis/autopilot.k0sproject.io/v1beta2/controlnodes"
PROBE_PATH = "/api/v1/namespaces/kube-system"

MERGE_PATCH = {"Content-Type": "application/merge-patch+json"}


class ClusterAPI:
    """Thin client for the managed cluster's own API server."""

    def __init__(self, base_url: str, token: str | None = None, timeout_s: float | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = float(timeout_s if timeout_s is not None else settings.api_probe_timeout_s)
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._headers = headers

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            headers=self._headers,
            timeout=self.timeout_s,
            verify=settings.verify_tls,
            follow_redirects=False,
        )

    def ping(self) -> tuple[bool, str, float | None]:
        """Fetch a well-known namespace; success means the API is serving.

        Returns (reachable, message, latency_ms).
        """
        start = time.time()
        try:
            with self._client() as client:
                resp = client.get(PROBE_PATH)
            latency_ms = round((time.time() - start) * 1000.0, 2)
            if resp.status_code != 200:
                return False, f"HTTP {resp.status_code}", latency_ms
            return True, "Reachable", latency_ms
        except (httpx.ConnectError, httpx.TimeoutException):
            latency_ms = round((time.time() - start) * 1000.0, 2)
            return False, "No response", latency_ms
        except httpx.HTTPError as e:
            latency_ms = round((time.time() - start) * 1000.0, 2)
            return False, f"Error: {type(e).__name__}: {e}", latency_ms

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            with self._client() as client:
                return client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ClusterUnreachable(f"{method} {path}: {type(e).__name__}: {e}") from e

    def get_plan(self) -> dict[str, Any] | None:
        resp = self._request("GET", f"{PLANS_PATH}/autopilot")
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise ClusterUnreachable(f"reading plan: HTTP {resp.status_code}")
        return resp.json()

    def delete_plan(self) -> None:
        resp = self._request("DELETE", f"{PLANS_PATH}/autopilot")
        if resp.status_code not in {200, 202, 404}:
            raise ClusterUnreachable(f"deleting plan: HTTP {resp.status_code}")

    def post_plan(self, doc: dict[str, Any]) -> None:
        resp = self._request("POST", PLANS_PATH, json=doc)
        if resp.status_code not in {200, 201, 202}:
            raise ClusterUnreachable(f"posting plan: HTTP {resp.status_code}")

    def mark_leave(self, name: str) -> None:
        """Ask the consensus group to drop a member.

        Marks the etcd member to leave; if that fails, annotates the control
        node instead. A missing control node counts as already gone.
        """
        body = {
            "spec": {"leave": True},
            "metadata": {"annotations": {"k0smotron.io/marked-to-leave-at": datetime.now(timezone.utc).isoformat()}},
        }
        resp = self._request("PATCH", f"{ETCD_MEMBERS_PATH}/{name}", content=json.dumps(body), headers=MERGE_PATCH)
        if resp.status_code == 200:
            return
        fallback = {"metadata": {"annotations": {"k0smotron.io/leave": "true"}}}
        resp = self._request("PATCH", f"{CONTROL_NODES_PATH}/{name}", content=json.dumps(fallback), headers=MERGE_PATCH)
        if resp.status_code not in {200, 404}:
            raise ClusterUnreachable(f"marking control node {name} to leave: HTTP {resp.status_code}")


def wait_for_address(
    lookup: Callable[[], str | None],
    cancel: threading.Event | None = None,
    interval_s: float | None = None,
    timeout_s: float | None = None,
) -> str:
    """Poll `lookup` until it returns an address.

    Sleeps on the cancellation event between polls so a cancelled pass stops
    waiting right away.
    """
    interval = float(interval_s if interval_s is not None else settings.address_poll_interval_s)
    timeout = float(timeout_s if timeout_s is not None else settings.address_wait_timeout_s)
    cancel = cancel or threading.Event()
    t0 = time.monotonic()
    while True:
        address = lookup()
        if address:
            return address
        if cancel.is_set():
            raise AddressNotAssigned("wait for external address cancelled")
        if time.monotonic() - t0 >= timeout:
            raise AddressNotAssigned(f"no external address assigned after {int(timeout)}s")
        if cancel.wait(max(0.0, interval)):
            raise AddressNotAssigned("wait for external address cancelled")
