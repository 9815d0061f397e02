from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from .errors import PlanNotReady

# Plan states
SCHEDULABLE = "Schedulable"
SCHEDULABLE_WAIT = "SchedulableWait"
MISSING_SIGNAL_NODE = "MissingSignalNode"
COMPLETED = "Completed"

# Per-target command states
TARGET_PENDING = "Pending"
TARGET_SENT = "Sent"
TARGET_COMPLETED = "Completed"
TARGET_FAILED = "Failed"

K0S_UPDATE = "K0sUpdate"

PLAN_NAME = "autopilot"

_COMMAND_KINDS = {
    "k0supdate": K0S_UPDATE,
    "airgapupdate": "AirgapUpdate",
}

# Accept both the short names and the ones the plan controller writes.
_TARGET_STATES = {
    "pending": TARGET_PENDING,
    "pendingsignal": TARGET_PENDING,
    "sent": TARGET_SENT,
    "signalsent": TARGET_SENT,
    "completed": TARGET_COMPLETED,
    "failed": TARGET_FAILED,
    "signalfailed": TARGET_FAILED,
}


@dataclass(frozen=True)
class TargetStatus:
    name: str
    state: str


@dataclass
class PlanCommand:
    kind: str
    version: str = ""
    targets: list[str] = field(default_factory=list)
    statuses: list[TargetStatus] = field(default_factory=list)


@dataclass
class UpdatePlan:
    id: str = ""
    state: str = ""
    commands: list[PlanCommand] = field(default_factory=list)


def _command_kind(raw: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    for key, body in raw.items():
        kind = _COMMAND_KINDS.get(key.lower())
        if kind:
            return kind, body or {}
    return "Unknown", {}


def plan_from_document(doc: dict[str, Any]) -> UpdatePlan:
    """Read an upgrade plan document as returned by the managed cluster API."""
    spec = doc.get("spec") or {}
    status = doc.get("status") or {}
    status_commands = status.get("commands") or []

    commands: list[PlanCommand] = []
    for idx, raw in enumerate(spec.get("commands") or []):
        kind, body = _command_kind(raw)
        static = (((body.get("targets") or {}).get("controllers") or {}).get("discovery") or {}).get("static") or {}
        cmd = PlanCommand(kind=kind, version=body.get("version", ""), targets=list(static.get("nodes") or []))
        if idx < len(status_commands):
            _, st_body = _command_kind(status_commands[idx])
            for c in st_body.get("controllers") or []:
                state = _TARGET_STATES.get(str(c.get("state", "")).lower(), str(c.get("state", "")))
                cmd.statuses.append(TargetStatus(name=c.get("name", ""), state=state))
        commands.append(cmd)

    return UpdatePlan(id=spec.get("id", ""), state=status.get("state", ""), commands=commands)


def build_plan_document(
    fleet_name: str,
    version: str,
    nodes: list[str],
    download_url: str | None = None,
    timestamp: int | None = None,
) -> dict[str, Any]:
    ts = str(int(timestamp if timestamp is not None else time.time()))
    platforms = {}
    for arch in ("amd64", "arm64", "arm"):
        url = download_url or f"https://get.k0sproject.io/{version}/k0s-{version}-{arch}"
        platforms[f"linux-{arch}"] = {"url": url}
    return {
        "apiVersion": "autopilot.k0sproject.io/v1beta2",
        "kind": "Plan",
        "metadata": {"name": PLAN_NAME},
        "spec": {
            "id": f"id-{fleet_name}-{ts}",
            "timestamp": ts,
            "commands": [
                {
                    "k0supdate": {
                        "version": version,
                        "platforms": platforms,
                        "targets": {"controllers": {"discovery": {"static": {"nodes": list(nodes)}}}},
                    }
                }
            ],
        },
    }


class PlanClient(Protocol):
    def get_plan(self) -> dict[str, Any] | None: ...

    def delete_plan(self) -> None: ...

    def post_plan(self, doc: dict[str, Any]) -> None: ...


def ensure_plan(
    client: PlanClient,
    fleet_name: str,
    version: str,
    nodes: list[str],
    download_url: str | None = None,
) -> str:
    """Make sure an upgrade plan towards `version` exists.

    Returns "running" or "completed" when the current plan already targets
    `version`, "posted" when a new plan replaced it. Raises PlanNotReady while
    a plan for another version is still being executed.
    """
    existing = client.get_plan()
    if existing is not None:
        state = (existing.get("status") or {}).get("state")
        if state:
            plan = plan_from_document(existing)
            current = plan.commands[0].version if plan.commands else ""
            if state in {SCHEDULABLE, SCHEDULABLE_WAIT}:
                if current != version:
                    raise PlanNotReady(f"previous plan towards {current} is not finished")
                return "running"
            if state == COMPLETED and current == version:
                return "completed"

    client.delete_plan()
    client.post_plan(build_plan_document(fleet_name, version, nodes, download_url))
    return "posted"
