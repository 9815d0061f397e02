from __future__ import annotations

import json
import os
import sqlite3
from typing import Any, Iterable

from .conditions import ConditionLedger, utc_now
from .errors import NotFound
from .models import ControlPlaneSpec, ControlPlaneStatus, Fleet, Phase, Replica, UpdateStrategy
from .settings import settings

# Overrides settings.db_path when set (tests point this at a temporary file).
DB_PATH: str | None = None


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (a bind mount that did not exist
    yet gets created as one), the database file is placed inside it.
    """
    p = os.path.abspath(DB_PATH or settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "cpr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS fleets (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              name TEXT NOT NULL UNIQUE,
              spec_json TEXT NOT NULL,
              status_json TEXT NOT NULL,
              annotations_json TEXT NOT NULL DEFAULT '{}',
              api_url TEXT,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS replicas (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              fleet_id INTEGER NOT NULL,
              name TEXT NOT NULL,
              version TEXT,
              phase TEXT NOT NULL, -- Provisioning|Provisioned|Running|Deleting|Deleted|Failed
              healthy INTEGER, -- NULL until the first health report
              deletion_requested INTEGER NOT NULL DEFAULT 0,
              failure_domain TEXT,
              has_node INTEGER NOT NULL DEFAULT 0,
              instance_id TEXT,
              live_version TEXT,
              conditions_json TEXT NOT NULL DEFAULT '[]',
              created_at TEXT NOT NULL,
              UNIQUE(fleet_id, name),
              FOREIGN KEY(fleet_id) REFERENCES fleets(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              fleet_name TEXT,
              replica_name TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_replicas_fleet_id ON replicas(fleet_id);
            """
        )


def log_event(level: str, message: str, fleet_name: str | None = None, replica_name: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, fleet_name, replica_name, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), fleet_name, replica_name, message),
        )


def latest_events(limit: int = 100, fleet_name: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if fleet_name:
            rows = conn.execute(
                "SELECT * FROM events WHERE fleet_name=? ORDER BY id DESC LIMIT ?", (fleet_name, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


# --- (de)serialization ---


def spec_to_dict(spec: ControlPlaneSpec) -> dict[str, Any]:
    return {
        "replicas": spec.replicas,
        "version": spec.version,
        "update_strategy": spec.update_strategy.value,
        "worker_enabled": spec.worker_enabled,
        "failure_domains": list(spec.failure_domains),
    }


def spec_from_dict(raw: dict[str, Any]) -> ControlPlaneSpec:
    return ControlPlaneSpec(
        replicas=int(raw["replicas"]),
        version=raw["version"],
        update_strategy=UpdateStrategy(raw.get("update_strategy", UpdateStrategy.IN_PLACE.value)),
        worker_enabled=bool(raw.get("worker_enabled", False)),
        failure_domains=list(raw.get("failure_domains") or []),
    )


def status_to_dict(status: ControlPlaneStatus) -> dict[str, Any]:
    return {
        "replicas": status.replicas,
        "ready_replicas": status.ready_replicas,
        "updated_replicas": status.updated_replicas,
        "unavailable_replicas": status.unavailable_replicas,
        "version": status.version,
        "selector": status.selector,
        "ready": status.ready,
        "initialized": status.initialized,
        "external_managed_control_plane": status.external_managed_control_plane,
        "conditions": status.conditions.to_dicts(),
    }


def status_from_dict(raw: dict[str, Any]) -> ControlPlaneStatus:
    return ControlPlaneStatus(
        replicas=int(raw.get("replicas", 0)),
        ready_replicas=int(raw.get("ready_replicas", 0)),
        updated_replicas=int(raw.get("updated_replicas", 0)),
        unavailable_replicas=int(raw.get("unavailable_replicas", 0)),
        version=raw.get("version", ""),
        selector=raw.get("selector", ""),
        ready=bool(raw.get("ready", False)),
        initialized=bool(raw.get("initialized", False)),
        external_managed_control_plane=bool(raw.get("external_managed_control_plane", False)),
        conditions=ConditionLedger.from_dicts(raw.get("conditions")),
    )


def _fleet_from_row(row: sqlite3.Row) -> Fleet:
    return Fleet(
        name=row["name"],
        spec=spec_from_dict(json.loads(row["spec_json"])),
        status=status_from_dict(json.loads(row["status_json"])),
        api_url=row["api_url"],
        annotations=json.loads(row["annotations_json"] or "{}"),
        created_at=row["created_at"],
    )


def _replica_from_row(row: sqlite3.Row, fleet_name: str) -> Replica:
    return Replica(
        id=row["id"],
        name=row["name"],
        fleet=fleet_name,
        version=row["version"],
        phase=Phase(row["phase"]),
        healthy=None if row["healthy"] is None else bool(row["healthy"]),
        deletion_requested=bool(row["deletion_requested"]),
        failure_domain=row["failure_domain"],
        has_node=bool(row["has_node"]),
        instance_id=row["instance_id"],
        live_version=row["live_version"],
        conditions=ConditionLedger.from_dicts(json.loads(row["conditions_json"] or "[]")),
        created_at=row["created_at"],
    )


# --- fleets ---


def _fleet_id(conn: sqlite3.Connection, name: str) -> int:
    row = conn.execute("SELECT id FROM fleets WHERE name=?", (name,)).fetchone()
    if not row:
        raise NotFound(f"fleet {name!r} not found")
    return int(row["id"])


def upsert_fleet(name: str, spec: ControlPlaneSpec, api_url: str | None = None) -> Fleet:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO fleets (name, spec_json, status_json, api_url, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
              spec_json=excluded.spec_json,
              api_url=COALESCE(excluded.api_url, fleets.api_url)
            """,
            (name, json.dumps(spec_to_dict(spec)), json.dumps(status_to_dict(ControlPlaneStatus())), api_url, utc_now()),
        )
        row = conn.execute("SELECT * FROM fleets WHERE name=?", (name,)).fetchone()
        return _fleet_from_row(row)


def get_fleet(name: str) -> Fleet | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM fleets WHERE name=?", (name,)).fetchone()
        return _fleet_from_row(row) if row else None


def list_fleets() -> list[Fleet]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM fleets ORDER BY name").fetchall()
        return [_fleet_from_row(r) for r in rows]


def delete_fleet(name: str) -> None:
    # Replicas go with the fleet through ON DELETE CASCADE.
    with connect() as conn:
        conn.execute("DELETE FROM fleets WHERE name=?", (name,))


def patch_fleet_status(name: str, status: ControlPlaneStatus) -> None:
    with connect() as conn:
        cur = conn.execute("UPDATE fleets SET status_json=? WHERE name=?", (json.dumps(status_to_dict(status)), name))
        if cur.rowcount == 0:
            raise NotFound(f"fleet {name!r} not found")


def set_fleet_api_url(name: str, api_url: str | None) -> None:
    with connect() as conn:
        conn.execute("UPDATE fleets SET api_url=? WHERE name=?", (api_url, name))


def _update_annotations(name: str, key: str, value: str | None) -> None:
    with connect() as conn:
        row = conn.execute("SELECT annotations_json FROM fleets WHERE name=?", (name,)).fetchone()
        if not row:
            raise NotFound(f"fleet {name!r} not found")
        annotations = json.loads(row["annotations_json"] or "{}")
        if value is None:
            annotations.pop(key, None)
        else:
            annotations[key] = value
        conn.execute("UPDATE fleets SET annotations_json=? WHERE name=?", (json.dumps(annotations), name))


def set_fleet_annotation(name: str, key: str, value: str) -> None:
    _update_annotations(name, key, value)


def remove_fleet_annotation(name: str, key: str) -> None:
    _update_annotations(name, key, None)


# --- replicas ---


def insert_replica(
    fleet_name: str,
    name: str,
    version: str | None = None,
    phase: Phase = Phase.PROVISIONING,
    failure_domain: str | None = None,
    instance_id: str | None = None,
    created_at: str | None = None,
) -> Replica:
    with connect() as conn:
        fid = _fleet_id(conn, fleet_name)
        conn.execute(
            """
            INSERT INTO replicas (fleet_id, name, version, phase, failure_domain, instance_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (fid, name, version, Phase(phase).value, failure_domain, instance_id, created_at or utc_now()),
        )
        row = conn.execute("SELECT * FROM replicas WHERE fleet_id=? AND name=?", (fid, name)).fetchone()
        return _replica_from_row(row, fleet_name)


def get_replica(fleet_name: str, name: str) -> Replica | None:
    with connect() as conn:
        fid = _fleet_id(conn, fleet_name)
        row = conn.execute("SELECT * FROM replicas WHERE fleet_id=? AND name=?", (fid, name)).fetchone()
        return _replica_from_row(row, fleet_name) if row else None


def list_replicas_for(fleet_name: str) -> list[Replica]:
    with connect() as conn:
        fid = _fleet_id(conn, fleet_name)
        rows = conn.execute("SELECT * FROM replicas WHERE fleet_id=? ORDER BY id", (fid,)).fetchall()
        return [_replica_from_row(r, fleet_name) for r in rows]


_REPLICA_COLUMNS = {
    "version",
    "phase",
    "healthy",
    "deletion_requested",
    "failure_domain",
    "has_node",
    "instance_id",
    "live_version",
}


def patch_replica(fleet_name: str, name: str, **fields: Any) -> None:
    unknown = set(fields) - _REPLICA_COLUMNS
    if unknown:
        raise ValueError(f"unknown replica fields: {sorted(unknown)}")
    if not fields:
        return
    values: list[Any] = []
    for k, v in fields.items():
        if k == "phase":
            v = Phase(v).value
        elif k in {"healthy", "deletion_requested", "has_node"} and v is not None:
            v = int(bool(v))
        values.append(v)
    assignments = ", ".join(f"{k}=?" for k in fields)
    with connect() as conn:
        fid = _fleet_id(conn, fleet_name)
        cur = conn.execute(f"UPDATE replicas SET {assignments} WHERE fleet_id=? AND name=?", (*values, fid, name))
        if cur.rowcount == 0:
            raise NotFound(f"replica {name!r} not found in fleet {fleet_name!r}")


def patch_replica_conditions(replica: Replica) -> None:
    with connect() as conn:
        fid = _fleet_id(conn, replica.fleet)
        cur = conn.execute(
            "UPDATE replicas SET conditions_json=? WHERE fleet_id=? AND name=?",
            (json.dumps(replica.conditions.to_dicts()), fid, replica.name),
        )
        if cur.rowcount == 0:
            raise NotFound(f"replica {replica.name!r} not found in fleet {replica.fleet!r}")


def delete_replica(fleet_name: str, name: str) -> None:
    with connect() as conn:
        fid = _fleet_id(conn, fleet_name)
        conn.execute("DELETE FROM replicas WHERE fleet_id=? AND name=?", (fid, name))


def replica_names(replicas: Iterable[Replica]) -> list[str]:
    return [r.name for r in replicas]
