from __future__ import annotations

import secrets
from dataclasses import asdict
from typing import Any

from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from cpr import db, versions
from cpr.api_models import AddressRequest, HealthReport, RegisterFleetRequest, ReplicaReport, ReplicaUpdate
from cpr.docker_ops import validate_replica_name
from cpr.errors import IncompatibleVersion, InvalidVersion, NotFound, VersionSkewError
from cpr.health import report_health
from cpr.models import ControlPlaneSpec, Fleet, Replica
from cpr.reconciler import Reconciler, add_replica
from cpr.runtime import RuntimeState
from cpr.settings import settings

app = FastAPI(title="Control-Plane Reconciler")
security = HTTPBasic()

runtime = RuntimeState()
reconciler = Reconciler(runtime)


def require_admin(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    if not (
        secrets.compare_digest(credentials.username, settings.admin_user)
        and secrets.compare_digest(credentials.password, settings.admin_password)
    ):
        raise HTTPException(status_code=401, detail="Invalid credentials", headers={"WWW-Authenticate": "Basic"})
    return credentials.username


@app.on_event("startup")
def startup() -> None:
    db.init_db()
    reconciler.start()


@app.on_event("shutdown")
def shutdown() -> None:
    reconciler.stop()


def _fleet_or_404(name: str) -> Fleet:
    fleet = db.get_fleet(name)
    if fleet is None:
        raise HTTPException(status_code=404, detail=f"Fleet '{name}' not found")
    return fleet


def _fleet_view(fleet: Fleet) -> dict[str, Any]:
    last = runtime.get_result(fleet.name)
    return {
        "name": fleet.name,
        "spec": db.spec_to_dict(fleet.spec),
        "status": db.status_to_dict(fleet.status),
        "api_url": fleet.api_url,
        "annotations": fleet.annotations,
        "remediation_in_progress": fleet.remediation_in_progress,
        "created_at": fleet.created_at,
        "last_pass": asdict(last) if last else None,
    }


def _replica_view(r: Replica) -> dict[str, Any]:
    return {
        "name": r.name,
        "version": r.version,
        "live_version": r.live_version,
        "phase": r.phase.value,
        "healthy": r.healthy,
        "deletion_requested": r.deletion_requested,
        "failure_domain": r.failure_domain,
        "has_node": r.has_node,
        "instance_id": r.instance_id,
        "conditions": r.conditions.to_dicts(),
        "created_at": r.created_at,
    }


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "healthy"}


@app.get("/fleets")
def list_fleets() -> list[dict[str, Any]]:
    return [_fleet_view(f) for f in db.list_fleets()]


@app.post("/fleets")
def register_fleet(req: RegisterFleetRequest, username: str = Depends(require_admin)) -> dict[str, Any]:
    try:
        validate_replica_name(req.name)
        versions.deny_incompatible_version(req.version)
        existing = db.get_fleet(req.name)
        if existing is not None and existing.spec.version != req.version:
            versions.check_upgrade_skew(existing.spec.version, req.version)
    except (ValueError, InvalidVersion, IncompatibleVersion, VersionSkewError) as e:
        raise HTTPException(status_code=422, detail=str(e))

    spec = ControlPlaneSpec(
        replicas=req.replicas,
        version=req.version,
        update_strategy=req.update_strategy,
        worker_enabled=req.worker_enabled,
        failure_domains=req.failure_domains,
    )
    fleet = db.upsert_fleet(req.name, spec, api_url=req.api_url)
    db.log_event("INFO", f"Fleet registered by {username}: {req.replicas} replicas at {req.version}", fleet.name)
    return _fleet_view(fleet)


@app.get("/fleets/{name}")
def get_fleet(name: str) -> dict[str, Any]:
    return _fleet_view(_fleet_or_404(name))


@app.delete("/fleets/{name}")
def delete_fleet(name: str, username: str = Depends(require_admin)) -> dict[str, str]:
    _fleet_or_404(name)
    db.delete_fleet(name)
    runtime.forget(name)
    db.log_event("INFO", f"Fleet deleted by {username}", fleet_name=name)
    return {"deleted": name}


@app.put("/fleets/{name}/address")
def set_address(name: str, req: AddressRequest, username: str = Depends(require_admin)) -> dict[str, Any]:
    _fleet_or_404(name)
    db.set_fleet_api_url(name, req.api_url)
    db.log_event("INFO", f"External address set to {req.api_url}", fleet_name=name)
    return _fleet_view(_fleet_or_404(name))


@app.get("/fleets/{name}/replicas")
def list_replicas(name: str) -> list[dict[str, Any]]:
    _fleet_or_404(name)
    return [_replica_view(r) for r in db.list_replicas_for(name)]


@app.post("/fleets/{name}/replicas")
def report_replica(name: str, req: ReplicaReport, username: str = Depends(require_admin)) -> dict[str, Any]:
    fleet = _fleet_or_404(name)
    try:
        validate_replica_name(req.name)
        if req.version:
            versions.parse(req.version)
    except (ValueError, InvalidVersion) as e:
        raise HTTPException(status_code=422, detail=str(e))
    if db.get_replica(name, req.name) is not None:
        raise HTTPException(status_code=409, detail=f"Replica '{req.name}' already exists")

    replica = add_replica(
        fleet,
        req.name,
        version=req.version,
        phase=req.phase,
        failure_domain=req.failure_domain,
        instance_id=req.instance_id,
        created_at=req.created_at,
    )
    db.log_event("INFO", f"Replica registered by {username}", name, req.name)
    return _replica_view(replica)


@app.patch("/fleets/{name}/replicas/{replica}")
def update_replica(name: str, replica: str, req: ReplicaUpdate, username: str = Depends(require_admin)) -> dict[str, Any]:
    _fleet_or_404(name)
    fields = {k: v for k, v in req.model_dump().items() if v is not None}
    try:
        if fields.get("version"):
            versions.parse(fields["version"])
        db.patch_replica(name, replica, **fields)
    except InvalidVersion as e:
        raise HTTPException(status_code=422, detail=str(e))
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    updated = db.get_replica(name, replica)
    return _replica_view(updated)


@app.post("/fleets/{name}/replicas/{replica}/health")
def replica_health(name: str, replica: str, req: HealthReport, username: str = Depends(require_admin)) -> dict[str, Any]:
    _fleet_or_404(name)
    try:
        r = report_health(name, replica, req.healthy, req.message)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _replica_view(r)


@app.post("/fleets/{name}/reconcile")
def reconcile_now(name: str, username: str = Depends(require_admin)) -> dict[str, Any]:
    _fleet_or_404(name)
    result = reconciler.reconcile_fleet(name)
    return asdict(result)


@app.get("/passes")
def passes() -> list[dict[str, Any]]:
    """Last reconciliation pass per fleet since the service started."""
    return [asdict(r) for r in sorted(runtime.list_results(), key=lambda r: r.fleet)]


@app.get("/events")
def events(limit: int = 100, fleet: str | None = None) -> list[dict[str, Any]]:
    limit = max(1, min(1000, int(limit)))
    return db.latest_events(limit, fleet_name=fleet)
