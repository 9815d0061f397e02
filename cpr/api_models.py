from __future__ import annotations

from pydantic import BaseModel, Field

from .models import Phase, UpdateStrategy


class RegisterFleetRequest(BaseModel):
    name: str = Field(..., description="Fleet name (dns-safe)")
    replicas: int = Field(..., ge=0, le=15, description="Desired number of control-plane replicas")
    version: str = Field(..., description="Desired version, e.g. v1.31.2+k0s.0")
    update_strategy: UpdateStrategy = Field(UpdateStrategy.IN_PLACE, description="InPlace|Recreate")
    worker_enabled: bool = Field(False, description="Replicas also run the worker role")
    failure_domains: list[str] = Field(default_factory=list, description="Failure domains offered for placement")
    api_url: str | None = Field(None, description="External address of the managed cluster API")


class AddressRequest(BaseModel):
    api_url: str


class ReplicaReport(BaseModel):
    name: str
    version: str | None = None
    phase: Phase = Phase.PROVISIONING
    failure_domain: str | None = None
    instance_id: str | None = None
    created_at: str | None = Field(None, description="Creation time, defaults to now (UTC, ISO 8601)")


class ReplicaUpdate(BaseModel):
    version: str | None = None
    phase: Phase | None = None
    has_node: bool | None = None
    deletion_requested: bool | None = None
    instance_id: str | None = None
    failure_domain: str | None = None


class HealthReport(BaseModel):
    healthy: bool
    message: str = Field("", max_length=1024)
