from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("CPR_DB_PATH", "cpr.db")
    poll_interval_s: int = _env_int("CPR_POLL_INTERVAL_S", 10)
    reconcile_workers: int = _env_int("CPR_RECONCILE_WORKERS", 4)

    # Managed cluster API
    api_probe_timeout_s: int = _env_int("CPR_API_PROBE_TIMEOUT_S", 10)
    address_poll_interval_s: int = _env_int("CPR_ADDRESS_POLL_INTERVAL_S", 1)
    address_wait_timeout_s: int = _env_int("CPR_ADDRESS_WAIT_TIMEOUT_S", 180)
    verify_tls: bool = _env_bool("CPR_VERIFY_TLS", True)

    # Versions without a build suffix are compared as if they carried this one.
    baseline_suffix: str = os.getenv("CPR_BASELINE_SUFFIX", "k0s.0")

    # Read live versions from running instances through `docker exec`.
    enable_docker_exec: bool = _env_bool("CPR_ENABLE_DOCKER_EXEC", False)

    # API credentials for mutating endpoints
    admin_user: str = os.getenv("CPR_ADMIN_USER", "admin")
    admin_password: str = os.getenv("CPR_ADMIN_PASSWORD", "admin")


settings = Settings()
