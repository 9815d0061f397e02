from __future__ import annotations

import re
import shlex

import docker
from docker.errors import APIError, DockerException, NotFound

from .errors import RemoteExecError


REPLICA_NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9\-\.]{0,61}[a-z0-9])?$")
LIVE_VERSION_RE = re.compile(r"v?\d+\.\d+\.\d+(?:[-+][0-9A-Za-z\-\.+]+)?")

VERSION_COMMAND = ["k0s", "version"]


def validate_replica_name(name: str) -> None:
    if not REPLICA_NAME_RE.match(name):
        raise ValueError(
            "Invalid replica name. Use lowercase letters/numbers, '-' and '.', starting and ending alphanumeric (max 63 chars)."
        )


def _client() -> docker.DockerClient:
    return docker.from_env()


def docker_available() -> bool:
    try:
        c = _client()
        c.ping()
        return True
    except DockerException:
        return False


def exec_in_instance(instance_id: str, command: list[str] | str) -> str:
    """Run a command inside a replica's instance and return its stdout."""
    cmd = shlex.split(command) if isinstance(command, str) else list(command)
    try:
        cont = _client().containers.get(instance_id)
        result = cont.exec_run(cmd, stdout=True, stderr=True, demux=True)
    except NotFound as e:
        raise RemoteExecError(f"instance {instance_id} not found") from e
    except (APIError, DockerException) as e:
        raise RemoteExecError(f"exec in {instance_id} failed: {type(e).__name__}: {e}") from e

    stdout, stderr = result.output if result.output else (None, None)
    if result.exit_code != 0:
        detail = (stderr or b"").decode(errors="replace").strip()
        raise RemoteExecError(f"{' '.join(cmd)} exited with {result.exit_code}: {detail}")
    return (stdout or b"").decode(errors="replace")


def read_live_version(instance_id: str) -> str:
    out = exec_in_instance(instance_id, VERSION_COMMAND)
    m = LIVE_VERSION_RE.search(out)
    if not m:
        raise RemoteExecError(f"could not read a version from {out.strip()!r}")
    return m.group(0)


def instance_is_running(instance_id: str) -> bool:
    try:
        cont = _client().containers.get(instance_id)
        cont.reload()
        return cont.status == "running"
    except NotFound:
        return False
    except DockerException:
        return False


def remove_instance(instance_id: str, force: bool = True) -> None:
    """Delete a replica's underlying instance. A missing instance is already removed."""
    try:
        cont = _client().containers.get(instance_id)
        cont.remove(force=force)
    except NotFound:
        return
    except (APIError, DockerException) as e:
        raise RemoteExecError(f"removing {instance_id} failed: {type(e).__name__}: {e}") from e
