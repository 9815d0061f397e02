import os as _os
import sys

import pytest

# Ensure project root is importable (so `import cpr...` and `import main` work reliably across environments)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from cpr import db  # noqa: E402
from cpr.models import ControlPlaneSpec, Phase  # noqa: E402


@pytest.fixture
def tmp_db(tmp_path, monkeypatch):
    """Point the store at an isolated sqlite file."""
    monkeypatch.setattr(db, "DB_PATH", str(tmp_path / "test.db"))
    db.init_db()
    return db


@pytest.fixture
def fleet_with_replicas(tmp_db):
    """A three-replica fleet whose replicas are running the desired version."""

    def _make(name="demo", replicas=3, version="v1.31.2+k0s.0", api_url="https://demo.example:6443", replica_version=None, **spec_fields):
        fleet = db.upsert_fleet(name, ControlPlaneSpec(replicas=replicas, version=version, **spec_fields), api_url=api_url)
        for i in range(replicas):
            db.insert_replica(
                name,
                f"{name}-{i}",
                version=replica_version or version,
                phase=Phase.RUNNING,
                created_at=f"2024-01-01T00:00:0{i}+00:00",
            )
            db.patch_replica(name, f"{name}-{i}", has_node=True, healthy=True)
        return fleet

    return _make
