import sys
from pathlib import Path

import pytest


# Ensure `backend/` is on sys.path so tests can import local modules
# like `api.*`, `engine.*`, and `main`.
BACKEND_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_ROOT))

from engine.in_memory import InMemorySpatialEngine  # noqa: E402

DB = "places"
DESIGN_ID = "_design/geo"

# Insertion order is the fold order of both engines.
SAMPLE_ROWS = [
    ("prague", [14.42, 50.08, 14.42, 50.08], {"name": "Prague"}),
    ("brno", [16.61, 49.19, 16.61, 49.19], {"name": "Brno"}),
    ("vienna", [16.37, 48.21, 16.37, 48.21], {"name": "Vienna"}),
    ("berlin", [13.40, 52.52, 13.40, 52.52], {"name": "Berlin"}),
]


def seed_sample(engine) -> None:
    engine.put_design(DB, DESIGN_ID, ["points", "empty"])
    for doc_id, bbox, value in SAMPLE_ROWS:
        engine.put_row(DB, DESIGN_ID, "points", doc_id, bbox, value)


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    # Keep telemetry and catalog discovery away from the repo's data dirs.
    monkeypatch.setenv("SPATIAL_TELEMETRY", "0")
    monkeypatch.setenv("SPATIAL_TELEMETRY_PATH", str(tmp_path / "telemetry.duckdb"))
    monkeypatch.setenv("SPATIAL_CATALOG_DIR", str(tmp_path / "catalog"))


@pytest.fixture
def engine():
    e = InMemorySpatialEngine()
    seed_sample(e)
    return e


@pytest.fixture
def client(engine):
    from fastapi.testclient import TestClient

    from api.engines import get_engine
    from main import app

    app.dependency_overrides[get_engine] = lambda: engine
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
