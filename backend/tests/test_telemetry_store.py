from __future__ import annotations

from fastapi.testclient import TestClient

from telemetry.singleton import get_store, reset_store


def test_telemetry_store_writes_rows(tmp_path, monkeypatch):
    db_path = tmp_path / "telemetry.duckdb"
    monkeypatch.setenv("SPATIAL_TELEMETRY_PATH", str(db_path))
    monkeypatch.setenv("SPATIAL_TELEMETRY", "1")

    store = get_store()
    assert store is not None

    store.record(
        endpoint="/_spatial",
        db="places",
        design_id="_design/geo",
        index_name="points",
        mode="rows",
        engine="in_memory",
        bbox=[0, 0, 1, 1],
        rows=3,
        stats={"timingsMs": {"total": 9.9}},
    )
    store.flush(timeout_s=2.0)

    # Use the existing connection; DuckDB disallows opening the same file with different configs.
    n = int(store.conn.execute("select count(*) from events").fetchone()[0])
    assert n == 1

    row = store.conn.execute("select mode, engine, n_rows, bbox_json from events").fetchone()
    assert row == ("rows", "in_memory", 3, "[0, 0, 1, 1]")

    summary = store.summary(engine="in_memory")
    assert summary[0]["n"] == 1
    assert summary[0]["mode"] == "rows"
    assert store.slowest(limit=5)[0]["totalMs"] == 9.9

    reset_store()


def test_telemetry_reset_deletes_db(tmp_path, monkeypatch):
    db_path = tmp_path / "telemetry.duckdb"
    monkeypatch.setenv("SPATIAL_TELEMETRY_PATH", str(db_path))
    monkeypatch.setenv("SPATIAL_TELEMETRY", "1")

    store = get_store()
    assert store is not None
    store.record(
        endpoint="/_spatial",
        db="places",
        design_id="_design/geo",
        index_name="points",
        mode="count",
        engine="duckdb",
        bbox=None,
        rows=0,
        stats={},
    )
    assert store.path.resolve() == db_path.resolve()

    reset_store()
    assert not db_path.exists()


def test_telemetry_disabled_returns_none(monkeypatch):
    monkeypatch.setenv("SPATIAL_TELEMETRY", "off")
    assert get_store() is None


def test_spatial_queries_are_recorded(client, tmp_path, monkeypatch):
    monkeypatch.setenv("SPATIAL_TELEMETRY_PATH", str(tmp_path / "q.duckdb"))
    monkeypatch.setenv("SPATIAL_TELEMETRY", "1")

    url = "/places/_design/geo/_spatial/points"
    etag = client.get(url, params={"bbox": "[12,48,17,51]"}).headers["etag"]
    client.get(url, params={"count": "true"})
    client.get(url, headers={"If-None-Match": etag})

    rows = client.get("/_telemetry/summary").json()
    by_mode = {r["mode"]: r for r in rows}
    assert set(by_mode) == {"rows", "count", "not_modified"}
    assert by_mode["rows"]["avgRows"] == 3.0
    assert by_mode["count"]["avgRows"] == 4.0

    slow = client.get("/_telemetry/slowest", params={"limit": 2}).json()
    assert len(slow) == 2

    assert client.delete("/_telemetry").json() == {"ok": True}
