from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Any, Iterator, Sequence

import duckdb

from engine.common import design_signature, duckdb_threads, query_bbox, row_bbox
from engine.errors import EngineFailure, IndexNotFound
from engine.types import IndexGroup, IndexHandle, SpatialEngine, SpatialRow, Staleness

SCHEMA_SQL = (
    """
    CREATE TABLE IF NOT EXISTS spatial_dbs (
      db TEXT PRIMARY KEY,
      update_seq BIGINT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS spatial_designs (
      db TEXT,
      design_id TEXT,
      index_names_json TEXT,
      sig TEXT,
      PRIMARY KEY(db, design_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS spatial_rows (
      db TEXT,
      design_id TEXT,
      index_name TEXT,
      doc_id TEXT,
      ord BIGINT,
      min_x DOUBLE,
      min_y DOUBLE,
      max_x DOUBLE,
      max_y DOUBLE,
      value_json TEXT,
      PRIMARY KEY(db, design_id, index_name, doc_id)
    );
    """,
)

_ROWS_WHERE = "db = ? AND design_id = ? AND index_name = ?"
_BBOX_WHERE = " AND min_x <= ? AND max_x >= ? AND min_y <= ? AND max_y >= ?"


class DuckDBSpatialEngine(SpatialEngine):
    """
    DuckDB-backed engine.

    Rows live in one table with envelope columns; bbox queries are plain range predicates.
    The table is always current, so `stale=ok` has nothing older to serve and is ignored.
    """

    name = "duckdb"

    def __init__(self, *, path: str | None = None, batch_size: int = 500):
        self.path = path or duckdb_path()
        self.batch_size = int(batch_size)
        self._lock = threading.RLock()
        self._conn = _connect(self.path, threads=duckdb_threads())
        for sql in SCHEMA_SQL:
            self._conn.execute(sql)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def get_spatial_index(
        self, db: str, design_id: str, name: str, stale: Staleness
    ) -> tuple[IndexHandle, IndexGroup]:
        cur = self._conn.cursor()
        try:
            seq_row = cur.execute(
                "SELECT update_seq FROM spatial_dbs WHERE db = ?", [db]
            ).fetchone()
            if seq_row is None:
                raise IndexNotFound(f"database {db!r} not found")
            design_row = cur.execute(
                "SELECT index_names_json, sig FROM spatial_designs WHERE db = ? AND design_id = ?",
                [db, design_id],
            ).fetchone()
        except duckdb.Error as exc:
            raise EngineFailure(f"index lookup failed: {exc}") from exc
        finally:
            cur.close()

        if design_row is None:
            raise IndexNotFound(f"design document {design_id} not found")
        index_names_json, sig = design_row
        if name not in json.loads(index_names_json):
            raise IndexNotFound(f"spatial index {name!r} not found in {design_id}")
        group = IndexGroup(
            db=db, name=design_id, sig=bytes.fromhex(sig), current_seq=int(seq_row[0])
        )
        return IndexHandle(name=name, treepos=(db, design_id, name)), group

    def fold_rows(
        self, group: IndexGroup, index: IndexHandle, bbox: Sequence[float] | None
    ) -> Iterator[SpatialRow]:
        where, params = _where(index, bbox)
        sql = (
            "SELECT doc_id, min_x, min_y, max_x, max_y, value_json FROM spatial_rows "
            f"WHERE {where} ORDER BY ord"
        )
        cur = self._conn.cursor()
        try:
            try:
                cur.execute(sql, params)
            except duckdb.Error as exc:
                raise EngineFailure(f"spatial fold failed: {exc}") from exc
            while True:
                try:
                    batch = cur.fetchmany(self.batch_size)
                except duckdb.Error as exc:
                    raise EngineFailure(f"spatial fold failed: {exc}") from exc
                if not batch:
                    break
                for doc_id, min_x, min_y, max_x, max_y, value_json in batch:
                    yield SpatialRow(
                        bbox=(min_x, min_y, max_x, max_y),
                        doc_id=doc_id,
                        value=json.loads(value_json),
                    )
        finally:
            cur.close()

    def count_lookup(
        self, group: IndexGroup, index: IndexHandle, bbox: Sequence[float] | None
    ) -> int:
        where, params = _where(index, bbox)
        cur = self._conn.cursor()
        try:
            row = cur.execute(
                f"SELECT COUNT(*) FROM spatial_rows WHERE {where}", params
            ).fetchone()
        except duckdb.Error as exc:
            raise EngineFailure(f"count lookup failed: {exc}") from exc
        finally:
            cur.close()
        return int(row[0])

    def put_design(self, db: str, design_id: str, index_names: Sequence[str]) -> None:
        names = list(dict.fromkeys(index_names))
        sig = design_signature(design_id, names).hex()
        with self._lock:
            self._conn.execute("BEGIN TRANSACTION")
            try:
                self._conn.execute(
                    "INSERT OR REPLACE INTO spatial_designs VALUES (?, ?, ?, ?)",
                    [db, design_id, json.dumps(names), sig],
                )
                # Rows of indexes that are no longer defined go away with the definition.
                sql = "DELETE FROM spatial_rows WHERE db = ? AND design_id = ?"
                if names:
                    sql += f" AND index_name NOT IN ({','.join('?' for _ in names)})"
                self._conn.execute(sql, [db, design_id, *names])
                self._bump_seq(db)
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise

    def put_row(
        self,
        db: str,
        design_id: str,
        index_name: str,
        doc_id: str,
        bbox: Sequence[float],
        value: Any,
    ) -> int:
        b = row_bbox(bbox)
        value_json = json.dumps(value, ensure_ascii=False)
        with self._lock:
            self._require_index(db, design_id, index_name)
            self._conn.execute("BEGIN TRANSACTION")
            try:
                seq = self._bump_seq(db)
                self._conn.execute(
                    """
                    INSERT INTO spatial_rows VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (db, design_id, index_name, doc_id) DO UPDATE SET
                      min_x = excluded.min_x,
                      min_y = excluded.min_y,
                      max_x = excluded.max_x,
                      max_y = excluded.max_y,
                      value_json = excluded.value_json
                    """,
                    [db, design_id, index_name, str(doc_id), seq, *b.as_tuple(), value_json],
                )
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
            return seq

    def delete_row(self, db: str, design_id: str, index_name: str, doc_id: str) -> int:
        with self._lock:
            self._require_index(db, design_id, index_name)
            deleted = self._conn.execute(
                f"DELETE FROM spatial_rows WHERE {_ROWS_WHERE} AND doc_id = ? RETURNING doc_id",
                [db, design_id, index_name, str(doc_id)],
            ).fetchall()
            if deleted:
                return self._bump_seq(db)
            row = self._conn.execute(
                "SELECT update_seq FROM spatial_dbs WHERE db = ?", [db]
            ).fetchone()
            return int(row[0])

    def _bump_seq(self, db: str) -> int:
        row = self._conn.execute(
            """
            INSERT INTO spatial_dbs VALUES (?, 1)
            ON CONFLICT (db) DO UPDATE SET update_seq = update_seq + 1
            RETURNING update_seq
            """,
            [db],
        ).fetchone()
        return int(row[0])

    def _require_index(self, db: str, design_id: str, index_name: str) -> None:
        row = self._conn.execute(
            "SELECT index_names_json FROM spatial_designs WHERE db = ? AND design_id = ?",
            [db, design_id],
        ).fetchone()
        if row is None:
            raise IndexNotFound(f"design document {design_id} not found")
        if index_name not in json.loads(row[0]):
            raise IndexNotFound(f"spatial index {index_name!r} not found in {design_id}")


def duckdb_path() -> str:
    env_path = (os.getenv("SPATIAL_DUCKDB_PATH") or "").strip()
    if env_path:
        return env_path
    return str(Path("data") / "duckdb" / "spatial.duckdb")


def _connect(path: str, *, threads: int) -> duckdb.DuckDBPyConnection:
    if path != ":memory:":
        p = Path(path)
        if p.parent and str(p.parent) not in {".", ""}:
            p.parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(database=path, read_only=False, config={"threads": int(threads)})


def _where(index: IndexHandle, bbox: Sequence[float] | None) -> tuple[str, list[Any]]:
    db, design_id, name = index.treepos
    params: list[Any] = [db, design_id, name]
    if bbox is None:
        return _ROWS_WHERE, params
    q = query_bbox(bbox)
    return _ROWS_WHERE + _BBOX_WHERE, params + [q.max_x, q.min_x, q.max_y, q.min_y]
