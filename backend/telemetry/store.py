from __future__ import annotations

import json
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

import duckdb

from telemetry.sql import (
    CREATE_EVENTS_TABLE_SQL,
    INSERT_EVENTS_SQL,
    SLOWEST_SQL_TEMPLATE,
    SUMMARY_SQL_TEMPLATE,
)

LOG = logging.getLogger(__name__)

_EVENT_COLUMNS = (
    "ts_ms",
    "endpoint",
    "db",
    "design_id",
    "index_name",
    "mode",
    "engine",
    "bbox_json",
    "n_rows",
    "stats_json",
)


def _safe_float(v) -> float | None:
    try:
        if v is None:
            return None
        return float(v)
    except Exception:
        return None


@dataclass
class TelemetryStore:
    """
    Per-query events in a local DuckDB file.

    `record` only enqueues; a single writer thread batches inserts so request threads
    never wait on the database.
    """

    path: Path
    conn: duckdb.DuckDBPyConnection
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    _q: "queue.Queue[dict[str, Any]]" = field(default_factory=queue.Queue, repr=False)
    _stop: threading.Event = field(default_factory=threading.Event, repr=False)
    _worker: threading.Thread | None = field(default=None, repr=False)

    def ensure_schema(self) -> None:
        with self._lock:
            self.conn.execute(CREATE_EVENTS_TABLE_SQL)

    def start(self) -> None:
        if self._worker is not None:
            return
        self._stop.clear()
        self._worker = threading.Thread(
            target=self._run, name="telemetry-writer", daemon=True
        )
        self._worker.start()

    def stop(self, *, timeout_s: float = 2.0) -> None:
        self._stop.set()
        w = self._worker
        if w is not None and w.is_alive():
            w.join(timeout=timeout_s)
        self._worker = None

    def record(
        self,
        *,
        endpoint: str,
        db: str,
        design_id: str,
        index_name: str,
        mode: str,
        engine: str,
        bbox: Sequence[float] | None,
        rows: int | None,
        stats: dict[str, Any],
    ) -> None:
        self.start()
        try:
            self._q.put_nowait(
                {
                    "ts_ms": int(time.time() * 1000),
                    "endpoint": str(endpoint),
                    "db": str(db),
                    "design_id": str(design_id),
                    "index_name": str(index_name),
                    "mode": str(mode),
                    "engine": str(engine),
                    "bbox_json": json.dumps(list(bbox)) if bbox is not None else None,
                    "n_rows": int(rows) if rows is not None else None,
                    "stats_json": json.dumps(stats, ensure_ascii=False),
                }
            )
        except queue.Full:
            # drop telemetry on overload
            pass

    def flush(self, *, timeout_s: float = 2.0) -> None:
        """
        Best-effort: wait until queued events are processed (used by tests).
        """
        if self._worker is None:
            return
        deadline = time.time() + timeout_s
        while time.time() < deadline:
            if self._q.unfinished_tasks == 0:
                break
            time.sleep(0.01)
        # Give the writer thread time to flush on its time-based trigger.
        time.sleep(0.55)

    def query(self, sql: str, params: list[Any] | None = None) -> list[tuple]:
        """
        Run a read query inside the server process.

        DuckDB holds a file lock while the writer is active, so other processes can't read
        the file; the HTTP endpoints go through here instead.
        """
        with self._lock:
            if params:
                return self.conn.execute(sql, params).fetchall()
            return self.conn.execute(sql).fetchall()

    def summary(
        self,
        *,
        engine: str | None = None,
        mode: str | None = None,
        since_ms: int | None = None,
    ) -> list[dict[str, Any]]:
        where = []
        params: list[Any] = []
        if engine:
            where.append("engine = ?")
            params.append(engine)
        if mode:
            where.append("mode = ?")
            params.append(mode)
        if since_ms is not None:
            where.append("ts_ms >= ?")
            params.append(int(since_ms))

        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        rows = self.query(SUMMARY_SQL_TEMPLATE.format(where_sql=where_sql), params)

        out: list[dict[str, Any]] = []
        for engine_v, mode_v, n, avg_ms, p50, p95, p99, avg_rows in rows:
            out.append(
                {
                    "engine": engine_v,
                    "mode": mode_v,
                    "n": int(n),
                    "avgTotalMs": _safe_float(avg_ms),
                    "p50TotalMs": _safe_float(p50),
                    "p95TotalMs": _safe_float(p95),
                    "p99TotalMs": _safe_float(p99),
                    "avgRows": _safe_float(avg_rows),
                }
            )
        return out

    def slowest(
        self,
        *,
        engine: str | None = None,
        mode: str | None = None,
        limit: int = 25,
    ) -> list[dict[str, Any]]:
        where = ["json_extract(stats_json, '$.timingsMs.total') IS NOT NULL"]
        params: list[Any] = []
        if engine:
            where.append("engine = ?")
            params.append(engine)
        if mode:
            where.append("mode = ?")
            params.append(mode)
        params.append(int(max(1, min(200, limit))))

        rows = self.query(
            SLOWEST_SQL_TEMPLATE.format(where_sql=" AND ".join(where)), params
        )
        return [
            {
                "tsMs": int(ts_ms),
                "engine": engine_v,
                "mode": mode_v,
                "db": db,
                "designId": design_id,
                "index": index_name,
                "totalMs": _safe_float(total_ms),
                "rows": int(n_rows) if n_rows is not None else None,
            }
            for ts_ms, engine_v, mode_v, db, design_id, index_name, total_ms, n_rows in rows
        ]

    def reset(self) -> None:
        # Stop the writer first so it can't write to a closed connection.
        self.stop(timeout_s=2.0)
        with self._lock:
            try:
                self.conn.close()
            except duckdb.Error:
                pass
            self.path.unlink(missing_ok=True)

    def _run(self) -> None:
        self.ensure_schema()
        batch: list[dict[str, Any]] = []
        last_flush = time.time()

        def flush_batch() -> None:
            nonlocal batch
            if not batch:
                return
            with self._lock:
                try:
                    self.conn.executemany(
                        INSERT_EVENTS_SQL,
                        [tuple(e[c] for c in _EVENT_COLUMNS) for e in batch],
                    )
                    # Make results visible to readers immediately.
                    self.conn.execute("CHECKPOINT;")
                except duckdb.Error:
                    LOG.warning("dropping %d telemetry events", len(batch), exc_info=True)
            batch = []

        while not self._stop.is_set():
            try:
                e = self._q.get(timeout=0.1)
            except queue.Empty:
                e = None

            if e is not None:
                batch.append(e)
                self._q.task_done()

            # Flush on size or time.
            now = time.time()
            if len(batch) >= 250 or (batch and (now - last_flush) >= 0.5):
                flush_batch()
                last_flush = now

        # Drain remaining
        while True:
            try:
                e = self._q.get_nowait()
            except queue.Empty:
                break
            batch.append(e)
            self._q.task_done()
        flush_batch()


#
# NOTE: singleton accessors live in `telemetry/singleton.py` to keep this file smaller.
