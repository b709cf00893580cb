from __future__ import annotations

CREATE_EVENTS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS events (
  ts_ms BIGINT,
  endpoint TEXT,
  db TEXT,
  design_id TEXT,
  index_name TEXT,
  mode TEXT,
  engine TEXT,
  bbox_json TEXT,
  n_rows BIGINT,
  stats_json TEXT
);
"""

SUMMARY_SQL_TEMPLATE = """
SELECT
  engine,
  mode,
  COUNT(*) AS n,
  AVG(try_cast(json_extract(stats_json, '$.timingsMs.total') AS DOUBLE)) AS avg_total_ms,
  quantile_cont(try_cast(json_extract(stats_json, '$.timingsMs.total') AS DOUBLE), 0.50) AS p50_total_ms,
  quantile_cont(try_cast(json_extract(stats_json, '$.timingsMs.total') AS DOUBLE), 0.95) AS p95_total_ms,
  quantile_cont(try_cast(json_extract(stats_json, '$.timingsMs.total') AS DOUBLE), 0.99) AS p99_total_ms,
  AVG(n_rows) AS avg_rows
FROM events
{where_sql}
GROUP BY engine, mode
ORDER BY engine, mode
"""

SLOWEST_SQL_TEMPLATE = """
SELECT
  ts_ms,
  engine,
  mode,
  db,
  design_id,
  index_name,
  try_cast(json_extract(stats_json, '$.timingsMs.total') AS DOUBLE) AS total_ms,
  n_rows
FROM events
WHERE {where_sql}
ORDER BY total_ms DESC
LIMIT ?
"""

INSERT_EVENTS_SQL = """
INSERT INTO events
  (ts_ms, endpoint, db, design_id, index_name, mode, engine, bbox_json, n_rows, stats_json)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""
