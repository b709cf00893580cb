"""
Spatial index engines.

An engine resolves (db, design doc, index name) to an index handle plus its group
(signature + update sequence), and answers bbox folds and count lookups against it.
Two implementations: in-memory STRtree snapshots and DuckDB tables.
"""
