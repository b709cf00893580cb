from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Iterator, Sequence

from shapely.geometry import LineString, Point
from shapely.geometry import box as shapely_box
from shapely.strtree import STRtree

from engine.common import design_signature, query_bbox, row_bbox
from engine.errors import IndexNotFound
from engine.types import IndexGroup, IndexHandle, SpatialEngine, SpatialRow, Staleness
from geo.bbox import BBox


@dataclass(frozen=True)
class _IndexSnapshot:
    rows: list[SpatialRow]
    tree: STRtree


@dataclass
class _Design:
    id: str
    index_names: tuple[str, ...]
    sig: bytes
    # index name -> doc id -> row (dict order is insertion order = fold order)
    rows: dict[str, dict[str, SpatialRow]]
    snapshot_seq: int = -1
    snapshots: dict[str, _IndexSnapshot] = field(default_factory=dict)


@dataclass
class _Database:
    name: str
    update_seq: int = 0
    designs: dict[str, _Design] = field(default_factory=dict)


class InMemorySpatialEngine(SpatialEngine):
    """
    Keeps rows in memory and answers bbox queries from STRtree snapshots.

    A snapshot is built per design document at a given database sequence and is immutable,
    so a fold always sees the generation it was resolved at. `stale=ok` keeps serving the
    last snapshot even if the database moved on.
    """

    name = "in_memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._dbs: dict[str, _Database] = {}

    def get_spatial_index(
        self, db: str, design_id: str, name: str, stale: Staleness
    ) -> tuple[IndexHandle, IndexGroup]:
        with self._lock:
            design = self._design(db, design_id)
            if name not in design.index_names:
                raise IndexNotFound(f"spatial index {name!r} not found in {design_id}")
            database = self._dbs[db]
            fresh = design.snapshot_seq == database.update_seq
            if not fresh and (stale != Staleness.ok or design.snapshot_seq < 0):
                _rebuild(design, database.update_seq)
            group = IndexGroup(
                db=db,
                name=design.id,
                sig=design.sig,
                current_seq=design.snapshot_seq,
            )
            return IndexHandle(name=name, treepos=design.snapshots[name]), group

    def fold_rows(
        self, group: IndexGroup, index: IndexHandle, bbox: Sequence[float] | None
    ) -> Iterator[SpatialRow]:
        snap: _IndexSnapshot = index.treepos
        if bbox is None:
            yield from snap.rows
            return
        for i in _query(snap, query_bbox(bbox)):
            yield snap.rows[i]

    def count_lookup(
        self, group: IndexGroup, index: IndexHandle, bbox: Sequence[float] | None
    ) -> int:
        snap: _IndexSnapshot = index.treepos
        if bbox is None:
            return len(snap.rows)
        return len(_query(snap, query_bbox(bbox)))

    def put_design(self, db: str, design_id: str, index_names: Sequence[str]) -> None:
        names = tuple(dict.fromkeys(index_names))
        with self._lock:
            database = self._dbs.setdefault(db, _Database(name=db))
            old = database.designs.get(design_id)
            rows = {n: dict(old.rows.get(n, {})) if old else {} for n in names}
            database.designs[design_id] = _Design(
                id=design_id,
                index_names=names,
                sig=design_signature(design_id, names),
                rows=rows,
            )
            database.update_seq += 1

    def put_row(
        self,
        db: str,
        design_id: str,
        index_name: str,
        doc_id: str,
        bbox: Sequence[float],
        value: Any,
    ) -> int:
        row = SpatialRow(bbox=row_bbox(bbox).as_tuple(), doc_id=str(doc_id), value=value)
        with self._lock:
            rows = self._index_rows(db, design_id, index_name)
            rows[row.doc_id] = row
            database = self._dbs[db]
            database.update_seq += 1
            return database.update_seq

    def delete_row(self, db: str, design_id: str, index_name: str, doc_id: str) -> int:
        with self._lock:
            rows = self._index_rows(db, design_id, index_name)
            database = self._dbs[db]
            if rows.pop(str(doc_id), None) is not None:
                database.update_seq += 1
            return database.update_seq

    def _design(self, db: str, design_id: str) -> _Design:
        database = self._dbs.get(db)
        if database is None:
            raise IndexNotFound(f"database {db!r} not found")
        design = database.designs.get(design_id)
        if design is None:
            raise IndexNotFound(f"design document {design_id} not found")
        return design

    def _index_rows(self, db: str, design_id: str, index_name: str) -> dict[str, SpatialRow]:
        design = self._design(db, design_id)
        rows = design.rows.get(index_name)
        if rows is None:
            raise IndexNotFound(f"spatial index {index_name!r} not found in {design_id}")
        return rows


def _rebuild(design: _Design, seq: int) -> None:
    snapshots: dict[str, _IndexSnapshot] = {}
    for name in design.index_names:
        rows = list(design.rows[name].values())
        geoms = [_envelope_geom(BBox(*r.bbox)) for r in rows]
        snapshots[name] = _IndexSnapshot(rows=rows, tree=STRtree(geoms))
    design.snapshots = snapshots
    design.snapshot_seq = seq


def _envelope_geom(b: BBox):
    # Degenerate boxes (points, axis-aligned segments) still need a non-empty geometry
    # or STRtree silently drops them.
    if b.min_x == b.max_x and b.min_y == b.max_y:
        return Point(b.min_x, b.min_y)
    if b.min_x == b.max_x or b.min_y == b.max_y:
        return LineString([(b.min_x, b.min_y), (b.max_x, b.max_y)])
    return shapely_box(b.min_x, b.min_y, b.max_x, b.max_y)


def _query(snap: _IndexSnapshot, q: BBox) -> list[int]:
    if not snap.rows:
        return []
    return sorted(_to_int_list(snap.tree.query(_envelope_geom(q))))


def _to_int_list(idxs: Any) -> list[int]:
    if idxs is None:
        return []
    return [int(i) for i in idxs]
