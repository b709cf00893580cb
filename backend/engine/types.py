from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, Protocol, Sequence


class Staleness(str, Enum):
    """
    Whether a query may be served from a previously built index snapshot.
    """

    default = "default"
    ok = "ok"


@dataclass(frozen=True)
class IndexHandle:
    """
    A resolved spatial index, borrowed from the engine for one request.
    """

    name: str
    # Engine-specific payload (tree snapshot, query plan, ...). Opaque to the HTTP layer.
    treepos: Any = None


@dataclass(frozen=True)
class IndexGroup:
    """
    Versioned state of all spatial indexes of one design document.
    """

    db: str
    name: str  # design document id, e.g. "_design/geo"
    sig: bytes
    current_seq: int


@dataclass(frozen=True)
class SpatialRow:
    bbox: tuple[float, ...]
    doc_id: str
    value: Any


class SpatialEngine(Protocol):
    """
    Spatial index engine interface.

    - InMemorySpatialEngine: STRtree snapshots rebuilt when the database sequence moves
    - DuckDBSpatialEngine: envelope columns queried on read
    """

    def get_spatial_index(
        self, db: str, design_id: str, name: str, stale: Staleness
    ) -> tuple[IndexHandle, IndexGroup]: ...

    def fold_rows(
        self, group: IndexGroup, index: IndexHandle, bbox: Sequence[float] | None
    ) -> Iterator[SpatialRow]: ...

    def count_lookup(
        self, group: IndexGroup, index: IndexHandle, bbox: Sequence[float] | None
    ) -> int: ...

    def put_design(self, db: str, design_id: str, index_names: Sequence[str]) -> None: ...

    def put_row(
        self,
        db: str,
        design_id: str,
        index_name: str,
        doc_id: str,
        bbox: Sequence[float],
        value: Any,
    ) -> int: ...

    def delete_row(self, db: str, design_id: str, index_name: str, doc_id: str) -> int: ...
