from __future__ import annotations

import hashlib
import json
import os
from typing import Sequence

from engine.errors import EngineFailure
from geo.bbox import BBox


def duckdb_threads() -> int:
    raw = (os.getenv("SPATIAL_DUCKDB_THREADS") or "").strip()
    if raw:
        try:
            return max(1, int(raw))
        except Exception:
            pass
    return max(1, int(os.cpu_count() or 1))


def design_signature(design_id: str, index_names: Sequence[str]) -> bytes:
    """
    Identity of a design document's spatial index definitions.

    Changes whenever the set of indexes changes, so ETags from an older definition never match.
    """
    payload = json.dumps([design_id, sorted(index_names)], separators=(",", ":"))
    return hashlib.md5(payload.encode("utf-8")).digest()


def row_bbox(values: Sequence[float]) -> BBox:
    # Write side: bad input is the caller's problem, keep the ValueError.
    return BBox.from_sequence(values).normalized()


def query_bbox(values: Sequence[float]) -> BBox:
    try:
        return BBox.from_sequence(values).normalized()
    except ValueError as exc:
        raise EngineFailure(f"unsupported bbox {list(values)!r}: {exc}") from exc
