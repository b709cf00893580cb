from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Iterable

import yaml

from catalog.types import CatalogDatabase
from engine.types import SpatialEngine

LOG = logging.getLogger(__name__)


def _repo_root() -> Path:
    # .../backend/catalog/registry.py -> repo root is 2 levels up
    return Path(__file__).resolve().parents[2]


def catalog_root() -> Path:
    raw = (os.getenv("SPATIAL_CATALOG_DIR") or "").strip()
    return Path(raw) if raw else _repo_root() / "catalog"


def _iter_catalog_yaml_files() -> Iterable[Path]:
    root = catalog_root()
    if not root.exists():
        return []
    # Convention: catalog/<db>.yaml
    return root.glob("*.yaml")


def _load_yaml(path: Path) -> dict:
    raw = path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid catalog yaml root: {path}")
    return data


@lru_cache(maxsize=1)
def get_catalog() -> dict[str, CatalogDatabase]:
    out: dict[str, CatalogDatabase] = {}
    for p in sorted(_iter_catalog_yaml_files(), key=lambda x: str(x)):
        cfg = CatalogDatabase.model_validate(_load_yaml(p))
        if cfg.db in out:
            raise ValueError(f"Database {cfg.db!r} is defined twice (second time in {p})")
        out[cfg.db] = cfg
    return out


def seed_engine(
    engine: SpatialEngine, databases: Iterable[CatalogDatabase] | None = None
) -> int:
    """
    Load catalog databases into `engine`. Returns the number of rows written.
    """
    if databases is None:
        databases = get_catalog().values()
    n = 0
    for database in databases:
        if not database.enabled:
            continue
        for design in database.designs:
            engine.put_design(database.db, design.id, [i.name for i in design.indexes])
            for index in design.indexes:
                for row in index.rows:
                    engine.put_row(
                        database.db, design.id, index.name, row.id, row.bbox, row.value
                    )
                    n += 1
        LOG.info("seeded database %s (%d designs)", database.db, len(database.designs))
    return n


def clear_catalog_cache() -> None:
    """
    Forget parsed catalog files; the next `get_catalog()` re-reads them from disk.
    """
    get_catalog.cache_clear()
