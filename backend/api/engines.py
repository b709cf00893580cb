from __future__ import annotations

import logging
import os
from functools import lru_cache

from catalog.registry import seed_engine
from engine.duckdb import DuckDBSpatialEngine
from engine.in_memory import InMemorySpatialEngine
from engine.types import SpatialEngine

LOG = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _default_engine_name() -> str:
    return _normalize_engine(os.getenv("SPATIAL_ENGINE"))


def _normalize_engine(name: str | None) -> str:
    n = (name or "in_memory").strip().lower()
    if n in {"duckdb", "in_memory"}:
        return n
    return "in_memory"


@lru_cache(maxsize=2)
def _engine(name: str) -> SpatialEngine:
    engine: SpatialEngine
    if name == "duckdb":
        engine = DuckDBSpatialEngine()
    else:
        engine = InMemorySpatialEngine()
    rows = seed_engine(engine)
    LOG.info("engine %s ready (%d catalog rows)", name, rows)
    return engine


def get_engine() -> SpatialEngine:
    """FastAPI dependency: the process-wide engine selected by `SPATIAL_ENGINE`."""
    return _engine(_default_engine_name())


def engine_label(engine: SpatialEngine) -> str:
    return str(getattr(engine, "name", type(engine).__name__))
