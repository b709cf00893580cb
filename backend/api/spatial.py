from __future__ import annotations

import logging
import time
from typing import Iterable

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from api.engines import engine_label
from api.etag import etag_respond, spatial_group_etag
from api.params import SpatialQueryArgs, parse_spatial_params
from api.stream import output_spatial_rows
from engine.types import IndexGroup, IndexHandle, SpatialEngine
from telemetry.singleton import get_store

LOG = logging.getLogger(__name__)

SPATIAL_ALLOWED_METHODS = "GET,HEAD"


def handle_spatial_req(
    request: Request, engine: SpatialEngine, *, db: str, ddoc: str, name: str
) -> Response:
    design_id = f"_design/{ddoc}"
    LOG.debug("Spatial query (%s): %s", name, design_id)
    t0 = time.perf_counter()

    index, group, args = load_index(
        engine, request.query_params.multi_items(), db, design_id, name
    )
    t_resolve_ms = (time.perf_counter() - t0) * 1000.0

    def on_complete(mode: str, rows: int | None) -> None:
        _record_query(
            engine=engine,
            group=group,
            index=index,
            args=args,
            mode=mode,
            rows=rows,
            timings={
                "resolve": round(t_resolve_ms, 2),
                "total": round((time.perf_counter() - t0) * 1000.0, 2),
            },
        )

    return output_spatial_index(
        request.headers.get("if-none-match"),
        engine,
        index,
        group,
        args,
        on_complete=on_complete,
    )


def load_index(
    engine: SpatialEngine,
    query: Iterable[tuple[str, str]],
    db: str,
    design_id: str,
    name: str,
) -> tuple[IndexHandle, IndexGroup, SpatialQueryArgs]:
    """
    Parse the query and resolve the index it targets.

    `IndexNotFound` from the engine propagates unchanged.
    """
    args = parse_spatial_params(query)
    index, group = engine.get_spatial_index(db, design_id, name, args.stale)
    return index, group, args


def output_spatial_index(
    if_none_match: str | None,
    engine: SpatialEngine,
    index: IndexHandle,
    group: IndexGroup,
    args: SpatialQueryArgs,
    *,
    on_complete=None,
) -> Response:
    if args.count:
        # A single scalar: no ETag, no conditional response.
        count = engine.count_lookup(group, index, args.bbox)
        if on_complete is not None:
            on_complete("count", count)
        return JSONResponse(count)

    etag = spatial_group_etag(group)

    def respond() -> Response:
        rows = engine.fold_rows(group, index, args.bbox)
        return output_spatial_rows(
            rows,
            etag=etag,
            update_seq=group.current_seq,
            on_complete=(lambda n: on_complete("rows", n)) if on_complete else None,
        )

    resp = etag_respond(if_none_match, etag, respond)
    if resp.status_code == 304 and on_complete is not None:
        on_complete("not_modified", None)
    return resp


def send_method_not_allowed(allowed: str = SPATIAL_ALLOWED_METHODS) -> JSONResponse:
    return JSONResponse(
        {"error": "method_not_allowed", "reason": f"Only {allowed} allowed"},
        status_code=405,
        headers={"Allow": allowed},
    )


def _record_query(
    *,
    engine: SpatialEngine,
    group: IndexGroup,
    index: IndexHandle,
    args: SpatialQueryArgs,
    mode: str,
    rows: int | None,
    timings: dict[str, float],
) -> None:
    # Persist telemetry for later analysis (best-effort).
    try:
        store = get_store()
        if store is None:
            return
        store.record(
            endpoint="/_spatial",
            db=group.db,
            design_id=group.name,
            index_name=index.name,
            mode=mode,
            engine=engine_label(engine),
            bbox=args.bbox,
            rows=rows,
            stats={"updateSeq": group.current_seq, "timingsMs": timings},
        )
    except Exception:
        LOG.debug("telemetry record failed", exc_info=True)
