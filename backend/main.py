from __future__ import annotations

import logging
import os

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.responses import Response

from api.engines import get_engine
from api.spatial import handle_spatial_req, send_method_not_allowed
from engine.errors import EngineFailure, SpatialError
from engine.types import SpatialEngine
from telemetry.singleton import get_store, reset_store

APP_NAME = "spatial-view-api"
APP_VERSION = "0.1.0"

SPATIAL_PATH = "/{db}/_design/{ddoc}/_spatial/{name}"

logging.basicConfig(
    level=(os.getenv("SPATIAL_LOG_LEVEL") or "INFO").strip().upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
LOG = logging.getLogger("main")


def _cors_origins() -> list[str]:
    raw = os.getenv("SPATIAL_CORS_ORIGINS") or "http://localhost:3000"
    return [o.strip() for o in raw.split(",") if o.strip()]


app = FastAPI(title=APP_NAME, version=APP_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "HEAD"],
    allow_headers=["*"],
    expose_headers=["ETag"],
)


def install_exception_handlers(app: FastAPI) -> None:
    """Render every `SpatialError` as `{"error", "reason"}` with its HTTP status."""

    @app.exception_handler(SpatialError)
    def _handle_spatial_error(request: Request, exc: SpatialError) -> JSONResponse:
        if isinstance(exc, EngineFailure):
            LOG.error("%s %s: %s", request.method, request.url.path, exc.reason, exc_info=exc)
        else:
            LOG.warning("%s %s: %s: %s", request.method, request.url.path, exc.error, exc.reason)
        return JSONResponse(exc.to_json(), status_code=exc.status_code)


install_exception_handlers(app)


@app.get("/")
def welcome():
    return {"service": APP_NAME, "version": APP_VERSION}


@app.api_route(SPATIAL_PATH, methods=["GET", "HEAD"])
def spatial_query(
    db: str,
    ddoc: str,
    name: str,
    request: Request,
    engine: SpatialEngine = Depends(get_engine),
) -> Response:
    return handle_spatial_req(request, engine, db=db, ddoc=ddoc, name=name)


@app.api_route(SPATIAL_PATH, methods=["POST", "PUT", "DELETE", "PATCH", "OPTIONS"])
def spatial_method_not_allowed() -> Response:
    return send_method_not_allowed()


@app.get("/_telemetry/summary")
def telemetry_summary(
    engine: str | None = None,
    mode: str | None = None,
    since_ms: int | None = Query(default=None, alias="sinceMs"),
):
    store = get_store()
    if store is None:
        return []
    store.flush(timeout_s=1.0)
    return store.summary(engine=engine, mode=mode, since_ms=since_ms)


@app.get("/_telemetry/slowest")
def telemetry_slowest(
    engine: str | None = None,
    mode: str | None = None,
    limit: int = Query(default=25, ge=1, le=200),
):
    store = get_store()
    if store is None:
        return []
    store.flush(timeout_s=1.0)
    return store.slowest(engine=engine, mode=mode, limit=limit)


@app.delete("/_telemetry")
def telemetry_reset():
    reset_store()
    return {"ok": True}
