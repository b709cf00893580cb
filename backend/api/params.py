from __future__ import annotations

import json
import math
from dataclasses import dataclass, replace
from typing import Any, Iterable

from engine.errors import SpatialError
from engine.types import Staleness


class QueryParseError(SpatialError):
    status_code = 400
    error = "query_parse_error"


@dataclass(frozen=True)
class SpatialQueryArgs:
    bbox: tuple[float, ...] | None = None
    stale: Staleness = Staleness.default
    count: bool = False


def parse_spatial_params(query: Iterable[tuple[str, str]]) -> SpatialQueryArgs:
    """
    Turn raw query-string pairs (in request order) into `SpatialQueryArgs`.

    Every pair is parsed first, so the first malformed value in request order wins;
    the typed entries are then folded left to right. Unknown keys are ignored.
    """
    parsed: list[tuple[str, Any]] = []
    for key, value in query:
        parsed.extend(parse_spatial_param(key, value))

    args = SpatialQueryArgs()
    for key, value in parsed:
        args = validate_spatial_query(key, value, args)
    return args


def parse_spatial_param(key: str, value: str) -> list[tuple[str, Any]]:
    if key == "bbox":
        return [("bbox", parse_bbox(value))]
    if key == "stale":
        if value == "ok":
            return [("stale", Staleness.ok)]
        raise QueryParseError("stale only available as stale=ok")
    if key == "count":
        if value == "true":
            return [("count", True)]
        raise QueryParseError("count only available as count=true")
    return [("extra", (key, value))]


def validate_spatial_query(key: str, value: Any, args: SpatialQueryArgs) -> SpatialQueryArgs:
    if key == "bbox":
        return replace(args, bbox=value)
    if key == "stale" and value == Staleness.ok:
        return replace(args, stale=Staleness.ok)
    if key == "count" and value is True:
        return replace(args, count=True)
    return args


def parse_bbox(raw: str) -> tuple[float, ...]:
    """
    Accepts `[x0,y0,x1,y1]` as well as the bare `x0,y0,x1,y1` form.
    """
    text = raw.strip()
    if not text.startswith("["):
        text = f"[{text}]"
    try:
        decoded = json.loads(text, parse_constant=_reject_constant)
    except ValueError as exc:
        raise QueryParseError(f"invalid bbox JSON {raw!r}: {exc}") from exc

    if not isinstance(decoded, list) or not all(_is_number(v) for v in decoded):
        raise QueryParseError("bbox must be a JSON array of numbers")
    if not decoded or len(decoded) % 2:
        raise QueryParseError("bbox must contain one or more coordinate pairs")
    try:
        finite = all(math.isfinite(v) for v in decoded)
    except OverflowError:
        # Integer literals too large for a double.
        finite = False
    if not finite:
        raise QueryParseError("bbox coordinates must be finite numbers")
    return tuple(decoded)


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not a valid coordinate")
