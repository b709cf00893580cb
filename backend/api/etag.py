from __future__ import annotations

import hashlib
import json
import re
from typing import Any, Callable

from starlette.responses import Response

from engine.types import IndexGroup


def make_etag(term: Any) -> str:
    """
    Quoted hex md5 of a JSON-encodable term. Bytes are hex-encoded first.
    """
    payload = json.dumps(term, separators=(",", ":"), sort_keys=True, default=_encode_bytes)
    return '"' + hashlib.md5(payload.encode("utf-8")).hexdigest() + '"'


def spatial_group_etag(group: IndexGroup, extra: Any = None) -> str:
    return make_etag([group.sig, group.current_seq, extra])


def etag_matches(if_none_match: str | None, etag: str) -> bool:
    if not if_none_match:
        return False
    return etag in re.split(r"[,\s]+", if_none_match.strip())


def etag_respond(
    if_none_match: str | None, etag: str, respond: Callable[[], Response]
) -> Response:
    """
    304 when the client already holds `etag`; otherwise whatever `respond()` produces.

    `respond` is not called on a match, so no engine work happens for cached clients.
    """
    if etag_matches(if_none_match, etag):
        return Response(status_code=304, headers={"ETag": etag})
    return respond()


def _encode_bytes(v: Any) -> str:
    if isinstance(v, (bytes, bytearray)):
        return bytes(v).hex()
    raise TypeError(f"Object of type {type(v).__name__} is not JSON serializable")
