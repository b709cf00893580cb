from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Protocol

from fastapi.responses import JSONResponse, StreamingResponse
from starlette.responses import Response

from engine.types import SpatialRow

ROW_SEPARATOR = ",\r\n"
END_BODY = "\r\n]}"


class StartResponseFun(Protocol):
    def __call__(self, etag: str, update_seq: int) -> tuple[dict[str, str], str]: ...


class SendRowFun(Protocol):
    def __call__(self, row: SpatialRow, row_front: str) -> tuple[str, str]: ...


@dataclass(frozen=True)
class SpatialFoldHelperFuns:
    """
    Output format of the row stream.

    - start_response(etag, update_seq) -> (headers, body prefix)
    - send_row(row, row_front) -> (chunk, front for the next row)
    """

    start_response: StartResponseFun
    send_row: SendRowFun
    end_body: str = END_BODY
    media_type: str = "application/json"


def json_spatial_start_resp(etag: str, update_seq: int) -> tuple[dict[str, str], str]:
    return {"ETag": etag}, f'{{"update_seq":{int(update_seq)},"rows":[\r\n'


def send_json_spatial_row(row: SpatialRow, row_front: str) -> tuple[str, str]:
    obj = {"id": row.doc_id, "bbox": list(row.bbox), "value": row.value}
    chunk = row_front + json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    # The separator belongs to the *next* row; the last row never gets one.
    return chunk, ROW_SEPARATOR


JSON_HELPER_FUNS = SpatialFoldHelperFuns(
    start_response=json_spatial_start_resp,
    send_row=send_json_spatial_row,
)


@dataclass
class SpatialFold:
    """
    Stream state: not started until the first row, then started with a pending row front.
    """

    etag: str
    update_seq: int
    helpers: SpatialFoldHelperFuns = JSON_HELPER_FUNS
    headers: dict[str, str] | None = None
    acc: str = ""
    rows: int = 0

    @property
    def started(self) -> bool:
        return self.headers is not None

    def step(self, row: SpatialRow) -> str:
        if self.headers is None:
            self.headers, front = self.helpers.start_response(self.etag, self.update_seq)
        else:
            front = self.acc
        chunk, self.acc = self.helpers.send_row(row, front)
        self.rows += 1
        return chunk

    def finish(self) -> str:
        return self.helpers.end_body


_NO_ROW = object()


def fold_spatial_rows(
    rows: Iterable[SpatialRow],
    fold: SpatialFold,
    *,
    on_complete: Callable[[int], None] | None = None,
) -> Iterator[str] | None:
    """
    Drive `fold` over `rows`.

    Returns None if there are no rows. Otherwise the first row has already been pulled and
    encoded (so `fold.headers` is set and early engine errors surface here, before any
    response exists) and the returned iterator yields the body chunk by chunk.
    """
    it = iter(rows)
    first = next(it, _NO_ROW)
    if first is _NO_ROW:
        _close(it)
        if on_complete is not None:
            on_complete(0)
        return None

    try:
        first_chunk = fold.step(first)  # type: ignore[arg-type]
    except Exception:
        _close(it)
        raise

    def body() -> Iterator[str]:
        try:
            yield first_chunk
            for row in it:
                yield fold.step(row)
            yield fold.finish()
        finally:
            # Also runs when the client goes away and the server closes this generator.
            _close(it)
        if on_complete is not None:
            on_complete(fold.rows)

    return body()


def output_spatial_rows(
    rows: Iterable[SpatialRow],
    *,
    etag: str,
    update_seq: int,
    helpers: SpatialFoldHelperFuns = JSON_HELPER_FUNS,
    on_complete: Callable[[int], None] | None = None,
) -> Response:
    """
    Zero rows -> plain `{}`; otherwise a streamed body carrying the ETag.

    An error after streaming started aborts the body; nothing tries to append an error
    document to a half-written response.
    """
    fold = SpatialFold(etag=etag, update_seq=update_seq, helpers=helpers)
    chunks = fold_spatial_rows(rows, fold, on_complete=on_complete)
    if chunks is None:
        return JSONResponse({}, status_code=200)
    return StreamingResponse(
        chunks, status_code=200, media_type=helpers.media_type, headers=fold.headers
    )


def _close(it: Iterator) -> None:
    close = getattr(it, "close", None)
    if close is not None:
        close()
