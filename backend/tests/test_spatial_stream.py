from __future__ import annotations

import asyncio
import json

import pytest

from api.stream import (
    JSON_HELPER_FUNS,
    SpatialFold,
    SpatialFoldHelperFuns,
    fold_spatial_rows,
    output_spatial_rows,
)
from engine.errors import EngineFailure
from engine.types import SpatialRow

ROWS = [
    SpatialRow(bbox=(0.0, 0.0, 1.0, 1.0), doc_id="a", value=1),
    SpatialRow(bbox=(2.0, 2.0, 3.0, 3.0), doc_id="b", value={"k": [1, 2]}),
    SpatialRow(bbox=(4, 4, 4, 4), doc_id="c", value=None),
]


def _fold(**kw) -> SpatialFold:
    return SpatialFold(etag='"e"', update_seq=42, **kw)


def test_no_rows_returns_none_and_never_starts():
    fold = _fold()
    assert fold_spatial_rows(iter([]), fold) is None
    assert not fold.started


def test_single_row_exact_body():
    fold = _fold()
    body = "".join(fold_spatial_rows(ROWS[:1], fold))
    assert body == (
        '{"update_seq":42,"rows":[\r\n'
        '{"id":"a","bbox":[0.0,0.0,1.0,1.0],"value":1}'
        "\r\n]}"
    )
    assert fold.headers == {"ETag": '"e"'}


def test_separator_goes_before_next_row_only():
    fold = _fold()
    chunks = list(fold_spatial_rows(ROWS, fold))
    assert chunks[0].startswith('{"update_seq":42,"rows":[\r\n{"id":"a"')
    assert chunks[1].startswith(',\r\n{"id":"b"')
    assert chunks[2].startswith(',\r\n{"id":"c"')
    assert chunks[-1] == "\r\n]}"
    body = "".join(chunks)
    assert ",\r\n\r\n]}" not in body
    data = json.loads(body)
    assert [r["id"] for r in data["rows"]] == ["a", "b", "c"]
    assert data["rows"][1] == {"id": "b", "bbox": [2.0, 2.0, 3.0, 3.0], "value": {"k": [1, 2]}}
    assert fold.rows == 3


def test_rows_are_pulled_lazily():
    pulled = []

    def rows():
        for r in ROWS:
            pulled.append(r.doc_id)
            yield r

    chunks = fold_spatial_rows(rows(), _fold())
    # Only the first row is needed to start the response.
    assert pulled == ["a"]
    next(chunks)
    next(chunks)
    assert pulled == ["a", "b"]


def test_failure_before_first_row_raises_before_response():
    def rows():
        raise EngineFailure("tree unreadable")
        yield  # pragma: no cover

    fold = _fold()
    with pytest.raises(EngineFailure):
        fold_spatial_rows(rows(), fold)
    assert not fold.started


def test_failure_mid_stream_leaves_partial_body():
    def rows():
        yield ROWS[0]
        raise EngineFailure("disk gone")

    chunks = fold_spatial_rows(rows(), _fold())
    out = [next(chunks)]
    with pytest.raises(EngineFailure):
        out.extend(chunks)
    body = "".join(out)
    assert body.startswith('{"update_seq":42,"rows":[')
    assert not body.endswith("]}")


def test_closing_body_closes_engine_iterator():
    closed = []

    def rows():
        try:
            yield from ROWS
        finally:
            closed.append(True)

    completed = []
    chunks = fold_spatial_rows(rows(), _fold(), on_complete=completed.append)
    next(chunks)
    chunks.close()
    assert closed == [True]
    assert completed == []


def test_on_complete_reports_row_count():
    completed = []
    chunks = fold_spatial_rows(ROWS, _fold(), on_complete=completed.append)
    list(chunks)
    assert completed == [3]

    assert fold_spatial_rows([], _fold(), on_complete=completed.append) is None
    assert completed == [3, 0]


def test_custom_helper_funs_drive_same_state_machine():
    def start(etag, update_seq):
        return {"X-Seq": str(update_seq)}, f"seq={update_seq}\n"

    def send(row, front):
        return front + row.doc_id, "\n"

    helpers = SpatialFoldHelperFuns(
        start_response=start, send_row=send, end_body="\n", media_type="text/plain"
    )
    fold = _fold(helpers=helpers)
    assert "".join(fold_spatial_rows(ROWS, fold)) == "seq=42\na\nb\nc\n"
    assert fold.headers == {"X-Seq": "42"}


def test_output_empty_is_plain_object():
    resp = output_spatial_rows([], etag='"e"', update_seq=3)
    assert resp.status_code == 200
    assert resp.body == b"{}"
    assert "etag" not in resp.headers


def test_output_streams_with_etag():
    resp = output_spatial_rows(ROWS, etag='"e"', update_seq=3, helpers=JSON_HELPER_FUNS)
    assert resp.status_code == 200
    assert resp.headers["etag"] == '"e"'
    assert resp.media_type == "application/json"

    async def collect():
        parts = []
        async for chunk in resp.body_iterator:
            parts.append(chunk)
        return "".join(parts)

    body = asyncio.run(collect())
    assert json.loads(body)["update_seq"] == 3
    assert len(json.loads(body)["rows"]) == 3
