"""Incremental SSE and NDJSON decoding."""

from __future__ import annotations

import pytest

from agentmux.providers._streaming import (
    SSEDecoder,
    SSEEvent,
    iter_ndjson,
    iter_sse_json,
)

pytestmark = pytest.mark.unit


async def _aiter(items):
    for item in items:
        yield item


def test_sse_decoder_holds_partial_lines_until_complete() -> None:
    decoder = SSEDecoder()

    assert decoder.feed(b"event: ping\nda") == []
    assert decoder.feed(b'ta: {"a": 1}\n') == []
    assert decoder.feed(b"\n") == [SSEEvent(event="ping", data='{"a": 1}')]


def test_sse_decoder_joins_multiline_data_and_ignores_comments() -> None:
    decoder = SSEDecoder()

    events = decoder.feed(b": keep-alive\r\ndata: one\r\ndata: two\r\n\r\n")

    assert events == [SSEEvent(event=None, data="one\ntwo")]


def test_sse_decoder_handles_utf8_split_across_reads() -> None:
    raw = "data: café\n\n".encode()
    split = raw.index(b"\xc3") + 1
    decoder = SSEDecoder()

    events = decoder.feed(raw[:split]) + decoder.feed(raw[split:])

    assert events[0].data == "café"


def test_sse_flush_dispatches_an_unterminated_event() -> None:
    decoder = SSEDecoder()
    decoder.feed(b"data: tail")
    assert decoder.flush() == [SSEEvent(event=None, data="tail")]


@pytest.mark.asyncio
async def test_iter_sse_json_skips_malformed_frames_and_stops_at_done() -> None:
    chunks = [
        b'data: {"n": 1}\n\n',
        b"data: {not json\n\n",
        b'data: {"n": 3}\n\n',
        b"data: [DONE]\n\n",
        b'data: {"n": 4}\n\n',
    ]

    payloads = [p async for p in iter_sse_json(_aiter(chunks))]

    assert payloads == [{"n": 1}, {"n": 3}]


@pytest.mark.asyncio
async def test_iter_ndjson_skips_blank_and_malformed_lines(
    caplog: pytest.LogCaptureFixture,
) -> None:
    lines = ['{"a": 1}', "", '{"a": ', '{"a": 3}', "[1, 2]"]

    payloads = [p async for p in iter_ndjson(_aiter(lines))]

    assert payloads == [{"a": 1}, {"a": 3}]
    assert "Skipping malformed NDJSON line" in caplog.text
