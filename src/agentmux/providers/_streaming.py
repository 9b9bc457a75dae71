"""Incremental decoders for streaming wire protocols.

Both decoders tolerate reads that end mid-line: the partial tail is held
until more data arrives. Malformed payloads are skipped with a warning.
"""

from __future__ import annotations

import codecs
from dataclasses import dataclass
import json
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SSEEvent:
    """One dispatched server-sent event."""

    event: str | None
    data: str

    def json(self) -> Any:
        return json.loads(self.data)


class SSEDecoder:
    """Feed raw bytes, get complete events back.

    Only the ``event`` and ``data`` fields matter here; ``id``/``retry`` and
    comment lines are ignored.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event: str | None = None
        self._data: list[str] = []

    def feed(self, chunk: bytes) -> list[SSEEvent]:
        self._buffer += self._decoder.decode(chunk)
        events: list[SSEEvent] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            event = self._process_line(line.rstrip("\r"))
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[SSEEvent]:
        """Dispatch whatever is pending once the byte stream ends."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        events: list[SSEEvent] = []
        if tail:
            event = self._process_line(tail.rstrip("\r"))
            if event is not None:
                events.append(event)
        event = self._dispatch()
        if event is not None:
            events.append(event)
        return events

    def _process_line(self, line: str) -> SSEEvent | None:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        return None

    def _dispatch(self) -> SSEEvent | None:
        if not self._data:
            self._event = None
            return None
        event = SSEEvent(event=self._event, data="\n".join(self._data))
        self._event = None
        self._data = []
        return event


async def iter_sse_events(chunks: AsyncIterable[bytes]) -> AsyncIterator[SSEEvent]:
    """Decode an async byte stream into server-sent events."""
    decoder = SSEDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
    for event in decoder.flush():
        yield event


async def iter_sse_json(chunks: AsyncIterable[bytes]) -> AsyncIterator[dict[str, Any]]:
    """Yield JSON objects from ``data:`` frames, skipping unparseable ones."""
    async for event in iter_sse_events(chunks):
        if event.data == "[DONE]":
            return
        try:
            payload = event.json()
        except json.JSONDecodeError as e:
            logger.warning("Skipping malformed SSE frame: %s (%s)", event.data[:100], e)
            continue
        if isinstance(payload, dict):
            yield payload


async def iter_ndjson(lines: AsyncIterable[str]) -> AsyncIterator[dict[str, Any]]:
    """Yield JSON objects from newline-delimited JSON, skipping bad lines."""
    async for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("Skipping malformed NDJSON line: %s (%s)", line[:100], e)
            continue
        if isinstance(payload, dict):
            yield payload
