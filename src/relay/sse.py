"""Server-sent-event framing shared by the streaming adapters.

Bytes arrive in arbitrary pieces from the network. ``SSELineDecoder`` turns
them into complete lines, ``StreamNormalizer`` interprets ``data:`` lines and
hands decoded JSON objects to a backend-specific ``StreamParser`` which maps
them onto canonical events. Exactly one ``DoneEvent`` closes every sequence.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any, Protocol

from .errors import ParseError
from .types import DoneEvent, StreamEvent

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


class StreamParser(Protocol):
    def parse(self, payload: dict[str, Any]) -> list[StreamEvent]:
        ...


class SSELineDecoder:
    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[str]:
        if isinstance(chunk, bytes):
            text = self._decoder.decode(chunk)
        else:
            text = chunk
        if not text:
            return []
        self._buffer += text
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in lines]

    def finish(self) -> list[str]:
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        remainder = remainder.rstrip("\r")
        return [remainder] if remainder else []


def decode_data_line(line: str) -> str | None:
    if not line.startswith("data:"):
        return None
    data = line[5:]
    if data.startswith(" "):
        data = data[1:]
    return data


class StreamNormalizer:
    def __init__(self, parser: StreamParser, *, source: str = "upstream") -> None:
        self._parser = parser
        self._lines = SSELineDecoder()
        self._source = source
        self.done = False

    def _handle_line(self, line: str) -> list[StreamEvent]:
        data = decode_data_line(line)
        if data is None:
            return []
        if data.strip() == DONE_SENTINEL:
            self.done = True
            return [DoneEvent()]
        try:
            payload = _load_payload(data)
        except ParseError as exc:
            logger.warning("sse.skip source=%s detail=%s", self._source, exc)
            return []
        events: list[StreamEvent] = []
        for event in self._parser.parse(payload):
            events.append(event)
            if isinstance(event, DoneEvent):
                self.done = True
                break
        return events

    def _handle_lines(self, lines: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for line in lines:
            if self.done:
                break
            events.extend(self._handle_line(line))
        return events

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        if self.done:
            return []
        return self._handle_lines(self._lines.feed(chunk))

    def finish(self) -> list[StreamEvent]:
        if self.done:
            return []
        events = self._handle_lines(self._lines.finish())
        if not self.done:
            self.done = True
            events.append(DoneEvent())
        return events

    async def normalize(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[StreamEvent]:
        async for chunk in chunks:
            for event in self.feed(chunk):
                yield event
            if self.done:
                return
        for event in self.finish():
            yield event


def _load_payload(data: str) -> dict[str, Any]:
    if not data.strip():
        raise ParseError("empty data line")
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        raise ParseError(f"malformed JSON chunk: {exc.msg}", payload=data) from exc
    if not isinstance(payload, dict):
        raise ParseError("chunk is not a JSON object", payload=payload)
    return payload
