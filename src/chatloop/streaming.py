"""Streaming primitives for completion responses.

The :class:`StreamParser` turns the raw body of a streamed chat
completion (``data: {...}`` records terminated by ``data: [DONE]``) into
:mod:`chatloop.events` parser events.  The :class:`ToolCallBuffer`
reassembles tool calls whose name and arguments arrive in fragments
across many records.
"""

from __future__ import annotations

import codecs
import logging
from collections.abc import AsyncIterable, AsyncIterator
from contextlib import aclosing, nullcontext

from chatloop.decoding import decode_json
from chatloop.events import (
    ContentDelta,
    Finish,
    ParserEvent,
    StreamEnd,
    ToolCallDelta,
)
from chatloop.message import ToolCall

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"


class StreamParser:
    """Incremental parser for a server-sent-event completion stream.

    Chunks may split records, lines and even multi-byte characters at
    arbitrary points; the parser keeps the unfinished tail between
    :meth:`feed` calls.  Records that are not valid JSON objects are
    skipped with a warning.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._usage: dict | None = None
        self.done = False
        self.skipped = 0

    def feed(self, chunk: bytes | str) -> list[ParserEvent]:
        if self.done:
            return []
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._pending += chunk
        *lines, self._pending = self._pending.split("\n")
        events: list[ParserEvent] = []
        for line in lines:
            events.extend(self._parse_line(line))
            if self.done:
                break
        return events

    def close(self) -> list[ParserEvent]:
        """Flush the last unterminated line and end the stream.

        A transport that closes without ``[DONE]`` still produces a
        :class:`StreamEnd`, marked ``saw_done=False``.
        """
        if self.done:
            return []
        tail = self._decoder.decode(b"", final=True)
        line, self._pending = self._pending + tail, ""
        events = self._parse_line(line) if line else []
        if not self.done:
            logger.debug("Stream closed without [DONE]")
            self.done = True
            events.append(StreamEnd(saw_done=False, usage=self._usage))
        return events

    def _parse_line(self, line: str) -> list[ParserEvent]:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return []
        data = line[len(DATA_PREFIX):]
        if data.startswith(" "):
            data = data[1:]
        if data.strip() == DONE_MARKER:
            self.done = True
            return [StreamEnd(saw_done=True, usage=self._usage)]

        decoded = decode_json(data)
        if not decoded.ok:
            self.skipped += 1
            logger.warning(f"Skipping malformed stream record: {decoded.error}")
            return []
        envelope = decoded.value
        if not isinstance(envelope, dict):
            self.skipped += 1
            logger.warning(f"Skipping non-object stream record: {data[:120]}")
            return []
        return self._parse_envelope(envelope)

    def _parse_envelope(self, envelope: dict) -> list[ParserEvent]:
        if isinstance(envelope.get("usage"), dict):
            self._usage = envelope["usage"]
        if "error" in envelope:
            logger.warning(f"Server reported an error in stream: {envelope['error']}")

        choices = envelope.get("choices") or []
        if not isinstance(choices, list):
            return self._skip("choices is not a list", envelope)
        if not choices:
            return []
        choice = choices[0]
        if not isinstance(choice, dict):
            return self._skip("choice is not an object", envelope)
        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            return self._skip("delta is not an object", envelope)
        tool_calls = delta.get("tool_calls") or []
        if not isinstance(tool_calls, list):
            return self._skip("tool_calls is not a list", envelope)

        events: list[ParserEvent] = []
        for tc in tool_calls:
            event = self._tool_call_delta(tc)
            if event is None:
                self._skip("malformed tool call fragment", tc)
                continue
            events.append(event)
        content = delta.get("content")
        if content and isinstance(content, str):
            events.append(ContentDelta(text=content))
        reason = choice.get("finish_reason")
        if reason and isinstance(reason, str):
            events.append(Finish(reason=reason))
        return events

    @staticmethod
    def _tool_call_delta(tc) -> ToolCallDelta | None:
        if not isinstance(tc, dict):
            return None
        function = tc.get("function") or {}
        index = tc.get("index") or 0
        if not isinstance(function, dict) or not isinstance(index, int):
            return None
        fields = (tc.get("id"), function.get("name"), function.get("arguments"))
        if any(f is not None and not isinstance(f, str) for f in fields):
            return None
        call_id, name, arguments = fields
        return ToolCallDelta(
            index=index,
            call_id=call_id or None,
            name=name or None,
            arguments=arguments or None,
        )

    def _skip(self, reason: str, record) -> list[ParserEvent]:
        self.skipped += 1
        logger.warning(f"Skipping malformed stream record ({reason}): {str(record)[:120]}")
        return []


async def parse_stream(
    chunks: AsyncIterable[bytes | str],
) -> AsyncIterator[ParserEvent]:
    """Yield parser events for a raw response body, ending with ``StreamEnd``.

    *chunks* is closed once ``[DONE]`` arrives so the response behind it is
    released without waiting for garbage collection.
    """
    parser = StreamParser()
    closing = aclosing(chunks) if hasattr(chunks, "aclose") else nullcontext(chunks)
    async with closing as body:
        async for chunk in body:
            for event in parser.feed(chunk):
                yield event
            if parser.done:
                return
    for event in parser.close():
        yield event


def parse_completion(body: dict) -> list[ParserEvent]:
    """Translate a non-streamed completion into the parser event vocabulary.

    ``choices[0].message`` carries complete tool calls rather than deltas;
    each becomes a single :class:`ToolCallDelta` at its list position.
    """
    events: list[ParserEvent] = []
    choices = body.get("choices") or []
    choice = choices[0] if choices else {}
    message = choice.get("message") or {}

    for i, tc in enumerate(message.get("tool_calls") or []):
        function = tc.get("function") or {}
        events.append(ToolCallDelta(
            index=i,
            call_id=tc.get("id") or None,
            name=function.get("name") or None,
            arguments=function.get("arguments") or None,
        ))
    if message.get("content"):
        events.append(ContentDelta(text=message["content"]))
    if choice.get("finish_reason"):
        events.append(Finish(reason=choice["finish_reason"]))
    usage = body.get("usage") if isinstance(body.get("usage"), dict) else None
    events.append(StreamEnd(saw_done=True, usage=usage))
    return events


class ToolCallBuffer:
    """Assembles complete tool calls from streaming fragments."""

    def __init__(self) -> None:
        self._pending: dict[int, ToolCall] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def feed(self, delta: ToolCallDelta) -> None:
        if delta.index not in self._pending:
            self._pending[delta.index] = ToolCall()
        tc = self._pending[delta.index]
        if delta.call_id:
            tc.id = delta.call_id
        if delta.name:
            tc.name += delta.name
        if delta.arguments:
            tc.arguments += delta.arguments

    def flush(self) -> list[ToolCall]:
        """Return buffered calls in index order and empty the buffer.

        Entries that never received a name are dropped.  Safe to call on
        an empty buffer.
        """
        calls = [
            self._pending[i] for i in sorted(self._pending)
            if self._pending[i].name
        ]
        self._pending.clear()
        return calls
