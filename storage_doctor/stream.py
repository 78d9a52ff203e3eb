"""Incremental decoding of vendor server-sent-event streams.

Both vendors frame their streaming responses as newline-delimited
``data: <json>`` records. A decoder turns those records into the shared
StreamEvent union so the agent loop never sees vendor-specific payloads:

    decoder = AnthropicStreamDecoder()
    for event in decoder.decode(iter_sse_lines(response.iter_bytes())):
        ...

Tool calls are assembled in per-index buffers. A call is only emitted once
both its id and name are known; buffers that never learn both are dropped
when they are finalized.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

from .models import (
    Done,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolCall,
    ToolCallArgumentChunk,
    ToolCallCompleted,
    ToolCallStarted,
)
from .report import StreamDecodeError

logger = logging.getLogger(__name__)

MAX_RECORD_BYTES = 4 * 1024 * 1024  # hard cap for one SSE line
DONE_SENTINEL = "[DONE]"
DATA_PREFIX = "data:"


def iter_sse_lines(
    chunks: Iterable[bytes], max_record_bytes: int = MAX_RECORD_BYTES
) -> Iterator[str]:
    """Split a byte-chunk stream into text lines.

    Records may span any number of chunks. A line longer than
    max_record_bytes raises StreamDecodeError instead of being truncated.
    """
    buf = bytearray()
    scan_from = 0
    for chunk in chunks:
        if not chunk:
            continue
        buf.extend(chunk)
        while True:
            nl = buf.find(b"\n", scan_from)
            if nl < 0:
                scan_from = len(buf)
                break
            if nl > max_record_bytes:
                raise _oversized(nl, max_record_bytes)
            line = bytes(buf[:nl])
            del buf[: nl + 1]
            scan_from = 0
            yield _decode_line(line)
        if len(buf) > max_record_bytes:
            raise _oversized(len(buf), max_record_bytes)
    if buf:
        yield _decode_line(bytes(buf))


def _decode_line(raw: bytes) -> str:
    if raw.endswith(b"\r"):
        raw = raw[:-1]
    return raw.decode("utf-8", errors="replace")


def _oversized(size: int, cap: int) -> StreamDecodeError:
    return StreamDecodeError(f"stream record of {size} bytes exceeds {cap} byte limit")


@dataclass
class ToolCallBuffer:
    """A tool call under construction."""

    id: str = ""
    name: str = ""
    arguments_text: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    parsed_len: int = 0  # len(arguments_text) at the last successful parse

    def declare(self, call_id: str, name: str) -> None:
        # Sticky: an empty field never erases a known id or name.
        if isinstance(call_id, str) and call_id:
            self.id = call_id
        if isinstance(name, str) and name:
            self.name = name

    def append(self, fragment: str) -> None:
        self.arguments_text += fragment
        # A JSON object must end with "}", skip hopeless parse attempts.
        if not self.arguments_text.rstrip().endswith("}"):
            return
        try:
            parsed = json.loads(self.arguments_text)
        except json.JSONDecodeError:
            return
        if isinstance(parsed, dict):
            self.input = parsed
            self.parsed_len = len(self.arguments_text)

    @property
    def arguments_valid(self) -> bool:
        return not self.arguments_text or self.parsed_len == len(self.arguments_text)

    def complete(self) -> ToolCall | None:
        if not self.id or not self.name:
            return None
        return ToolCall(
            id=self.id,
            name=self.name,
            input=dict(self.input) if self.arguments_valid else {},
            raw_arguments=self.arguments_text,
            arguments_valid=self.arguments_valid,
        )


class StreamDecoder:
    """Shared record framing and tool-call assembly; vendors override _handle()."""

    vendor = "generic"

    def __init__(self, log: logging.Logger | None = None):
        self.log = log or logger
        self._buffers: dict[int, ToolCallBuffer] = {}
        self.finished = False
        self.text_chunks = 0
        self.completed_calls = 0

    def decode(self, lines: Iterable[str]) -> Iterator[StreamEvent]:
        for line in lines:
            yield from self.feed(line)
            if self.finished:
                return
        yield from self.finish()

    def feed(self, line: str) -> list[StreamEvent]:
        """Decode one line. Non-data lines and malformed JSON are skipped."""
        if self.finished or not line.startswith(DATA_PREFIX):
            return []
        data = line[len(DATA_PREFIX) :].strip()
        if data == DONE_SENTINEL:
            return self._end_stream("sentinel")
        try:
            record = json.loads(data)
        except json.JSONDecodeError as e:
            self.log.debug("%s: skipping malformed record (%s): %.200s", self.vendor, e, data)
            return []
        if not isinstance(record, dict):
            return []
        return self._handle(record)

    def finish(self) -> list[StreamEvent]:
        """Called at end of input; finalizes pending calls if no sentinel was seen."""
        if self.finished:
            return []
        return self._end_stream("eof")

    def _handle(self, record: dict) -> list[StreamEvent]:
        raise NotImplementedError

    # -- helpers for subclasses ---------------------------------------------

    def _text(self, text: Any) -> list[StreamEvent]:
        if not isinstance(text, str) or not text:
            return []
        self.text_chunks += 1
        return [TextDelta(text)]

    def _declare(self, index: int, call_id: str, name: str) -> list[StreamEvent]:
        buf = self._buffers.get(index)
        if buf is None:
            buf = self._buffers[index] = ToolCallBuffer()
            buf.declare(call_id, name)
            self.log.debug("%s: tool call %d started: %s (id=%s)", self.vendor, index, buf.name, buf.id)
            return [ToolCallStarted(index, buf.id, buf.name)]
        buf.declare(call_id, name)
        return []

    def _append(self, index: int, fragment: str) -> list[StreamEvent]:
        if not isinstance(fragment, str) or not fragment:
            return []
        buf = self._buffers.setdefault(index, ToolCallBuffer())
        buf.append(fragment)
        return [ToolCallArgumentChunk(index, fragment)]

    def _finalize(self, index: int, reason: str) -> list[StreamEvent]:
        buf = self._buffers.pop(index, None)
        if buf is None:
            return []
        call = buf.complete()
        if call is None:
            self.log.warning(
                "%s: dropping incomplete tool call at %s (id=%r, name=%r)",
                self.vendor,
                reason,
                buf.id,
                buf.name,
            )
            return []
        if not call.arguments_valid:
            self.log.warning(
                "%s: tool call %s arguments are not valid JSON: %.200s",
                self.vendor,
                call.name,
                call.raw_arguments,
            )
        self.completed_calls += 1
        return [ToolCallCompleted(call)]

    def _finalize_all(self, reason: str) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for index in sorted(self._buffers):
            events.extend(self._finalize(index, reason))
        return events

    def _end_stream(self, reason: str) -> list[StreamEvent]:
        events = self._finalize_all(reason)
        self.finished = True
        if self.text_chunks == 0 and self.completed_calls == 0:
            self.log.warning("%s: stream ended without text or tool calls", self.vendor)
        else:
            self.log.debug(
                "%s: stream complete (%s): chunks=%d tool_calls=%d",
                self.vendor,
                reason,
                self.text_chunks,
                self.completed_calls,
            )
        events.append(Done())
        return events

    def _error(self, kind: str, message: str) -> list[StreamEvent]:
        self.log.error("%s: stream error event: %s %s", self.vendor, kind, message)
        self._buffers.clear()
        self.finished = True
        return [StreamError(kind, message)]


def _index(record: dict) -> int:
    index = record.get("index", 0)
    return index if isinstance(index, int) else 0


class AnthropicStreamDecoder(StreamDecoder):
    """Messages API: content blocks with start / delta / stop events."""

    vendor = "anthropic"

    def _handle(self, record: dict) -> list[StreamEvent]:
        etype = record.get("type")

        if etype == "error":
            err = record.get("error") or {}
            if not isinstance(err, dict):
                err = {"message": str(err)}
            return self._error(err.get("type") or "error", err.get("message") or "")

        if etype == "content_block_start":
            block = record.get("content_block")
            if not isinstance(block, dict) or block.get("type") != "tool_use":
                return []
            index = _index(record)
            events = self._finalize(index, "content_block_start")
            events += self._declare(
                index, block.get("id") or block.get("tool_use_id") or "", block.get("name") or ""
            )
            initial = block.get("input")
            if isinstance(initial, dict) and initial:
                self._buffers[index].input = dict(initial)
            return events

        if etype == "content_block_delta":
            delta = record.get("delta")
            if not isinstance(delta, dict):
                return []
            dtype = delta.get("type")
            index = _index(record)
            if dtype == "text_delta":
                return self._text(delta.get("text"))
            if dtype == "input_json_delta":
                if index not in self._buffers:
                    self.log.warning("anthropic: input_json_delta for undeclared block %d", index)
                    return []
                return self._append(index, delta.get("partial_json") or "")
            if dtype == "tool_use":
                return self._legacy_tool_delta(index, delta)
            return []

        if etype == "content_block_stop":
            return self._finalize(_index(record), "content_block_stop")

        if etype == "message_stop":
            return self._end_stream("message_stop")

        return []

    def _legacy_tool_delta(self, index: int, delta: dict) -> list[StreamEvent]:
        events = self._declare(index, delta.get("tool_use_id") or "", delta.get("name") or "")
        partial = delta.get("input")
        if isinstance(partial, dict):
            buf = self._buffers[index]
            for key, value in partial.items():
                if isinstance(value, str):
                    events += self._append(index, value)
                else:
                    buf.input[key] = value
        return events


class OpenAIStreamDecoder(StreamDecoder):
    """Chat Completions API: flat deltas with indexed tool_calls fragments."""

    vendor = "openai"

    def _handle(self, record: dict) -> list[StreamEvent]:
        err = record.get("error")
        if err:
            if not isinstance(err, dict):
                err = {"message": str(err)}
            kind = err.get("type") or err.get("code") or "error"
            return self._error(str(kind), err.get("message") or "")

        choices = record.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return []
        delta = choices[0].get("delta")
        if not isinstance(delta, dict):
            return []

        events = self._text(delta.get("content"))
        tool_calls = delta.get("tool_calls")
        if not isinstance(tool_calls, list):
            return events
        for tc in tool_calls:
            if not isinstance(tc, dict):
                continue
            index = _index(tc)
            fn = tc.get("function")
            if not isinstance(fn, dict):
                fn = {}
            events += self._declare(index, tc.get("id") or "", fn.get("name") or "")
            args = fn.get("arguments")
            if isinstance(args, str):
                events += self._append(index, args)
        return events
