"""
Incremental decoder for the upstream `text/event-stream` body.

Upstream chunk boundaries do not line up with record boundaries, so bytes
are buffered until a newline completes a line. Only `data: ` lines carry
content; `data: [DONE]` terminates the stream. Anything that does not parse
into a usable record is skipped.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Literal, Optional

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class SseRecord:
    kind: Literal["text", "done", "error"]
    text: str = ""
    error: Optional[str] = None


DONE = SseRecord(kind="done")


def extract_delta_text(payload: Any) -> Optional[str]:
    """
    Pull `choices[0].delta.content` out of an OpenAI-style stream chunk.
    """
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if isinstance(content, str) and content:
        return content
    return None


def extract_stream_error(payload: Any) -> Optional[str]:
    """
    Return the error message of a mid-stream `{"error": {...}}` record.
    """
    if not isinstance(payload, dict):
        return None
    err = payload.get("error")
    if isinstance(err, dict):
        msg = err.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
        return json.dumps(err, ensure_ascii=False)
    if isinstance(err, str) and err.strip():
        return err.strip()
    return None


def parse_line(line: str) -> Optional[SseRecord]:
    line = line.rstrip("\r")
    if not line.startswith(DATA_PREFIX):
        # Blank separators, `event:` lines and `: keep-alive` comments.
        return None
    data = line[len(DATA_PREFIX):].strip()
    if not data:
        return None
    if data == DONE_SENTINEL:
        return DONE
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        return None
    error = extract_stream_error(payload)
    if error is not None:
        return SseRecord(kind="error", error=error)
    text = extract_delta_text(payload)
    if text is None:
        return None
    return SseRecord(kind="text", text=text)


class SseRecordDecoder:
    """
    Feed raw bytes in arrival order; get back complete, well-formed records.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self.done = False

    def feed(self, chunk: bytes) -> list[SseRecord]:
        if self.done or not chunk:
            return []
        self._buffer.extend(chunk)
        records: list[SseRecord] = []
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                break
            raw = bytes(self._buffer[:idx])
            del self._buffer[: idx + 1]
            record = parse_line(raw.decode("utf-8", errors="ignore"))
            if record is None:
                continue
            records.append(record)
            if record.kind in ("done", "error"):
                self.done = True
                self._buffer.clear()
                break
        return records

    def finish(self) -> list[SseRecord]:
        """
        Flush a trailing record that arrived without its final newline.
        A truncated record simply fails to parse and is dropped.
        """
        if self.done or not self._buffer:
            self._buffer.clear()
            return []
        raw = bytes(self._buffer)
        self._buffer.clear()
        record = parse_line(raw.decode("utf-8", errors="ignore"))
        if record is None:
            return []
        if record.kind in ("done", "error"):
            self.done = True
        return [record]


__all__ = [
    "DONE",
    "DONE_SENTINEL",
    "SseRecord",
    "SseRecordDecoder",
    "extract_delta_text",
    "extract_stream_error",
    "parse_line",
]
