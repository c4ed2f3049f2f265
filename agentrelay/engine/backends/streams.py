"""Line framing shared by the subprocess and event-stream readers."""
from __future__ import annotations

import codecs
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

SSE_DATA_PREFIX = "data:"


class LineBuffer:
    """Splits a byte stream into complete text lines.

    Partial lines are held until their terminator arrives. A UTF-8
    sequence split across two reads is decoded correctly.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> list[str]:
        """Add bytes; return the lines completed by them."""
        self._pending += self._decoder.decode(chunk)
        if "\n" not in self._pending:
            return []
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> str:
        """Return whatever partial line is left and clear the buffer."""
        rest = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return rest


def parse_record(line: str) -> dict[str, Any] | None:
    """Parse one JSONL record. Returns None for blank or invalid lines."""
    stripped = line.strip()
    if not stripped:
        return None
    try:
        record = json.loads(stripped)
    except (json.JSONDecodeError, ValueError):
        return None
    return record if isinstance(record, dict) else None


def parse_sse_line(line: str) -> dict[str, Any] | None:
    """Parse a `data: {...}` line from a text/event-stream body.

    Comments, `event:`/`id:` fields and blank frame separators return
    None, as do data lines that are not a JSON object.
    """
    if not line.startswith(SSE_DATA_PREFIX):
        return None
    payload = line[len(SSE_DATA_PREFIX):]
    if payload.startswith(" "):
        payload = payload[1:]
    record = parse_record(payload)
    if record is None and payload.strip():
        logger.debug("Skipping malformed event data: %s", payload[:100])
    return record
