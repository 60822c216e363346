"""
SSE Streaming Events

Framing and decoding of the recruiter workflow event stream.

Wire format: one `data: {json}` line per event, newline terminated. Events
may arrive split across reads at any byte boundary.
"""

import codecs
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Optional

import structlog

logger = structlog.get_logger()

DATA_PREFIX = "data: "


class EventType(str, Enum):
    """SSE event types."""
    STATUS = "status"      # Progress narration for a step
    PARTIAL = "partial"    # Speculative data, may be replaced by a result
    RESULT = "result"      # Final data for one step
    COMPLETE = "complete"  # Whole workflow finished, full aggregate attached
    ERROR = "error"        # Error occurred
    DONE = "done"          # Stream closed by the backend


@dataclass(frozen=True)
class StreamEvent:
    """A decoded workflow event."""
    type: EventType
    step: Optional[str] = None
    message: Optional[str] = None
    data: Any = None
    code: Optional[str] = None
    fatal: bool = True


# ============================================================
# FRAMING
# ============================================================

class LineFramer:
    """
    Turns byte chunks into complete text lines.

    UTF-8 is decoded incrementally so a code point split across chunks is
    reassembled. A line is only emitted once its newline has arrived.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        """Add a chunk and return the lines it completed."""
        self._buffer += self._decoder.decode(chunk)
        if "\n" not in self._buffer:
            return []

        *lines, self._buffer = self._buffer.split("\n")
        return [line[:-1] if line.endswith("\r") else line for line in lines]

    def close(self) -> None:
        """End of stream. The unterminated tail is an incomplete event and is dropped."""
        self._buffer += self._decoder.decode(b"", final=True)
        if self._buffer:
            logger.debug("sse_trailing_fragment_dropped", length=len(self._buffer))
        self._buffer = ""


async def frame_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield complete lines from an async byte stream (e.g. httpx aiter_bytes())."""
    framer = LineFramer()
    async for chunk in chunks:
        for line in framer.feed(chunk):
            yield line
    framer.close()


# ============================================================
# DECODING
# ============================================================

# Fields an event must carry to be usable
_REQUIRED_FIELDS = {
    EventType.STATUS: ("step",),
    EventType.PARTIAL: ("step", "data"),
    EventType.RESULT: ("step", "data"),
    EventType.ERROR: ("message",),
    EventType.COMPLETE: (),
    EventType.DONE: (),
}


def decode_line(line: str) -> Optional[StreamEvent]:
    """
    Decode one SSE line into a StreamEvent.

    Returns None for anything that is not a usable event: comments,
    keep-alives, bad JSON, unknown types or missing fields. Never raises.
    """
    if not line.startswith(DATA_PREFIX):
        return None

    raw = line[len(DATA_PREFIX):]
    try:
        payload = json.loads(raw)
    except (ValueError, RecursionError) as e:
        logger.warning("sse_event_malformed", error=str(e), data=raw[:200])
        return None

    if not isinstance(payload, dict):
        logger.warning("sse_event_malformed", error="payload is not an object", data=raw[:200])
        return None

    try:
        event_type = EventType(payload.get("type"))
    except ValueError:
        logger.warning("sse_event_unknown_type", event_type=payload.get("type"))
        return None

    missing = [name for name in _REQUIRED_FIELDS[event_type] if payload.get(name) is None]
    if missing:
        logger.warning("sse_event_incomplete", event_type=event_type.value, missing=missing)
        return None

    step = payload.get("step")
    message = payload.get("message")
    code = payload.get("code")
    data = payload.get("data")
    if event_type == EventType.COMPLETE and data is None:
        data = {}

    return StreamEvent(
        type=event_type,
        step=str(step) if step is not None else None,
        message=str(message) if message is not None else None,
        data=data,
        code=str(code) if code is not None else None,
        fatal=payload.get("fatal") is not False,
    )


async def decode_events(lines: AsyncIterable[str]) -> AsyncIterator[StreamEvent]:
    """Yield decoded events from an async line stream."""
    async for line in lines:
        event = decode_line(line)
        if event is not None:
            logger.debug("sse_event_received", event_type=event.type.value, step=event.step)
            yield event
