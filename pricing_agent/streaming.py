"""Framing for the price event stream.

Each event is written as one SSE data frame:

    data: {"type": "price_data", "data": {...}}\\n\\n

Keepalives are SSE comment lines (``: keepalive``). The decoder does not split
on the terminator with a regex: string values may legitimately contain the
terminator, ``data:`` or braces. It scans the payload character by character,
tracking string and escape state, and only ends a frame at the brace that
returns to depth zero immediately followed by the terminator.
"""

import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Dict, Iterable, Iterator, List, Optional, Union

from .errors import ProtocolDecodeError
from .schemas import StreamEvent


logger = logging.getLogger("uvicorn.error")

FRAME_PREFIX = "data:"
FRAME_TERMINATOR = "\n\n"
KEEPALIVE_COMMENT = "keepalive"

ACCUMULATING = "ACCUMULATING"


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def encode_event(event: StreamEvent) -> str:
    return sse_format(event.model_dump())


def encode_comment(text: str = KEEPALIVE_COMMENT) -> str:
    return f": {text}\n\n"


def decode_frame(payload: str) -> Dict[str, Any]:
    try:
        # strict=False: raw control characters inside strings are accepted.
        data = json.loads(payload, strict=False)
    except ValueError as exc:
        raise ProtocolDecodeError(f"Invalid JSON frame: {exc}", {"payload": payload[:200]}) from exc
    if not isinstance(data, dict):
        raise ProtocolDecodeError("Frame payload is not a JSON object", {"payload": payload[:200]})
    return data


class FrameDecoder:
    """Incremental decoder; feed arbitrary chunks, collect complete frames in order."""

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.state: Optional[str] = None
        self._start = 0
        self._scan = 0
        self._depth = 0
        self._in_string = False
        self._escaped = False
        self._closed_at: Optional[int] = None
        self.frames_decoded = 0
        self.frames_skipped = 0

    def feed(self, chunk: Union[bytes, bytearray, str]) -> List[Dict[str, Any]]:
        if isinstance(chunk, (bytes, bytearray)):
            text = self._utf8.decode(bytes(chunk))
        else:
            text = chunk
        if text:
            self._buffer += text
        return self._drain()

    def finish(self) -> List[Dict[str, Any]]:
        frames = self.feed(self._utf8.decode(b"", final=True))
        leftover = self._buffer.strip()
        if leftover:
            self.frames_skipped += 1
            logger.warning("Stream ended inside an incomplete frame (%s chars dropped)", len(leftover))
        self._buffer = ""
        self._reset()
        return frames

    def _reset(self) -> None:
        self.state = None
        self._start = 0
        self._scan = 0
        self._depth = 0
        self._in_string = False
        self._escaped = False
        self._closed_at = None

    def _consume(self, end: int) -> None:
        self._buffer = self._buffer[end:]
        self._reset()

    def _skip(self, reason: str, end: int) -> None:
        self.frames_skipped += 1
        logger.warning("Skipping malformed frame: %s", reason)
        self._consume(end)

    def _drain(self) -> List[Dict[str, Any]]:
        frames: List[Dict[str, Any]] = []
        while True:
            if self.state is None:
                if not self._seek_frame():
                    return frames
                continue
            frame = self._accumulate()
            if frame is None:
                if self.state is None:
                    continue
                return frames
            frames.append(frame)

    def _seek_frame(self) -> bool:
        """Drop blank, comment and unknown lines; enter ACCUMULATING at a data prefix."""
        buf = self._buffer
        idx = 0
        while idx < len(buf) and buf[idx] in "\r\n":
            idx += 1
        if idx:
            self._buffer = buf = buf[idx:]
        if not buf:
            return False
        if buf.startswith(FRAME_PREFIX):
            start = len(FRAME_PREFIX)
            if len(buf) == start:
                return False
            if buf[start] == " ":
                start += 1
            self.state = ACCUMULATING
            self._start = start
            self._scan = start
            return True
        if FRAME_PREFIX.startswith(buf):
            return False
        newline = buf.find("\n")
        if newline == -1:
            return False
        line = buf[:newline]
        if not line.startswith(":"):
            logger.debug("Ignoring non-data stream line: %s", line[:80])
        self._buffer = buf[newline + 1:]
        return True

    def _accumulate(self) -> Optional[Dict[str, Any]]:
        buf = self._buffer
        length = len(buf)
        if self._closed_at is None and self._depth == 0:
            # Payload must open with a brace.
            pos = self._scan
            while pos < length and buf[pos] in " \t":
                pos += 1
            if pos >= length:
                self._scan = pos
                return None
            if buf[pos] != "{":
                newline = buf.find("\n", pos)
                if newline == -1:
                    self._scan = pos
                    return None
                self._skip("payload is not a JSON object", newline + 1)
                return None
            self._start = pos
            self._scan = pos
        if self._closed_at is None:
            pos = self._scan
            depth = self._depth
            in_string = self._in_string
            escaped = self._escaped
            while pos < length:
                char = buf[pos]
                if escaped:
                    escaped = False
                elif in_string:
                    if char == "\\":
                        escaped = True
                    elif char == '"':
                        in_string = False
                elif char == '"':
                    in_string = True
                elif char == "{":
                    depth += 1
                elif char == "}":
                    depth -= 1
                    if depth == 0:
                        self._closed_at = pos
                        pos += 1
                        break
                pos += 1
            self._scan = pos
            self._depth = depth
            self._in_string = in_string
            self._escaped = escaped
            if self._closed_at is None:
                return None
        end = self._closed_at + 1
        tail = buf[end:end + len(FRAME_TERMINATOR)]
        if len(tail) < len(FRAME_TERMINATOR) and FRAME_TERMINATOR.startswith(tail):
            return None
        if tail != FRAME_TERMINATOR:
            self._skip("closing brace not followed by the frame terminator", end)
            return None
        payload = buf[self._start:end]
        self._consume(end + len(FRAME_TERMINATOR))
        try:
            frame = decode_frame(payload)
        except ProtocolDecodeError as exc:
            self.frames_skipped += 1
            logger.warning("Skipping malformed frame: %s", exc.message)
            return None
        self.frames_decoded += 1
        return frame


async def iter_frames(chunks: AsyncIterable[Union[bytes, str]]) -> AsyncIterator[Dict[str, Any]]:
    decoder = FrameDecoder()
    async for chunk in chunks:
        for frame in decoder.feed(chunk):
            yield frame
    for frame in decoder.finish():
        yield frame


def iter_frames_sync(chunks: Iterable[Union[bytes, str]]) -> Iterator[Dict[str, Any]]:
    decoder = FrameDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
    yield from decoder.finish()
