"""
Incremental decoder for the copilot's SSE chat stream

The stream is a sequence of ``data: <json>`` records separated by a blank
line. Each record decodes to exactly one frame: a text delta, the terminal
payload, a record to skip, or an unparseable record.
"""
import codecs
import json
from dataclasses import dataclass
from typing import Any, AsyncIterable, Callable, Dict, List, Optional, Union

import structlog

from field_copilot.exceptions import MalformedChunk, StreamIncomplete

logger = structlog.get_logger()

RECORD_SEPARATOR = "\n\n"
DATA_FIELD = "data:"


@dataclass(frozen=True)
class DeltaFrame:
    """Incremental answer text"""
    text: str


@dataclass(frozen=True)
class TerminalFrame:
    """Complete structured answer"""
    payload: Dict[str, Any]


@dataclass(frozen=True)
class SkipFrame:
    """Record with nothing to apply"""
    reason: str


@dataclass(frozen=True)
class UnparseableFrame:
    """Record whose payload is not valid JSON"""
    raw: str
    error: str


Frame = Union[DeltaFrame, TerminalFrame, SkipFrame, UnparseableFrame]


def parse_frame_payload(payload: str) -> Any:
    try:
        return json.loads(payload)
    except json.JSONDecodeError as e:
        raise MalformedChunk(f"Invalid JSON in stream record: {e.msg}") from e


def decode_record(record: str) -> Frame:
    """
    Decode one complete record (without its separator)

    Args:
        record: Raw record text, possibly holding several field lines

    Returns:
        The frame the record stands for
    """
    line = next(
        (entry.strip() for entry in record.split("\n") if entry.strip().startswith(DATA_FIELD)),
        None
    )
    if line is None:
        return SkipFrame("no data line")

    payload = line[len(DATA_FIELD):].strip()
    if not payload:
        return SkipFrame("empty payload")

    try:
        data = parse_frame_payload(payload)
    except MalformedChunk as e:
        return UnparseableFrame(raw=payload, error=e.message)

    if isinstance(data, dict):
        if isinstance(data.get("delta"), str):
            return DeltaFrame(data["delta"])
        if "answer" in data:
            return TerminalFrame(data)
    return SkipFrame("unrecognized payload")


class FrameDecoder:
    """
    Pending-buffer decoder: append, split on the separator, keep the remainder.

    Bytes are decoded incrementally so a multi-byte character split across
    chunks is not corrupted. CRLF line endings are normalized before splitting.
    Only the first terminal payload is authoritative.
    """

    def __init__(self):
        self.buffer = ""
        self.terminal: Optional[Dict[str, Any]] = None
        self.unparseable = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: Union[str, bytes]) -> List[Frame]:
        """Consume one chunk and return the frames of every record it completed"""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self.buffer = (self.buffer + chunk).replace("\r\n", "\n")

        *records, self.buffer = self.buffer.split(RECORD_SEPARATOR)

        frames = []
        for record in records:
            frame = decode_record(record)
            if isinstance(frame, TerminalFrame) and self.terminal is None:
                self.terminal = frame.payload
            elif isinstance(frame, UnparseableFrame):
                self.unparseable += 1
            frames.append(frame)
        return frames

    def finish(self) -> Dict[str, Any]:
        """
        Close the decoder after the stream ended

        Returns:
            The terminal payload

        Raises:
            StreamIncomplete: No terminal payload was received
        """
        if self.terminal is None:
            raise StreamIncomplete()
        return self.terminal


async def consume_stream(
    chunks: AsyncIterable[Union[str, bytes]],
    on_delta: Callable[[str], None]
) -> Dict[str, Any]:
    """
    Apply every delta in arrival order, then return the terminal payload
    """
    decoder = FrameDecoder()
    async for chunk in chunks:
        for frame in decoder.feed(chunk):
            if isinstance(frame, DeltaFrame):
                on_delta(frame.text)
            elif isinstance(frame, UnparseableFrame):
                logger.debug("Skipping malformed stream record", error=frame.error)

    if decoder.unparseable:
        logger.warning("Stream contained malformed records", count=decoder.unparseable)
    return decoder.finish()
