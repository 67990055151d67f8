from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Annotated, Any, AsyncIterator, Literal, Protocol, Union, assert_never

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from runengine.core.errors import StreamProtocolError
from runengine.engine.cancel import CancelToken

logger = logging.getLogger(__name__)


# ----------------------------
# Record union (agent-chat NDJSON)
# ----------------------------
class ContentDelta(BaseModel):
    type: Literal["contentDelta"]
    delta: str


class StreamError(BaseModel):
    type: Literal["error"]
    message: str = "Agent chat failed"


class StreamFinal(BaseModel):
    type: Literal["final"]


StreamRecord = Annotated[Union[ContentDelta, StreamError, StreamFinal], Field(discriminator="type")]

_RECORD_ADAPTER: TypeAdapter[StreamRecord] = TypeAdapter(StreamRecord)
_KNOWN_TYPES = frozenset({"contentDelta", "error", "final"})


class StreamSink(Protocol):
    def on_delta(self, text: str) -> None: ...

    def on_error(self, message: str) -> None: ...

    def on_final(self) -> None: ...


class StreamOutcome(StrEnum):
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class StreamStats:
    records: int = 0
    ignored: int = 0
    dropped: int = 0


def decode_line(line: bytes) -> StreamRecord | None:
    """
    Decode one NDJSON line. Returns None for well-formed records of a type we
    do not handle; raises StreamProtocolError for anything unparsable.
    """
    try:
        raw = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise StreamProtocolError(f"unparsable stream line: {e}") from e

    if not isinstance(raw, dict) or not isinstance(raw.get("type"), str):
        raise StreamProtocolError("stream record without a string 'type'")
    if raw["type"] not in _KNOWN_TYPES:
        return None

    try:
        return _RECORD_ADAPTER.validate_python(raw)
    except ValidationError as e:
        raise StreamProtocolError(f"malformed {raw['type']!r} record: {e.error_count()} error(s)") from e


def dispatch(record: StreamRecord, sink: StreamSink) -> None:
    if isinstance(record, ContentDelta):
        sink.on_delta(record.delta)
    elif isinstance(record, StreamError):
        sink.on_error(record.message)
    elif isinstance(record, StreamFinal):
        sink.on_final()
    else:
        assert_never(record)


def consume_json(payload: Any, sink: StreamSink) -> StreamStats:
    """Non-streamed agent-chat reply: one `{content}` object."""
    stats = StreamStats()
    content = payload.get("content") if isinstance(payload, dict) else None
    if isinstance(content, str) and content:
        sink.on_delta(content)
        stats.records += 1
    sink.on_final()
    return stats


class LineBuffer:
    """Accumulates raw bytes and yields complete newline-terminated lines."""

    def __init__(self) -> None:
        self._buf = bytearray()

    def feed(self, chunk: bytes) -> list[bytes]:
        self._buf.extend(chunk)
        lines: list[bytes] = []
        while True:
            idx = self._buf.find(b"\n")
            if idx < 0:
                break
            lines.append(bytes(self._buf[:idx]))
            del self._buf[: idx + 1]
        return lines

    def flush(self) -> bytes:
        rest = bytes(self._buf)
        self._buf.clear()
        return rest


async def _next_chunk(chunks: AsyncIterator[bytes], cancel: CancelToken) -> bytes | None:
    """
    Wait for the next chunk or the cancel signal, whichever comes first.
    Returns None at end of stream or when cancelled.
    """
    read = asyncio.ensure_future(chunks.__anext__())
    stop = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({read, stop}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        read.cancel()
        raise
    finally:
        stop.cancel()

    if read.done():
        try:
            return read.result()
        except StopAsyncIteration:
            return None

    read.cancel()
    try:
        await read
    except (asyncio.CancelledError, StopAsyncIteration):
        pass
    return None


class EventStreamConsumer:
    def __init__(self, sink: StreamSink) -> None:
        self.sink = sink
        self.stats = StreamStats()

    def _handle_line(self, line: bytes) -> None:
        if not line.strip():
            return
        try:
            record = decode_line(line)
        except StreamProtocolError as e:
            self.stats.dropped += 1
            logger.warning("Dropping stream line: %s", e)
            return
        if record is None:
            self.stats.ignored += 1
            logger.debug("Ignoring stream record of unknown type")
            return
        self.stats.records += 1
        dispatch(record, self.sink)

    async def consume(self, chunks: AsyncIterator[bytes], cancel: CancelToken) -> StreamOutcome:
        buf = LineBuffer()
        while True:
            if cancel.cancelled:
                return StreamOutcome.ABORTED
            chunk = await _next_chunk(chunks, cancel)
            if chunk is None:
                if cancel.cancelled:
                    return StreamOutcome.ABORTED
                break
            for line in buf.feed(chunk):
                self._handle_line(line)

        self._handle_line(buf.flush())
        return StreamOutcome.COMPLETED


async def consume_ndjson(
    chunks: AsyncIterator[bytes],
    sink: StreamSink,
    cancel: CancelToken,
) -> tuple[StreamOutcome, StreamStats]:
    consumer = EventStreamConsumer(sink)
    outcome = await consumer.consume(chunks, cancel)
    return outcome, consumer.stats
