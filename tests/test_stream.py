import asyncio
import json

import pytest

from runengine.core.errors import StreamProtocolError
from runengine.engine.cancel import CancelToken
from runengine.engine.stream import (
    ContentDelta,
    LineBuffer,
    StreamOutcome,
    consume_json,
    consume_ndjson,
    decode_line,
)


class RecordingSink:
    def __init__(self):
        self.deltas: list[str] = []
        self.errors: list[str] = []
        self.finals = 0

    def on_delta(self, text):
        self.deltas.append(text)

    def on_error(self, message):
        self.errors.append(message)

    def on_final(self):
        self.finals += 1

    @property
    def text(self):
        return "".join(self.deltas)


def _ndjson(*records) -> bytes:
    return b"".join(json.dumps(r).encode() + b"\n" for r in records)


async def _chunks(*parts: bytes):
    for p in parts:
        yield p


def test_decode_line_variants():
    assert decode_line(b'{"type":"contentDelta","delta":"hi"}') == ContentDelta(type="contentDelta", delta="hi")
    assert decode_line(b'{"type":"usage","tokens":3}') is None
    with pytest.raises(StreamProtocolError):
        decode_line(b"not json")
    with pytest.raises(StreamProtocolError):
        decode_line(b'{"type":"contentDelta"}')


def test_line_buffer_holds_partial_lines():
    buf = LineBuffer()
    assert buf.feed(b'{"a":1}\n{"b"') == [b'{"a":1}']
    assert buf.feed(b":2}\n") == [b'{"b":2}']
    assert buf.flush() == b""


@pytest.mark.asyncio
async def test_streamed_deltas_match_single_json_reply():
    body = _ndjson(
        {"type": "contentDelta", "delta": "Hel"},
        {"type": "contentDelta", "delta": "lo"},
        {"type": "contentDelta", "delta": " world"},
        {"type": "final"},
    )
    # split mid-record so the consumer has to reassemble lines
    streamed = RecordingSink()
    outcome, stats = await consume_ndjson(_chunks(body[:10], body[10:37], body[37:]), streamed, CancelToken())

    whole = RecordingSink()
    consume_json({"content": "Hello world"}, whole)

    assert outcome == StreamOutcome.COMPLETED
    assert stats.records == 4
    assert streamed.text == whole.text == "Hello world"
    assert streamed.finals == whole.finals == 1


@pytest.mark.asyncio
async def test_bad_and_unknown_lines_do_not_stop_the_stream():
    body = (
        b'{"type":"contentDelta","delta":"a"}\n'
        b"garbage\n"
        b"\n"
        b'{"type":"heartbeat"}\n'
        b'{"type":"contentDelta","delta":"b"}'
    )
    sink = RecordingSink()
    outcome, stats = await consume_ndjson(_chunks(body), sink, CancelToken())

    assert outcome == StreamOutcome.COMPLETED
    # trailing line without a newline is still delivered
    assert sink.text == "ab"
    assert stats.dropped == 1
    assert stats.ignored == 1


@pytest.mark.asyncio
async def test_error_record_is_reported():
    sink = RecordingSink()
    await consume_ndjson(_chunks(_ndjson({"type": "error", "message": "model overloaded"})), sink, CancelToken())
    assert sink.errors == ["model overloaded"]


@pytest.mark.asyncio
async def test_cancel_stops_a_hanging_stream():
    gate = asyncio.Event()

    async def hanging():
        yield _ndjson({"type": "contentDelta", "delta": "partial"})
        await gate.wait()
        yield _ndjson({"type": "contentDelta", "delta": "never"})

    sink = RecordingSink()
    cancel = CancelToken()
    task = asyncio.create_task(consume_ndjson(hanging(), sink, cancel))
    await asyncio.sleep(0.01)
    cancel.cancel("user abort")

    outcome, _ = await asyncio.wait_for(task, timeout=1)
    assert outcome == StreamOutcome.ABORTED
    assert sink.text == "partial"
    assert sink.finals == 0


@pytest.mark.asyncio
async def test_cancelling_the_consumer_task_stops_the_pending_read():
    closed = asyncio.Event()

    async def endless():
        try:
            yield _ndjson({"type": "contentDelta", "delta": "x"})
            await asyncio.Event().wait()
        finally:
            closed.set()

    task = asyncio.create_task(consume_ndjson(endless(), RecordingSink(), CancelToken()))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    await asyncio.wait_for(closed.wait(), timeout=1)
