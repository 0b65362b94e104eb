import asyncio

import pytest
from hypothesis import given
from hypothesis import strategies as st

from conftest import answer, done, fragment
from english_tutor.engine.decoder import SSEBuffer, StreamDecoder, parse_block
from english_tutor.engine.events import ErrorReason, EventKind, StreamEvent
from english_tutor.errors import TransportError


class Frames:
    """Async frame source that records whether it was closed."""

    def __init__(self, frames):
        self._frames = list(frames)
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._frames:
            raise StopAsyncIteration
        frame = self._frames.pop(0)
        if isinstance(frame, Exception):
            raise frame
        return frame

    async def aclose(self):
        self.closed = True


async def decode(frames, **kwargs):
    return [e async for e in StreamDecoder(Frames(frames), **kwargs)]


def split_at(data: bytes, *cuts: int) -> list[bytes]:
    points = [0, *sorted(cuts), len(data)]
    return [data[a:b] for a, b in zip(points, points[1:])]


@pytest.mark.asyncio
async def test_decodes_fragments_in_order():
    body = (
        answer("I want to learn English ", message_id="srv-1", conversation_id="remote-1")
        + answer("well.")
        + fragment("correction", "use 'well' instead of 'good'")
        + fragment("translation", "Quiero aprender bien inglés.")
        + fragment("suggestion", "Try: I want to improve my English.")
        + done(cost=2)
    )
    events = await decode([body])

    assert [e.kind for e in events] == [
        EventKind.TEXT,
        EventKind.TEXT,
        EventKind.CORRECTION,
        EventKind.TRANSLATION,
        EventKind.SUGGESTION,
        EventKind.DONE,
    ]
    assert events[0].message_id == "srv-1"
    assert events[0].conversation_id == "remote-1"
    assert events[-1].cost == 2


@pytest.mark.asyncio
async def test_block_split_across_frames():
    body = answer("hello") + done()
    events = await decode(split_at(body, 3, 17, 30))
    assert events == [StreamEvent.answer("hello"), StreamEvent.done()]


@pytest.mark.asyncio
async def test_multibyte_character_split_across_frames():
    body = answer("café ☕") + done()
    cut = body.index("☕".encode()) + 1
    events = await decode(split_at(body, cut))
    assert events[0].text == "café ☕"


@pytest.mark.asyncio
async def test_crlf_line_endings():
    body = b'data: {"event": "answer", "data": {"text": "hi"}}\r\n\r\ndata: [DONE]\r\n\r\n'
    events = await decode(split_at(body, body.index(b"\r\n") + 1))
    assert events == [StreamEvent.answer("hi"), StreamEvent.done()]


@pytest.mark.asyncio
async def test_bare_cr_line_endings():
    body = b'data: {"event": "answer", "data": {"text": "hi"}}\r\rdata: [DONE]\r\r'
    events = await decode(split_at(body, body.index(b"\r") + 1))
    assert events == [StreamEvent.answer("hi"), StreamEvent.done()]


def test_buffer_holds_trailing_cr_until_next_frame():
    buf = SSEBuffer()
    assert buf.feed("data: a\r") == []
    assert buf.feed("\ndata: b\r") == []
    assert buf.feed("\rdata: c") == ["data: a\ndata: b"]


@pytest.mark.asyncio
async def test_comments_and_pings_are_skipped():
    body = b": ping\n\n" + answer("a") + b":keepalive\n\n" + done()
    events = await decode([body])
    assert [e.kind for e in events] == [EventKind.TEXT, EventKind.DONE]


@pytest.mark.asyncio
async def test_done_sentinel_ends_stream():
    frames = Frames([answer("a") + b"data: [DONE]\n\n" + answer("ignored")])
    events = [e async for e in StreamDecoder(frames)]
    assert events[-1] == StreamEvent.done()
    assert len(events) == 2
    assert frames.closed


@pytest.mark.asyncio
async def test_server_error_record():
    body = b'data: {"event": "error", "data": {"message": "quota exceeded"}}\n\n'
    events = await decode([body])
    assert events == [StreamEvent.error(ErrorReason.SERVER, detail="quota exceeded")]


@pytest.mark.asyncio
async def test_invalid_json_is_malformed():
    events = await decode([answer("a"), b"data: {not json\n\n", answer("b")])
    assert events[0] == StreamEvent.answer("a")
    assert events[1].kind is EventKind.ERROR
    assert events[1].reason is ErrorReason.MALFORMED
    assert len(events) == 2


@pytest.mark.asyncio
async def test_unknown_discriminant_is_malformed():
    events = await decode([b'data: {"event": "workflow_started"}\n\n'])
    assert events[0].reason is ErrorReason.MALFORMED
    assert "workflow_started" in events[0].detail


@pytest.mark.asyncio
async def test_fragment_without_text_is_malformed():
    events = await decode([b'data: {"event": "answer", "data": {}}\n\n'])
    assert events[0].reason is ErrorReason.MALFORMED


@pytest.mark.asyncio
async def test_invalid_utf8_is_malformed():
    events = await decode([b"data: \xff\xfe\n\n"])
    assert len(events) == 1
    assert events[0].reason is ErrorReason.MALFORMED


@pytest.mark.asyncio
async def test_transport_error_mid_stream():
    frames = Frames([answer("I want"), TransportError("connection reset")])
    events = [e async for e in StreamDecoder(frames)]
    assert events[0] == StreamEvent.answer("I want")
    assert events[1] == StreamEvent.error(ErrorReason.TRANSPORT, detail="connection reset")
    assert frames.closed


@pytest.mark.asyncio
async def test_stream_ending_without_terminal_event():
    events = await decode([answer("partial")])
    assert events[-1].kind is EventKind.ERROR
    assert events[-1].reason is ErrorReason.TRANSPORT


@pytest.mark.asyncio
async def test_trailing_block_without_blank_line():
    events = await decode([answer("a") + b'data: {"event": "done"}'])
    assert events == [StreamEvent.answer("a"), StreamEvent.done()]


@pytest.mark.asyncio
async def test_exactly_one_terminal_event():
    events = await decode([done() + done() + answer("late")])
    assert events == [StreamEvent.done()]


@pytest.mark.asyncio
async def test_decoder_cannot_be_restarted():
    decoder = StreamDecoder(Frames([done()]))
    assert [e async for e in decoder] == [StreamEvent.done()]
    with pytest.raises(RuntimeError):
        aiter(decoder)


def test_parse_block_multiline_data():
    block = 'event: message\ndata: {"event": "answer",\ndata: "data": {"text": "x"}}'
    assert parse_block(block) == StreamEvent.answer("x")


def test_parse_block_without_data_is_ignored():
    assert parse_block(": comment") is None
    assert parse_block("id: 7") is None


def test_buffer_keeps_incomplete_block():
    buf = SSEBuffer()
    assert buf.feed(b"data: a\n") == []
    assert buf.feed(b"\ndata: b") == ["data: a"]
    assert buf.flush() == "data: b"


BODY = (
    answer("Ich möchte ", message_id="srv-9")
    + b": ping\n\n"
    + fragment("correction", "naïve → naive")
    + done(cost=1)
)


@pytest.mark.asyncio
@given(cuts=st.lists(st.integers(min_value=1, max_value=len(BODY) - 1), max_size=8))
async def test_frame_boundaries_do_not_change_events(cuts):
    expected = await decode([BODY])
    assert await decode(split_at(BODY, *cuts)) == expected


class StalledFrames(Frames):
    async def __anext__(self):
        if self._frames:
            return await super().__anext__()
        await asyncio.sleep(10)
        raise StopAsyncIteration


@pytest.mark.asyncio
async def test_read_timeout_reports_transport_error():
    frames = StalledFrames([answer("I want")])
    events = [e async for e in StreamDecoder(frames, read_timeout=0.05)]
    assert events[0] == StreamEvent.answer("I want")
    assert events[1].kind is EventKind.ERROR
    assert events[1].reason is ErrorReason.TRANSPORT
    assert frames.closed
