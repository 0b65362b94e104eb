"""Server-sent event decoding for the tutor response stream.

The backend answers a chat request with an SSE body. Every block carries a
JSON record whose ``event`` field selects the fragment type:

    data: {"event": "answer", "data": {"text": "I want to"}, "message_id": "m-1"}

    data: {"event": "correction", "data": {"text": "use 'well'"}}

    data: {"event": "done"}

Physical frames from the transport do not line up with SSE blocks, so the
decoder buffers text until a blank line closes a block.
"""

import asyncio
import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator

from ..errors import TransportError
from .events import ErrorReason, EventKind, StreamEvent

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"

FRAGMENT_DISCRIMINANTS = {
    "answer": EventKind.TEXT,
    "correction": EventKind.CORRECTION,
    "translation": EventKind.TRANSLATION,
    "suggestion": EventKind.SUGGESTION,
}


class MalformedEventError(ValueError):
    pass


class SSEBuffer:
    """Accumulates incoming frames and splits off complete SSE blocks."""

    def __init__(self) -> None:
        self._text = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")()

    def feed(self, frame: bytes | str) -> list[str]:
        text = self._text + (self._utf8.decode(frame) if isinstance(frame, bytes) else frame)
        # A trailing CR may be the first half of a CRLF split across frames.
        held = ""
        if text.endswith("\r"):
            text, held = text[:-1], "\r"
        text = _normalize_newlines(text)

        blocks = []
        while "\n\n" in text:
            block, text = text.split("\n\n", 1)
            blocks.append(block)
        self._text = text + held
        return blocks

    def flush(self) -> str | None:
        """Return whatever is left once the stream has ended."""
        rest = _normalize_newlines(self._text + self._utf8.decode(b"", final=True))
        self._text = ""
        return rest if rest.strip() else None


def _normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _envelope_meta(record: dict) -> dict:
    meta = {}
    for key in ("message_id", "conversation_id"):
        value = record.get(key)
        if isinstance(value, str) and value:
            meta[key] = value
    cost = record.get("cost")
    if isinstance(cost, int) and not isinstance(cost, bool) and cost >= 0:
        meta["cost"] = cost
    return meta


def decode_record(data: str) -> StreamEvent:
    """Decode one JSON record into a StreamEvent, raising MalformedEventError."""
    try:
        record = json.loads(data)
    except json.JSONDecodeError as e:
        raise MalformedEventError(f"invalid JSON: {e}") from e

    if not isinstance(record, dict):
        raise MalformedEventError("record is not an object")

    discriminant = record.get("event")
    if not isinstance(discriminant, str):
        raise MalformedEventError("record has no event discriminant")

    meta = _envelope_meta(record)
    payload = record.get("data")

    if discriminant in FRAGMENT_DISCRIMINANTS:
        if not isinstance(payload, dict) or not isinstance(payload.get("text"), str):
            raise MalformedEventError(f"{discriminant} record without text payload")
        return StreamEvent(kind=FRAGMENT_DISCRIMINANTS[discriminant], text=payload["text"], **meta)

    if discriminant == "done":
        return StreamEvent.done(**meta)

    if discriminant == "error":
        message = payload.get("message", "") if isinstance(payload, dict) else ""
        return StreamEvent.error(ErrorReason.SERVER, detail=str(message), **meta)

    raise MalformedEventError(f"unknown event discriminant {discriminant!r}")


def parse_block(block: str) -> StreamEvent | None:
    """Parse a complete SSE block. Returns None for comment or ping blocks."""
    data_lines = []
    for raw_line in block.split("\n"):
        line = raw_line.rstrip("\r")
        if not line or line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        # event/id/retry fields are ignored; the discriminant lives in the record
        if field == "data":
            data_lines.append(value)

    if not data_lines:
        return None

    data = "\n".join(data_lines)
    if data.strip() == DONE_SENTINEL:
        return StreamEvent.done()
    return decode_record(data)


class StreamDecoder:
    """Turns transport frames into a finite, single-use sequence of events.

    Exactly one terminal event (``Done`` or ``Error``) ends the sequence.
    Malformed records and transport failures are reported as ``Error``
    events rather than raised, so the consumer sees every outcome through
    the same channel.
    """

    def __init__(
        self,
        frames: AsyncIterable[bytes | str],
        read_timeout: float | None = None,
    ) -> None:
        self._frames = frames
        self._read_timeout = read_timeout
        self._started = False

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        if self._started:
            raise RuntimeError("StreamDecoder can only be iterated once")
        self._started = True
        return self._events()

    async def _next_frame(self, frames: AsyncIterator[bytes | str]) -> bytes | str:
        if self._read_timeout is None:
            return await anext(frames)
        return await asyncio.wait_for(anext(frames), self._read_timeout)

    @staticmethod
    def _decode(block: str) -> StreamEvent | None:
        try:
            return parse_block(block)
        except MalformedEventError as e:
            logger.warning("Malformed stream event: %s", e)
            return StreamEvent.error(ErrorReason.MALFORMED, detail=str(e))

    async def _events(self) -> AsyncIterator[StreamEvent]:
        buffer = SSEBuffer()
        frames = aiter(self._frames)
        try:
            while True:
                try:
                    frame = await self._next_frame(frames)
                except StopAsyncIteration:
                    break
                except (TransportError, TimeoutError) as e:
                    logger.warning("Transport failure while reading stream: %r", e)
                    yield StreamEvent.error(ErrorReason.TRANSPORT, detail=str(e) or type(e).__name__)
                    return

                try:
                    blocks = buffer.feed(frame)
                except UnicodeDecodeError as e:
                    yield StreamEvent.error(ErrorReason.MALFORMED, detail=f"invalid UTF-8: {e}")
                    return

                for block in blocks:
                    event = self._decode(block)
                    if event is None:
                        continue
                    yield event
                    if event.is_terminal:
                        return

            try:
                tail = buffer.flush()
            except UnicodeDecodeError as e:
                yield StreamEvent.error(ErrorReason.MALFORMED, detail=f"invalid UTF-8: {e}")
                return

            if tail is not None:
                event = self._decode(tail)
                if event is not None:
                    yield event
                    if event.is_terminal:
                        return

            yield StreamEvent.error(
                ErrorReason.TRANSPORT, detail="stream ended without a terminal event"
            )
        finally:
            aclose = getattr(frames, "aclose", None)
            if aclose is not None:
                await aclose()
