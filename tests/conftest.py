import asyncio
import json

import pytest
import pytest_asyncio

from english_tutor.clients.ledger import InMemoryCreditLedger
from english_tutor.clients.transport import StreamHandle, Transport
from english_tutor.data.sqlite_store import SQLiteStore
from english_tutor.engine.ids import RequestIdGenerator
from english_tutor.engine.models import Conversation
from english_tutor.engine.session import ConversationSession
from english_tutor.errors import SettlementFailedError


def sse(record: dict) -> bytes:
    return f"data: {json.dumps(record, ensure_ascii=False)}\n\n".encode()


def answer(text: str, **meta) -> bytes:
    return sse({"event": "answer", "data": {"text": text}, **meta})


def fragment(event: str, text: str, **meta) -> bytes:
    return sse({"event": event, "data": {"text": text}, **meta})


def done(**meta) -> bytes:
    return sse({"event": "done", **meta})


class FakeHandle(StreamHandle):
    """Stream handle fed frame by frame from the test. ``None`` ends the stream."""

    def __init__(self, request_id=None):
        self.request_id = request_id
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = asyncio.Event()

    def feed(self, *frames):
        for frame in frames:
            self.queue.put_nowait(frame)

    def end(self):
        self.queue.put_nowait(None)

    async def frames(self):
        while not self.closed.is_set():
            get = asyncio.ensure_future(self.queue.get())
            closed = asyncio.ensure_future(self.closed.wait())
            finished, pending = await asyncio.wait({get, closed}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            if get not in finished:
                return
            frame = get.result()
            if frame is None:
                return
            if isinstance(frame, Exception):
                raise frame
            yield frame

    async def aclose(self):
        self.closed.set()


class FakeTransport(Transport):
    def __init__(self):
        self.requests: list[tuple[dict, str]] = []
        self.handles: list[FakeHandle] = []
        self.cancelled: list[FakeHandle] = []
        self.open_error: Exception | None = None
        self.opened = asyncio.Event()

    async def open(self, payload, auth_token):
        self.requests.append((payload, auth_token))
        if self.open_error is not None:
            raise self.open_error
        handle = FakeHandle(payload.get("request_id"))
        self.handles.append(handle)
        self.opened.set()
        return handle

    async def cancel(self, handle):
        self.cancelled.append(handle)
        await handle.aclose()

    async def wait_opened(self) -> FakeHandle:
        await asyncio.wait_for(self.opened.wait(), 1)
        self.opened.clear()
        return self.handles[-1]


class BlockingTransport(FakeTransport):
    """Transport whose open() waits until the test releases it."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def open(self, payload, auth_token):
        self.entered.set()
        await self.release.wait()
        return await super().open(payload, auth_token)


class StubbornHandle(FakeHandle):
    """Handle that ignores abort requests, so only task cancellation stops it."""

    def __init__(self, request_id=None):
        super().__init__(request_id)
        self.abort_calls = 0

    async def aclose(self):
        self.abort_calls += 1


class StubbornTransport(FakeTransport):
    async def open(self, payload, auth_token):
        self.requests.append((payload, auth_token))
        handle = StubbornHandle(payload.get("request_id"))
        self.handles.append(handle)
        self.opened.set()
        return handle


class FailingSettleLedger(InMemoryCreditLedger):
    async def settle(self, turn_id, actual_cost):
        raise SettlementFailedError("ledger offline")


@pytest_asyncio.fixture
async def sqlite_store(tmp_path):
    store = SQLiteStore(str(tmp_path / "test.db"))
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def ledger():
    return InMemoryCreditLedger(initial_balance=10)


@pytest.fixture
def make_session(transport, ledger):
    def _make(
        conversation=None,
        *,
        token="token-1",
        store=None,
        ledger_override=None,
        transport_override=None,
        **options,
    ):
        options.setdefault("read_timeout", None)
        options.setdefault("cancel_grace", 0.5)
        return ConversationSession(
            conversation or Conversation(id="conv-1"),
            transport_override or transport,
            ledger_override or ledger,
            lambda: token,
            store=store,
            ids=RequestIdGenerator("t"),
            **options,
        )

    return _make
