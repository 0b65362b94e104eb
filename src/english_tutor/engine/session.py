"""Per-conversation turn state machine.

A session owns one conversation and at most one in-flight assistant message.
Stream events and cancel requests travel through a single asyncio queue that
one worker task drains in order, so whichever of "terminal event" and
"cancel" is dequeued first decides the outcome of the turn.

    Idle -> Awaiting -> Streaming -> Settling -> Idle
                 \\           \\
                  `-----------`--> (cancel) -> Idle
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from ..clients.ledger import CreditLedger
from ..clients.transport import StreamHandle, Transport
from ..config import (
    CANCEL_GRACE_SECS,
    DEFAULT_TITLE,
    MAX_TITLE_LENGTH,
    STREAM_READ_TIMEOUT_SECS,
    TURN_COST,
    USER_ID,
)
from ..errors import AuthExpiredError, ErrorKind, TutorError
from .assembler import MessageAssembler
from .decoder import StreamDecoder
from .events import ErrorReason, EventKind, StreamEvent
from .ids import MessageIdMap, RequestIdGenerator
from .models import (
    Conversation,
    CreditOutcome,
    CreditTransaction,
    Message,
    MessageSnapshot,
    MessageStatus,
    Role,
)
from .outcomes import CancelResult, SubmitResult, TurnOutcome

if TYPE_CHECKING:
    from ..data.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)


class SessionState(StrEnum):
    IDLE = "idle"
    AWAITING = "awaiting"
    STREAMING = "streaming"
    SETTLING = "settling"


def make_title(text: str) -> str:
    title = text.strip()[:MAX_TITLE_LENGTH]
    if len(title) >= MAX_TITLE_LENGTH:
        title = title[: MAX_TITLE_LENGTH - 3] + "..."
    return title


@dataclass
class _Turn:
    turn_id: str
    user_message: Message
    assembler: MessageAssembler
    done: asyncio.Future
    handle: StreamHandle | None = None
    pump: asyncio.Task | None = None


@dataclass
class _QueueItem:
    turn_id: str
    event: StreamEvent | None = None
    cancel: asyncio.Future | None = None


class SnapshotStream:
    """Subscription to a session's snapshots. Registered as soon as it is created."""

    def __init__(self, session: "ConversationSession") -> None:
        self._session = session
        self._queue: asyncio.Queue[MessageSnapshot | None] = asyncio.Queue()

    def push(self, snapshot: MessageSnapshot) -> None:
        self._queue.put_nowait(snapshot)

    def close(self) -> None:
        self._session._subscribers.discard(self)
        self._queue.put_nowait(None)

    def __enter__(self) -> "SnapshotStream":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def __aiter__(self) -> "SnapshotStream":
        return self

    async def __anext__(self) -> MessageSnapshot:
        snapshot = await self._queue.get()
        if snapshot is None:
            raise StopAsyncIteration
        return snapshot


class ConversationSession:
    """Runs turns for one conversation against the transport and credit ledger."""

    def __init__(
        self,
        conversation: Conversation,
        transport: Transport,
        ledger: CreditLedger,
        token_provider: Callable[[], str | None],
        *,
        store: "SQLiteStore | None" = None,
        ids: RequestIdGenerator | None = None,
        user_id: str = USER_ID,
        turn_cost: int = TURN_COST,
        read_timeout: float | None = STREAM_READ_TIMEOUT_SECS,
        cancel_grace: float = CANCEL_GRACE_SECS,
    ) -> None:
        self._conversation = conversation
        self._transport = transport
        self._ledger = ledger
        self._token_provider = token_provider
        self._store = store
        self._ids = ids or RequestIdGenerator()
        self._user_id = user_id
        self._turn_cost = turn_cost
        self._read_timeout = read_timeout
        self._cancel_grace = cancel_grace

        self._state = SessionState.IDLE
        self._preflighting = False
        self._queue: asyncio.Queue[_QueueItem] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._turn: _Turn | None = None
        self._last_outcome: TurnOutcome | None = None
        self._subscribers: set[SnapshotStream] = set()
        self._id_map = MessageIdMap()

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def in_flight_message_id(self) -> str | None:
        return self._turn.assembler.message.id if self._turn else None

    @property
    def id_map(self) -> MessageIdMap:
        return self._id_map

    @property
    def last_outcome(self) -> TurnOutcome | None:
        return self._last_outcome

    @property
    def busy(self) -> bool:
        return self._state is not SessionState.IDLE or self._preflighting

    # --- Public operations ---

    async def submit_turn(self, user_text: str) -> SubmitResult:
        if not user_text or not user_text.strip():
            return SubmitResult.rejected(ErrorKind.EMPTY_INPUT)
        if self.busy:
            return SubmitResult.rejected(ErrorKind.SESSION_BUSY)

        user_message = Message(
            id=self._ids.next_id(),
            conversation_id=self._conversation.id,
            role=Role.USER,
            content=user_text,
            status=MessageStatus.COMPLETE,
        )
        return await self._start_turn(user_message, new_user_message=True)

    async def retry(self) -> SubmitResult:
        """Re-run the latest failed turn with a new assistant attempt."""
        if self.busy:
            return SubmitResult.rejected(ErrorKind.SESSION_BUSY)

        failed = self._latest_assistant_message()
        if failed is None or failed.status is not MessageStatus.FAILED:
            return SubmitResult.rejected(ErrorKind.NOTHING_TO_RETRY)

        user_message = self._conversation.find(failed.reply_to) if failed.reply_to else None
        if user_message is None:
            return SubmitResult.rejected(ErrorKind.MESSAGE_NOT_FOUND)

        return await self._start_turn(user_message, new_user_message=False)

    def request_cancel(self) -> asyncio.Future:
        """Enqueue a cancel request behind any events already received.

        Returns a future resolving to a CancelResult once the worker has
        dequeued the request.
        """
        future = asyncio.get_running_loop().create_future()
        turn = self._turn
        if turn is None or self._state not in (SessionState.AWAITING, SessionState.STREAMING):
            future.set_result(
                CancelResult(applied=False, error=ErrorKind.NOTHING_TO_CANCEL, status=self._last_status())
            )
            return future

        self._queue.put_nowait(_QueueItem(turn.turn_id, cancel=future))
        return future

    async def cancel(self) -> CancelResult:
        return await self.request_cancel()

    async def wait_for_turn(self) -> TurnOutcome | None:
        """Wait for the in-flight turn, or return the last finished one."""
        turn = self._turn
        if turn is not None:
            return await asyncio.shield(turn.done)
        return self._last_outcome

    def subscribe(self) -> SnapshotStream:
        stream = SnapshotStream(self)
        self._subscribers.add(stream)
        return stream

    async def delete_message(self, message_id: str) -> ErrorKind | None:
        message = self._conversation.find(message_id)
        if message is None:
            return ErrorKind.MESSAGE_NOT_FOUND
        turn = self._turn
        if turn is not None and message_id in (turn.user_message.id, turn.assembler.message.id):
            return ErrorKind.SESSION_BUSY

        self._conversation.messages.remove(message)
        self._id_map.discard_local(message_id)
        self._conversation.touch()
        if self._store is not None:
            try:
                await self._store.delete_message(message_id)
            except Exception:
                logger.exception("Failed to delete message %s from store", message_id)
        return None

    async def close(self) -> None:
        if self._turn is not None:
            if self._state in (SessionState.AWAITING, SessionState.STREAMING):
                await self.cancel()
            await self.wait_for_turn()
        if self._worker is not None:
            self._worker.cancel()
            self._worker = None
        for stream in list(self._subscribers):
            stream.close()

    # --- Turn setup ---

    async def _start_turn(self, user_message: Message, new_user_message: bool) -> SubmitResult:
        token = self._token_provider()
        if not token:
            return SubmitResult.rejected(ErrorKind.AUTH_EXPIRED)

        self._preflighting = True
        try:
            allowed = await self._ledger.preflight(self._turn_cost)
        except TutorError as e:
            logger.warning("Credit preflight failed for %s: %s", self._conversation.id, e)
            return SubmitResult.rejected(e.kind)
        except Exception:
            logger.exception("Ledger crashed during preflight for %s", self._conversation.id)
            return SubmitResult.rejected(ErrorKind.TRANSPORT_FAILURE)
        finally:
            self._preflighting = False

        if not allowed:
            logger.info("Insufficient credits for a turn in %s", self._conversation.id)
            return SubmitResult.rejected(ErrorKind.INSUFFICIENT_CREDITS)

        turn_id = self._ids.next_id()
        assistant = Message(
            id=self._ids.next_id(),
            conversation_id=self._conversation.id,
            role=Role.ASSISTANT,
            reply_to=user_message.id,
        )

        if new_user_message:
            self._conversation.messages.append(user_message)
            if self._conversation.title == DEFAULT_TITLE:
                self._conversation.title = make_title(user_message.content or "")
        self._conversation.messages.append(assistant)
        self._conversation.touch()

        turn = _Turn(
            turn_id=turn_id,
            user_message=user_message,
            assembler=MessageAssembler(assistant),
            done=asyncio.get_running_loop().create_future(),
        )
        self._turn = turn
        self._state = SessionState.AWAITING
        self._ensure_worker()

        if new_user_message:
            self._publish(MessageSnapshot.of(user_message))
        self._publish(MessageSnapshot.of(assistant))

        payload = self._request_payload(turn_id, user_message.content or "")
        turn.pump = asyncio.create_task(self._pump(turn, payload, token), name=f"pump-{turn_id}")
        turn.pump.add_done_callback(self._pump_finished)

        if new_user_message:
            await self._persist(user_message)
        await self._persist(assistant)

        logger.info(
            "Turn %s started in %s (assistant message %s)",
            turn_id,
            self._conversation.id,
            assistant.id,
        )
        return SubmitResult(
            ok=True,
            turn_id=turn_id,
            user_message_id=user_message.id,
            assistant_message_id=assistant.id,
        )

    def _request_payload(self, turn_id: str, query: str) -> dict[str, Any]:
        return {
            "inputs": {},
            "query": query,
            "response_mode": "streaming",
            "conversation_id": self._conversation.remote_id or "",
            "user": self._user_id,
            "request_id": turn_id,
        }

    # --- Producer side ---

    def _post(self, turn_id: str, event: StreamEvent) -> None:
        self._queue.put_nowait(_QueueItem(turn_id, event=event))

    async def _pump(self, turn: _Turn, payload: dict[str, Any], token: str) -> None:
        try:
            try:
                handle = await self._transport.open(payload, token)
            except AuthExpiredError as e:
                self._post(turn.turn_id, StreamEvent.error(ErrorReason.AUTH_EXPIRED, detail=str(e)))
                return
            except TutorError as e:
                self._post(turn.turn_id, StreamEvent.error(ErrorReason.TRANSPORT, detail=str(e)))
                return

            turn.handle = handle
            if turn.done.done():
                await self._transport.cancel(handle)
                return

            async for event in StreamDecoder(handle.frames(), read_timeout=self._read_timeout):
                self._post(turn.turn_id, event)
        except Exception as e:
            logger.exception("Stream pump for turn %s crashed", turn.turn_id)
            self._post(turn.turn_id, StreamEvent.error(ErrorReason.TRANSPORT, detail=str(e)))

    @staticmethod
    def _pump_finished(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("Stream pump ended with %r", task.exception())

    # --- Consumer side ---

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(
                self._run(), name=f"session-{self._conversation.id}"
            )

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._process(item)
            except Exception:
                logger.exception("Session %s failed to process a queue item", self._conversation.id)

    async def _process(self, item: _QueueItem) -> None:
        turn = self._turn
        active = turn is not None and turn.turn_id == item.turn_id

        if item.cancel is not None:
            if not active:
                item.cancel.set_result(
                    CancelResult(
                        applied=False,
                        error=ErrorKind.NOTHING_TO_CANCEL,
                        status=self._last_status(),
                    )
                )
                return
            await self._apply_cancel(turn, item.cancel)
            return

        event = item.event
        if not active:
            logger.debug("Dropping %s event for inactive turn %s", event.kind, item.turn_id)
            return

        if self._state is SessionState.AWAITING:
            self._state = SessionState.STREAMING

        if event.conversation_id and not self._conversation.remote_id:
            logger.info(
                "Conversation %s assigned server id %s", self._conversation.id, event.conversation_id
            )
            self._conversation.remote_id = event.conversation_id

        snapshot = turn.assembler.apply(event)
        if event.message_id:
            self._id_map.add(event.message_id, turn.assembler.message.id)
        if snapshot is not None:
            self._publish(snapshot)

        if event.is_terminal:
            await self._finish(turn, event)

    async def _apply_cancel(self, turn: _Turn, future: asyncio.Future) -> None:
        snapshot = turn.assembler.cancel() or MessageSnapshot.of(turn.assembler.message)
        self._publish(snapshot)
        logger.info("Turn %s cancelled", turn.turn_id)

        try:
            await self._teardown(turn)
        finally:
            await self._complete(turn, TurnOutcome(turn_id=turn.turn_id, message=snapshot))
            if not future.done():
                future.set_result(CancelResult(applied=True, status=MessageStatus.CANCELLED))

    async def _finish(self, turn: _Turn, event: StreamEvent) -> None:
        message = turn.assembler.message
        if event.kind is EventKind.DONE:
            # Replaced below once settlement returns.
            outcome = TurnOutcome(
                turn_id=turn.turn_id,
                message=MessageSnapshot.of(message),
                warning=ErrorKind.SETTLEMENT_FAILED,
            )
        else:
            logger.warning(
                "Turn %s failed: %s %s", turn.turn_id, event.reason, event.detail
            )
            outcome = TurnOutcome(
                turn_id=turn.turn_id,
                message=MessageSnapshot.of(message),
                error=ErrorKind(message.error) if message.error else ErrorKind.PROTOCOL_ERROR,
            )

        try:
            await self._teardown(turn)
            if event.kind is EventKind.DONE:
                self._state = SessionState.SETTLING
                cost = event.cost if event.cost is not None else self._turn_cost
                transaction, warning = await self._settle(turn.turn_id, cost)
                outcome = TurnOutcome(
                    turn_id=turn.turn_id,
                    message=outcome.message,
                    warning=warning,
                    transaction=transaction,
                )
        finally:
            await self._complete(turn, outcome)

    async def _settle(
        self, turn_id: str, cost: int
    ) -> tuple[CreditTransaction | None, ErrorKind | None]:
        try:
            tx = await self._ledger.settle(turn_id, cost)
        except TutorError as e:
            logger.warning("Settlement for turn %s failed: %s", turn_id, e)
            return None, ErrorKind.SETTLEMENT_FAILED
        except Exception:
            logger.exception("Ledger crashed while settling turn %s", turn_id)
            return None, ErrorKind.SETTLEMENT_FAILED

        if tx.outcome is CreditOutcome.REJECTED:
            logger.warning("Ledger rejected turn %s: balance %d, cost %d", turn_id, tx.balance, cost)
        return tx, None

    async def _teardown(self, turn: _Turn) -> None:
        pump = turn.pump
        if pump is None or pump.done():
            return

        if turn.handle is None:
            pump.cancel()
            return

        try:
            await self._transport.cancel(turn.handle)
        except TutorError as e:
            logger.warning("Transport cancel for turn %s failed: %s", turn.turn_id, e)

        done, _ = await asyncio.wait({pump}, timeout=self._cancel_grace)
        if not done:
            logger.warning(
                "Stream for turn %s still open after %.1fs, tearing down", turn.turn_id, self._cancel_grace
            )
            pump.cancel()

    async def _complete(self, turn: _Turn, outcome: TurnOutcome) -> None:
        self._turn = None
        self._state = SessionState.IDLE
        self._last_outcome = outcome
        self._conversation.touch()
        await self._persist(turn.assembler.message, outcome.transaction)
        if not turn.done.done():
            turn.done.set_result(outcome)

    # --- Helpers ---

    def _publish(self, snapshot: MessageSnapshot) -> None:
        for stream in list(self._subscribers):
            stream.push(snapshot)

    async def _persist(self, message: Message, transaction: CreditTransaction | None = None) -> None:
        if self._store is None:
            return
        try:
            await self._store.save_conversation(self._conversation)
            await self._store.save_message(message)
            if transaction is not None:
                await self._store.record_transaction(transaction)
        except Exception:
            logger.exception("Failed to persist message %s", message.id)

    def _latest_assistant_message(self) -> Message | None:
        for message in reversed(self._conversation.messages):
            if message.role is Role.ASSISTANT:
                return message
        return None

    def _last_status(self) -> MessageStatus | None:
        return self._last_outcome.status if self._last_outcome else None
