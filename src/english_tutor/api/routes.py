import logging

from fastapi import APIRouter, HTTPException, Request
from sse_starlette.sse import EventSourceResponse

from ..engine.manager import SessionManager
from ..engine.outcomes import SubmitResult
from ..engine.session import ConversationSession, SnapshotStream
from ..errors import ErrorKind, TutorError
from .models import (
    BalanceOut,
    CancelOut,
    ChatRequest,
    ConversationOut,
    RenameRequest,
    TransactionOut,
)
from .sse import outcome_payload, sse_done, sse_error, sse_init, sse_snapshot

logger = logging.getLogger(__name__)
router = APIRouter()

ERROR_STATUS = {
    ErrorKind.INSUFFICIENT_CREDITS: 402,
    ErrorKind.SESSION_BUSY: 409,
    ErrorKind.NOTHING_TO_RETRY: 409,
    ErrorKind.NOTHING_TO_CANCEL: 409,
    ErrorKind.AUTH_EXPIRED: 401,
    ErrorKind.MESSAGE_NOT_FOUND: 404,
    ErrorKind.EMPTY_INPUT: 422,
    ErrorKind.TRANSPORT_FAILURE: 502,
}


def _reject(error: ErrorKind) -> HTTPException:
    return HTTPException(status_code=ERROR_STATUS.get(error, 400), detail=error.value)


def _manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


async def _session_or_404(request: Request, conversation_id: str) -> ConversationSession:
    session = await _manager(request).get(conversation_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return session


async def turn_events(session: ConversationSession, stream: SnapshotStream, result: SubmitResult):
    """Relay one turn's snapshots until the assistant message is final."""
    yield sse_init(
        {
            "conversation_id": session.conversation.id,
            "turn_id": result.turn_id,
            "user_message_id": result.user_message_id,
            "assistant_message_id": result.assistant_message_id,
        }
    )
    try:
        async for snapshot in stream:
            yield sse_snapshot(snapshot)
            if snapshot.message_id == result.assistant_message_id and snapshot.status.is_terminal:
                break
        outcome = await session.wait_for_turn()
        yield sse_done(outcome_payload(outcome))
    except Exception as e:
        logger.exception("Error in chat stream")
        yield sse_error(str(e))
        yield sse_done({"error": str(e)})
    finally:
        stream.close()


def _stream_turn(session: ConversationSession, stream: SnapshotStream, result: SubmitResult):
    if not result.ok:
        stream.close()
        raise _reject(result.error)
    return EventSourceResponse(turn_events(session, stream, result), ping=15)


@router.post("/api/chat")
async def chat_endpoint(req: ChatRequest, request: Request):
    if req.conversation_id:
        session = await _session_or_404(request, req.conversation_id)
    else:
        session = await _manager(request).new_conversation()

    stream = session.subscribe()
    result = await session.submit_turn(req.message)
    if not result.ok and not req.conversation_id:
        await _manager(request).delete(session.conversation.id)
    return _stream_turn(session, stream, result)


@router.post("/api/conversations/{conversation_id}/retry")
async def retry_endpoint(conversation_id: str, request: Request):
    session = await _session_or_404(request, conversation_id)
    stream = session.subscribe()
    result = await session.retry()
    return _stream_turn(session, stream, result)


@router.post("/api/conversations/{conversation_id}/cancel", response_model=CancelOut)
async def cancel_endpoint(conversation_id: str, request: Request):
    session = await _session_or_404(request, conversation_id)
    result = await session.cancel()
    return CancelOut(
        applied=result.applied,
        error=result.error.value if result.error else None,
        status=result.status.value if result.status else None,
    )


@router.post("/api/conversations", response_model=ConversationOut)
async def create_conversation(request: Request):
    session = await _manager(request).new_conversation()
    conv = session.conversation
    return ConversationOut(
        id=conv.id, title=conv.title, created_at=conv.created_at, updated_at=conv.updated_at
    )


@router.get("/api/conversations", response_model=list[ConversationOut])
async def list_conversations(request: Request):
    return await _manager(request).list_conversations()


@router.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, request: Request):
    session = await _session_or_404(request, conversation_id)
    conv = session.conversation
    return {
        "conversation": conv.model_dump(exclude={"messages"}),
        "messages": [m.model_dump(mode="json") for m in conv.messages],
        "state": session.state.value,
        "in_flight_message_id": session.in_flight_message_id,
    }


@router.patch("/api/conversations/{conversation_id}", response_model=ConversationOut)
async def rename_conversation(conversation_id: str, req: RenameRequest, request: Request):
    if not await _manager(request).rename(conversation_id, req.title):
        raise HTTPException(status_code=404, detail="Conversation not found")
    conv = (await _session_or_404(request, conversation_id)).conversation
    return ConversationOut(
        id=conv.id,
        title=conv.title,
        remote_id=conv.remote_id,
        created_at=conv.created_at,
        updated_at=conv.updated_at,
        last_message=conv.last_message_preview or None,
    )


@router.delete("/api/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, request: Request):
    if not await _manager(request).delete(conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"success": True}


@router.delete("/api/conversations/{conversation_id}/messages/{message_id}")
async def delete_message(conversation_id: str, message_id: str, request: Request):
    session = await _session_or_404(request, conversation_id)
    error = await session.delete_message(message_id)
    if error is not None:
        raise _reject(error)
    return {"success": True}


@router.get("/api/credits/balance", response_model=BalanceOut)
async def credits_balance(request: Request):
    try:
        credits = await _manager(request).ledger.balance()
    except TutorError as e:
        raise _reject(e.kind) from e
    return BalanceOut(credits=credits)


@router.get("/api/credits/transactions", response_model=list[TransactionOut])
async def credit_transactions(request: Request):
    return await _manager(request).list_transactions()
