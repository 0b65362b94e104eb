import logging
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from ..clients.ledger import CreditLedger
from ..clients.transport import Transport
from ..config import DEFAULT_TITLE
from .ids import RequestIdGenerator
from .models import Conversation
from .session import ConversationSession

if TYPE_CHECKING:
    from ..data.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)


class SessionManager:
    """Keeps one ConversationSession per conversation id.

    Sessions are created lazily, from the store when the conversation was
    persisted by an earlier run. Sessions share the transport and ledger but
    no mutable state.
    """

    def __init__(
        self,
        transport: Transport,
        ledger: CreditLedger,
        token_provider: Callable[[], str | None],
        store: "SQLiteStore | None" = None,
        **session_options: Any,
    ) -> None:
        self._transport = transport
        self._ledger = ledger
        self._token_provider = token_provider
        self._store = store
        self._session_options = session_options
        self._sessions: dict[str, ConversationSession] = {}

    @property
    def ledger(self) -> CreditLedger:
        return self._ledger

    def _open(self, conversation: Conversation) -> ConversationSession:
        session = ConversationSession(
            conversation,
            self._transport,
            self._ledger,
            self._token_provider,
            store=self._store,
            ids=RequestIdGenerator(),
            **self._session_options,
        )
        self._sessions[conversation.id] = session
        return session

    async def new_conversation(self, title: str = DEFAULT_TITLE) -> ConversationSession:
        conversation = Conversation(id=str(uuid.uuid4()), title=title)
        if self._store is not None:
            await self._store.save_conversation(conversation)
        logger.info("Created conversation %s", conversation.id)
        return self._open(conversation)

    async def get(self, conversation_id: str) -> ConversationSession | None:
        session = self._sessions.get(conversation_id)
        if session is not None:
            return session
        if self._store is None:
            return None
        conversation = await self._store.load_conversation(conversation_id)
        if conversation is None:
            return None
        return self._open(conversation)

    async def list_conversations(self) -> list[dict]:
        if self._store is not None:
            return await self._store.list_conversations()
        sessions = sorted(
            self._sessions.values(), key=lambda s: s.conversation.updated_at, reverse=True
        )
        return [
            {
                "id": s.conversation.id,
                "title": s.conversation.title,
                "remote_id": s.conversation.remote_id,
                "created_at": s.conversation.created_at,
                "updated_at": s.conversation.updated_at,
                "last_message": s.conversation.last_message_preview or None,
            }
            for s in sessions
        ]

    async def list_transactions(self) -> list[dict]:
        if self._store is None:
            return []
        return await self._store.list_transactions()

    async def rename(self, conversation_id: str, title: str) -> bool:
        session = await self.get(conversation_id)
        if session is None:
            return False
        session.conversation.title = title
        session.conversation.touch()
        if self._store is not None:
            await self._store.update_conversation_title(conversation_id, title)
        return True

    async def delete(self, conversation_id: str) -> bool:
        session = await self.get(conversation_id)
        if session is None:
            return False
        await session.close()
        self._sessions.pop(conversation_id, None)
        if self._store is not None:
            await self._store.delete_conversation(conversation_id)
        logger.info("Deleted conversation %s", conversation_id)
        return True

    async def close(self) -> None:
        for session in list(self._sessions.values()):
            await session.close()
        self._sessions.clear()
