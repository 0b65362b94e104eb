import aiosqlite

from ..config import DEFAULT_TITLE
from ..engine.models import (
    Conversation,
    CreditTransaction,
    Message,
    MessageStatus,
    now_iso,
    preview,
)
from ..errors import ErrorKind

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT 'New conversation',
    remote_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id),
    seq INTEGER NOT NULL,
    role TEXT NOT NULL,
    content TEXT,
    correction TEXT,
    translation TEXT,
    suggestion TEXT,
    status TEXT NOT NULL,
    server_id TEXT,
    reply_to TEXT,
    error TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS credit_transactions (
    turn_id TEXT PRIMARY KEY,
    cost INTEGER NOT NULL,
    balance INTEGER NOT NULL,
    outcome TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""

MESSAGE_COLUMNS = (
    "id, conversation_id, role, content, correction, translation, suggestion, "
    "status, server_id, reply_to, error, created_at"
)


class SQLiteStore:
    def __init__(self, path: str) -> None:
        self._path = path
        self._db: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Return the database connection, raising if not initialized."""
        if self._db is None:
            raise RuntimeError("SQLiteStore not initialized, call initialize() first")
        return self._db

    async def initialize(self) -> None:
        self._db = await aiosqlite.connect(self._path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(SCHEMA_SQL)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()

    # --- Conversations ---

    async def save_conversation(self, conversation: Conversation) -> None:
        await self.db.execute(
            """INSERT INTO conversations (id, title, remote_id, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                 title = excluded.title,
                 remote_id = excluded.remote_id,
                 updated_at = excluded.updated_at""",
            (
                conversation.id,
                conversation.title,
                conversation.remote_id,
                conversation.created_at,
                conversation.updated_at,
            ),
        )
        await self.db.commit()

    async def list_conversations(self) -> list[dict]:
        cursor = await self.db.execute(
            """SELECT c.id, c.title, c.remote_id, c.created_at, c.updated_at,
                      (SELECT m.content FROM messages m
                        WHERE m.conversation_id = c.id AND m.content IS NOT NULL
                        ORDER BY m.seq DESC LIMIT 1) AS last_message
               FROM conversations c ORDER BY c.updated_at DESC"""
        )
        rows = await cursor.fetchall()
        conversations = [dict(r) for r in rows]
        for conv in conversations:
            if conv["last_message"] is not None:
                conv["last_message"] = preview(conv["last_message"])
        return conversations

    async def get_conversation(self, conversation_id: str) -> dict | None:
        cursor = await self.db.execute(
            "SELECT id, title, remote_id, created_at, updated_at FROM conversations WHERE id = ?",
            (conversation_id,),
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def load_conversation(self, conversation_id: str) -> Conversation | None:
        row = await self.get_conversation(conversation_id)
        if row is None:
            return None
        messages = [Message(**m) for m in await self.get_messages(conversation_id)]
        return Conversation(
            id=row["id"],
            title=row["title"] or DEFAULT_TITLE,
            remote_id=row["remote_id"],
            messages=messages,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def update_conversation_title(self, conversation_id: str, title: str) -> None:
        await self.db.execute(
            "UPDATE conversations SET title = ?, updated_at = ? WHERE id = ?",
            (title, now_iso(), conversation_id),
        )
        await self.db.commit()

    async def delete_conversation(self, conversation_id: str) -> None:
        await self.db.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
        await self.db.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        await self.db.commit()

    # --- Messages ---

    async def save_message(self, message: Message) -> None:
        """Insert or update a message, keeping its original position."""
        await self.db.execute(
            f"""INSERT INTO messages (seq, {MESSAGE_COLUMNS})
               VALUES (
                 (SELECT COALESCE(MAX(seq), 0) + 1 FROM messages WHERE conversation_id = ?),
                 ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
               )
               ON CONFLICT(id) DO UPDATE SET
                 content = excluded.content,
                 correction = excluded.correction,
                 translation = excluded.translation,
                 suggestion = excluded.suggestion,
                 status = excluded.status,
                 server_id = excluded.server_id,
                 error = excluded.error""",
            (
                message.conversation_id,
                message.id,
                message.conversation_id,
                message.role.value,
                message.content,
                message.correction,
                message.translation,
                message.suggestion,
                message.status.value,
                message.server_id,
                message.reply_to,
                message.error,
                message.created_at,
            ),
        )
        await self.db.commit()

    async def get_messages(self, conversation_id: str) -> list[dict]:
        cursor = await self.db.execute(
            f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE conversation_id = ? ORDER BY seq",
            (conversation_id,),
        )
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def delete_message(self, message_id: str) -> None:
        await self.db.execute("DELETE FROM messages WHERE id = ?", (message_id,))
        await self.db.commit()

    async def fail_interrupted_messages(self) -> int:
        """Mark messages left pending or streaming by a previous run as failed."""
        cursor = await self.db.execute(
            "UPDATE messages SET status = ?, error = ? WHERE status IN (?, ?)",
            (
                MessageStatus.FAILED.value,
                ErrorKind.TRANSPORT_FAILURE.value,
                MessageStatus.PENDING.value,
                MessageStatus.STREAMING.value,
            ),
        )
        await self.db.commit()
        return cursor.rowcount

    # --- Credit transactions ---

    async def record_transaction(self, tx: CreditTransaction) -> None:
        await self.db.execute(
            """INSERT OR IGNORE INTO credit_transactions (turn_id, cost, balance, outcome, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (tx.turn_id, tx.cost, tx.balance, tx.outcome.value, tx.created_at),
        )
        await self.db.commit()

    async def list_transactions(self) -> list[dict]:
        cursor = await self.db.execute(
            "SELECT turn_id, cost, balance, outcome, created_at FROM credit_transactions ORDER BY created_at"
        )
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]
