from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from ..config import DEFAULT_TITLE


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def preview(text: str, limit: int = 50) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[:limit] + "..."


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(StrEnum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageStatus.COMPLETE, MessageStatus.FAILED, MessageStatus.CANCELLED)


class Message(BaseModel):
    """One chat message.

    ``content`` holds the learner's input for user messages and the answer
    text for assistant messages. Correction, translation and suggestion stay
    ``None`` until the stream delivers them, so "no correction needed" can be
    told apart from "not received yet".
    """

    id: str
    conversation_id: str
    role: Role
    content: str | None = None
    correction: str | None = None
    translation: str | None = None
    suggestion: str | None = None
    status: MessageStatus = MessageStatus.PENDING
    created_at: str = Field(default_factory=now_iso)
    server_id: str | None = None
    reply_to: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def content_fields(self) -> dict[str, str | None]:
        return {
            "content": self.content,
            "correction": self.correction,
            "translation": self.translation,
            "suggestion": self.suggestion,
        }


class MessageSnapshot(BaseModel):
    """Full replacement state of one message, published to the presentation sink."""

    model_config = ConfigDict(frozen=True)

    conversation_id: str
    message_id: str
    role: Role
    status: MessageStatus
    content: str | None = None
    correction: str | None = None
    translation: str | None = None
    suggestion: str | None = None
    server_id: str | None = None
    error: str | None = None

    @classmethod
    def of(cls, message: Message) -> "MessageSnapshot":
        return cls(
            conversation_id=message.conversation_id,
            message_id=message.id,
            role=message.role,
            status=message.status,
            server_id=message.server_id,
            error=message.error,
            **message.content_fields(),
        )


class Conversation(BaseModel):
    id: str
    title: str = DEFAULT_TITLE
    remote_id: str | None = None
    messages: list[Message] = Field(default_factory=list)
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)

    def find(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def touch(self) -> None:
        self.updated_at = now_iso()

    @property
    def last_message_preview(self) -> str:
        for message in reversed(self.messages):
            if message.content:
                return preview(message.content)
        return ""


class CreditOutcome(StrEnum):
    APPLIED = "applied"
    REJECTED = "rejected-insufficient-funds"


class CreditTransaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    turn_id: str
    cost: int
    balance: int
    outcome: CreditOutcome
    created_at: str = Field(default_factory=now_iso)
