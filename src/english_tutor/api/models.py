from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    conversation_id: str | None = None
    message: str


class RenameRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)


class ConversationOut(BaseModel):
    id: str
    title: str
    remote_id: str | None = None
    created_at: str
    updated_at: str
    last_message: str | None = None


class CancelOut(BaseModel):
    applied: bool
    error: str | None = None
    status: str | None = None


class BalanceOut(BaseModel):
    credits: int


class TransactionOut(BaseModel):
    turn_id: str
    cost: int
    balance: int
    outcome: str
    created_at: str
