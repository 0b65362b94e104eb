from dataclasses import dataclass

from ..errors import ErrorKind
from .models import CreditTransaction, MessageSnapshot, MessageStatus


@dataclass(frozen=True)
class SubmitResult:
    """Synchronous answer to submit_turn()/retry()."""

    ok: bool
    error: ErrorKind | None = None
    turn_id: str | None = None
    user_message_id: str | None = None
    assistant_message_id: str | None = None

    @classmethod
    def rejected(cls, error: ErrorKind) -> "SubmitResult":
        return cls(ok=False, error=error)


@dataclass(frozen=True)
class CancelResult:
    applied: bool
    error: ErrorKind | None = None
    status: MessageStatus | None = None


@dataclass(frozen=True)
class TurnOutcome:
    """Final result of one turn once the session is back to idle.

    ``warning`` is set when the message completed but a side effect failed,
    e.g. ``SETTLEMENT_FAILED``. It never changes ``message.status``.
    """

    turn_id: str
    message: MessageSnapshot
    error: ErrorKind | None = None
    warning: ErrorKind | None = None
    transaction: CreditTransaction | None = None

    @property
    def status(self) -> MessageStatus:
        return self.message.status
