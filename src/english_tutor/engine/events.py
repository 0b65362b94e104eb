from dataclasses import dataclass
from enum import StrEnum

from ..errors import ErrorKind


class EventKind(StrEnum):
    TEXT = "text"
    CORRECTION = "correction"
    TRANSLATION = "translation"
    SUGGESTION = "suggestion"
    DONE = "done"
    ERROR = "error"


class ErrorReason(StrEnum):
    MALFORMED = "malformed-event"
    TRANSPORT = "transport"
    SERVER = "server"
    AUTH_EXPIRED = "auth-expired"


TERMINAL_KINDS = frozenset({EventKind.DONE, EventKind.ERROR})

ERROR_KIND_FOR_REASON = {
    ErrorReason.MALFORMED: ErrorKind.PROTOCOL_ERROR,
    ErrorReason.TRANSPORT: ErrorKind.TRANSPORT_FAILURE,
    ErrorReason.SERVER: ErrorKind.SERVER_ERROR,
    ErrorReason.AUTH_EXPIRED: ErrorKind.AUTH_EXPIRED,
}


def error_kind_for(reason: ErrorReason | None) -> ErrorKind:
    if reason is None:
        return ErrorKind.PROTOCOL_ERROR
    return ERROR_KIND_FOR_REASON[reason]


@dataclass(frozen=True)
class StreamEvent:
    """A single protocol event decoded from the response stream.

    Delta events carry ``text``; ``Error`` carries ``reason`` and an optional
    human-readable ``detail``. ``message_id``, ``conversation_id`` and
    ``cost`` are envelope metadata copied from the wire frame when present.
    """

    kind: EventKind
    text: str = ""
    reason: ErrorReason | None = None
    detail: str = ""
    message_id: str | None = None
    conversation_id: str | None = None
    cost: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    @classmethod
    def answer(cls, text: str, **meta) -> "StreamEvent":
        return cls(kind=EventKind.TEXT, text=text, **meta)

    @classmethod
    def correction(cls, text: str, **meta) -> "StreamEvent":
        return cls(kind=EventKind.CORRECTION, text=text, **meta)

    @classmethod
    def translation(cls, text: str, **meta) -> "StreamEvent":
        return cls(kind=EventKind.TRANSLATION, text=text, **meta)

    @classmethod
    def suggestion(cls, text: str, **meta) -> "StreamEvent":
        return cls(kind=EventKind.SUGGESTION, text=text, **meta)

    @classmethod
    def done(cls, **meta) -> "StreamEvent":
        return cls(kind=EventKind.DONE, **meta)

    @classmethod
    def error(cls, reason: ErrorReason, detail: str = "", **meta) -> "StreamEvent":
        return cls(kind=EventKind.ERROR, reason=reason, detail=detail, **meta)
