from enum import StrEnum


class ErrorKind(StrEnum):
    """Outcome error values returned by the conversation engine."""

    INSUFFICIENT_CREDITS = "insufficient_credits"
    SESSION_BUSY = "session_busy"
    AUTH_EXPIRED = "auth_expired"
    TRANSPORT_FAILURE = "transport_failure"
    PROTOCOL_ERROR = "protocol_error"
    SERVER_ERROR = "server_error"
    SETTLEMENT_FAILED = "settlement_failed"
    EMPTY_INPUT = "empty_input"
    NOTHING_TO_CANCEL = "nothing_to_cancel"
    NOTHING_TO_RETRY = "nothing_to_retry"
    MESSAGE_NOT_FOUND = "message_not_found"


class TutorError(Exception):
    """Base class for failures raised by external collaborators."""

    kind: ErrorKind = ErrorKind.TRANSPORT_FAILURE


class TransportError(TutorError):
    """Network reset, timeout or unexpected HTTP status from the backend."""

    kind = ErrorKind.TRANSPORT_FAILURE


class AuthExpiredError(TutorError):
    """The bearer token was rejected; the caller must re-authenticate."""

    kind = ErrorKind.AUTH_EXPIRED


class SettlementFailedError(TutorError):
    """The credit ledger could not record a completed turn."""

    kind = ErrorKind.SETTLEMENT_FAILED
