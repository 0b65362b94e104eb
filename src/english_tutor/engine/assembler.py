import logging

from .events import EventKind, StreamEvent, error_kind_for
from .models import Message, MessageSnapshot, MessageStatus

logger = logging.getLogger(__name__)

FIELD_FOR_KIND = {
    EventKind.TEXT: "content",
    EventKind.CORRECTION: "correction",
    EventKind.TRANSLATION: "translation",
    EventKind.SUGGESTION: "suggestion",
}


class MessageAssembler:
    """Folds stream events into one in-flight assistant message.

    The assembler never reads the clock, so feeding the same events into a
    fresh message always produces the same result.
    """

    def __init__(self, message: Message) -> None:
        self._message = message

    @property
    def message(self) -> Message:
        return self._message

    @property
    def finished(self) -> bool:
        return self._message.is_terminal

    def apply(self, event: StreamEvent) -> MessageSnapshot | None:
        """Apply one event. Returns the new snapshot, or None if ignored."""
        msg = self._message
        if msg.is_terminal:
            logger.warning(
                "Ignoring %s event for message %s already %s",
                event.kind,
                msg.id,
                msg.status,
            )
            return None

        if msg.status is MessageStatus.PENDING:
            msg.status = MessageStatus.STREAMING

        if event.message_id and msg.server_id is None:
            msg.server_id = event.message_id

        field = FIELD_FOR_KIND.get(event.kind)
        if field is not None:
            if event.text:
                current = getattr(msg, field)
                setattr(msg, field, (current or "") + event.text)
        elif event.kind is EventKind.DONE:
            msg.status = MessageStatus.COMPLETE
        elif event.kind is EventKind.ERROR:
            msg.status = MessageStatus.FAILED
            msg.error = error_kind_for(event.reason).value

        return MessageSnapshot.of(msg)

    def cancel(self) -> MessageSnapshot | None:
        msg = self._message
        if msg.is_terminal:
            return None
        msg.status = MessageStatus.CANCELLED
        return MessageSnapshot.of(msg)
