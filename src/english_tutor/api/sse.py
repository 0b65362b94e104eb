import json

from ..engine.models import MessageSnapshot
from ..engine.outcomes import TurnOutcome


def format_sse_event(event_type: str, data: str) -> dict:
    """Format an SSE event for sse-starlette's EventSourceResponse."""
    return {"event": event_type, "data": data}


def sse_init(data: dict) -> dict:
    return format_sse_event("init", json.dumps(data))


def sse_snapshot(snapshot: MessageSnapshot) -> dict:
    return format_sse_event("snapshot", snapshot.model_dump_json())


def sse_error(error: str) -> dict:
    return format_sse_event("error", error)


def sse_done(data: dict) -> dict:
    return format_sse_event("done", json.dumps(data))


def outcome_payload(outcome: TurnOutcome | None) -> dict:
    if outcome is None:
        return {}
    tx = outcome.transaction
    return {
        "turn_id": outcome.turn_id,
        "message_id": outcome.message.message_id,
        "status": outcome.status.value,
        "error": outcome.error.value if outcome.error else None,
        "warning": outcome.warning.value if outcome.warning else None,
        "transaction": tx.model_dump(mode="json") if tx else None,
    }
