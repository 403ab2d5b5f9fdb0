"""
Wire schemas for the realtime protocol.

Every message is a [topic, event, payload] triple. Each event name maps to
one closed pydantic model; payloads that do not fit are rejected at the
boundary instead of travelling further in.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, ValidationError as PydanticValidationError

from cellsync.errors import ValidationError

TOPIC_PREFIX = "session:"


def topic_for(session_id: str) -> str:
    return f"{TOPIC_PREFIX}{session_id}"


def session_id_from_topic(topic: str) -> str:
    if not isinstance(topic, str) or not topic.startswith(TOPIC_PREFIX) or topic == TOPIC_PREFIX:
        raise ValidationError(f"Invalid topic {topic!r}")
    return topic[len(TOPIC_PREFIX):]


class Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


# --------------------------------------------------------------------- #
# Server -> client
# --------------------------------------------------------------------- #

class CellPayload(Payload):
    cell: dict[str, Any]
    index: int


class CellUpdatedPayload(CellPayload):
    changed: list[str] = []


class CellMovedPayload(CellPayload):
    fromIndex: int


class ExecutionStartedPayload(Payload):
    cellId: str


class ExecutionCompletedPayload(Payload):
    cell: dict[str, Any]
    index: int
    result: dict[str, Any]


class ExecutionFailedPayload(ExecutionCompletedPayload):
    error: dict[str, Any]


class DiffAppliedPayload(Payload):
    entry: dict[str, Any]
    changes: list[dict[str, Any]]


class HistoryAppendedPayload(Payload):
    entry: dict[str, Any]
    changes: list[dict[str, Any]] = []


class ContextResetPayload(Payload):
    pass


class InputRequestedPayload(Payload):
    cellId: str
    requestId: str
    prompt: str = ""


class DiagnosticsPayload(Payload):
    cellId: str
    diagnostics: list[dict[str, Any]]


class DepsInstalledPayload(Payload):
    packages: list[str]
    success: bool
    output: str = ""


class SessionClosedPayload(Payload):
    sessionId: str


class CellErrorPayload(Payload):
    type: str
    message: str
    cellId: Optional[str] = None


OUTBOUND = {
    "cell:inserted": CellPayload,
    "cell:updated": CellUpdatedPayload,
    "cell:deleted": CellPayload,
    "cell:moved": CellMovedPayload,
    "execution:started": ExecutionStartedPayload,
    "execution:completed": ExecutionCompletedPayload,
    "execution:failed": ExecutionFailedPayload,
    "diff:applied": DiffAppliedPayload,
    "history:appended": HistoryAppendedPayload,
    "context:reset": ContextResetPayload,
    "cell:input-requested": InputRequestedPayload,
    "cell:diagnostics": DiagnosticsPayload,
    "deps:installed": DepsInstalledPayload,
    "session:closed": SessionClosedPayload,
    "cell:error": CellErrorPayload,
}


# --------------------------------------------------------------------- #
# Client -> server
# --------------------------------------------------------------------- #

class EmptyPayload(Payload):
    pass


class CellRefPayload(Payload):
    cellId: str


class CellCreatePayload(Payload):
    cell: dict[str, Any]
    index: Optional[int] = None


class CellUpdatePayload(Payload):
    cellId: str
    updates: dict[str, Any]


class CellMovePayload(Payload):
    cellId: str
    index: int


class UiTarget(Payload):
    id: str
    value: Any = None


class UiSubmitPayload(Payload):
    target: UiTarget


class DepsInstallPayload(Payload):
    packages: list[str]


INBOUND = {
    "subscribe": EmptyPayload,
    "unsubscribe": EmptyPayload,
    "cell:exec": CellRefPayload,
    "cell:stop": CellRefPayload,
    "cell:create": CellCreatePayload,
    "cell:update": CellUpdatePayload,
    "cell:delete": CellRefPayload,
    "cell:move": CellMovePayload,
    "ui:submit": UiSubmitPayload,
    "deps:install": DepsInstallPayload,
}


def validate_outbound(event: str, payload: dict) -> dict:
    """Check a server payload against its schema and return the wire form."""
    schema = OUTBOUND.get(event)
    if schema is None:
        raise ValueError(f"Unknown outbound event {event!r}")
    return schema.model_validate(payload).model_dump(mode="json")


def validate_inbound(event: str, payload: Any) -> Optional[Payload]:
    """
    Validate a client payload.

    Returns None for unknown events, which callers drop silently.
    Raises ValidationError when a known event carries a bad payload.
    """
    schema = INBOUND.get(event)
    if schema is None:
        return None
    try:
        return schema.model_validate(payload if payload is not None else {})
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid payload for {event}: {e.errors()[0]['msg']}") from e


def parse_message(message: Any) -> tuple[str, str, Any]:
    """Split a raw [topic, event, payload] triple."""
    if not isinstance(message, (list, tuple)) or len(message) != 3:
        raise ValidationError("Messages must be [topic, event, payload] triples")
    topic, event, payload = message
    session_id_from_topic(topic)
    if not isinstance(event, str):
        raise ValidationError("Event name must be a string")
    return topic, event, payload
