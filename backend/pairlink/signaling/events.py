"""Inbound signaling events.

Every frame is a flat JSON object whose ``type`` field selects the event
model. Unknown types and malformed payloads are reported as
:class:`~pairlink.errors.EventValidationError` with codes ``UNKNOWN_EVENT``
and ``INVALID_PAYLOAD`` respectively.
"""
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from pairlink.errors import EventValidationError


class _Event(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class JoinRoom(_Event):
    type: Literal["join-room"]
    roomId: str = Field(..., min_length=1, max_length=128)
    userId: str = Field(..., min_length=1, max_length=128)
    nickname: str = Field(default="", max_length=64)


class TargetedMessage(_Event):
    """Negotiation and file-transfer messages addressed to one peer."""
    type: Literal[
        "signal",
        "file-meta",
        "file-accept",
        "file-decline",
        "file-cancel",
        "file-chunk",
    ]
    to: str = Field(..., min_length=1)
    data: Any = None


class BroadcastMessage(_Event):
    """Messages delivered to every other occupant of the room."""
    type: Literal["chat", "media-state-update"]
    data: Any = None


class Heartbeat(_Event):
    type: Literal["heartbeat"]


class ForceLeave(_Event):
    type: Literal["force-leave"]
    targetUserId: str = Field(..., min_length=1)


class RequestTurnCredentials(_Event):
    type: Literal["request-turn-credentials"]


class ReportTurnUsage(_Event):
    type: Literal["report-turn-usage"]
    bytesUsed: Optional[int] = Field(default=None, ge=0)
    bytes: Optional[int] = Field(default=None, ge=0)
    direction: Literal["upload", "download", "both"] = "both"

    @property
    def nbytes(self) -> int:
        if self.bytesUsed is not None:
            return self.bytesUsed
        return self.bytes or 0


class ReportConnectionState(_Event):
    type: Literal["report-connection-state"]
    state: str = Field(..., min_length=1)
    candidateType: Optional[str] = None


InboundEvent = Annotated[
    Union[
        JoinRoom,
        TargetedMessage,
        BroadcastMessage,
        Heartbeat,
        ForceLeave,
        RequestTurnCredentials,
        ReportTurnUsage,
        ReportConnectionState,
    ],
    Field(discriminator="type"),
]

_adapter = TypeAdapter(InboundEvent)

EVENT_TYPES = frozenset({
    "join-room",
    "signal",
    "file-meta",
    "file-accept",
    "file-decline",
    "file-cancel",
    "file-chunk",
    "chat",
    "media-state-update",
    "heartbeat",
    "force-leave",
    "request-turn-credentials",
    "report-turn-usage",
    "report-connection-state",
})


def parse_event(raw: Any):
    """Validate one inbound frame and return its event model.

    Raises:
        EventValidationError: ``UNKNOWN_EVENT`` if ``type`` is missing or not
            recognised, ``INVALID_PAYLOAD`` if the fields do not validate.
    """
    if not isinstance(raw, dict):
        raise EventValidationError("Event must be a JSON object")

    event_type = raw.get("type")
    if not isinstance(event_type, str) or event_type not in EVENT_TYPES:
        raise EventValidationError(f"Unknown event type: {event_type!r}", code="UNKNOWN_EVENT")

    try:
        return _adapter.validate_python(raw)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"][1:]) or "?" for err in e.errors())
        raise EventValidationError(f"Invalid {event_type} payload: {fields}") from e
