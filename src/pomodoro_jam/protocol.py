"""Wire protocol for jam sessions.

Every frame exchanged with the relay is a JSON object tagged by ``type``.
Field names are camelCase on the wire and snake_case in Python.
"""

import time
from enum import Enum
from typing import Annotated, Any, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

logger = structlog.get_logger()


class MessageType(str, Enum):
    """Message tags understood by the relay."""

    JOIN = "join"
    LEAVE = "leave"
    STATE_SYNC = "state-sync"
    CONTROL = "control"
    PARTICIPANT_UPDATE = "participant-update"
    TRANSFER_HOST = "transfer-host"
    ERROR = "error"


class ControlAction(str, Enum):
    """Timer commands a host can relay to participants."""

    START = "start"
    PAUSE = "pause"
    RESET = "reset"
    SKIP = "skip"


class ConnectionState(str, Enum):
    """Lifecycle of the relay connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JamParticipant(_WireModel):
    """A client connected to the session, as reported by the relay."""

    id: str
    name: str = ""
    is_host: bool = False


class JamSession(_WireModel):
    """Local mirror of the relay's session."""

    code: str
    host_id: str | None = None
    participants: list[JamParticipant] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)


class _BaseMessage(_WireModel):
    sender_id: str
    timestamp: int = Field(default_factory=now_ms)


class JoinMessage(_BaseMessage):
    type: Literal["join"] = "join"
    name: str
    is_host: bool


class LeaveMessage(_BaseMessage):
    type: Literal["leave"] = "leave"


class StateSyncMessage(_BaseMessage):
    type: Literal["state-sync"] = "state-sync"
    state: dict[str, Any]


class ControlMessage(_BaseMessage):
    type: Literal["control"] = "control"
    action: ControlAction


class ParticipantUpdateMessage(_BaseMessage):
    type: Literal["participant-update"] = "participant-update"
    participants: list[JamParticipant]


class TransferHostMessage(_BaseMessage):
    type: Literal["transfer-host"] = "transfer-host"
    new_host_id: str


class ErrorMessage(_BaseMessage):
    type: Literal["error"] = "error"
    message: str


JamMessage = Annotated[
    JoinMessage
    | LeaveMessage
    | StateSyncMessage
    | ControlMessage
    | ParticipantUpdateMessage
    | TransferHostMessage
    | ErrorMessage,
    Field(discriminator="type"),
]

_message_adapter: TypeAdapter[JamMessage] = TypeAdapter(JamMessage)


def encode_message(message: _BaseMessage) -> str:
    """Serialize a message to its JSON wire form."""
    return message.model_dump_json(by_alias=True)


def parse_message(raw: str | bytes) -> JamMessage | None:
    """Parse a wire frame.

    Returns None for anything that is not a well-formed message: invalid JSON,
    an unknown ``type`` tag or fields of the wrong shape.
    """
    try:
        return _message_adapter.validate_json(raw)
    except ValidationError as e:
        logger.debug("Dropping malformed frame", errors=e.error_count())
        return None
