from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class MessageType(str, Enum):
    SYNC_STATE = "SYNC_STATE"
    SYNC_NOTES = "SYNC_NOTES"
    SYNC_CHAT = "SYNC_CHAT"
    SYNC_ACCUSATION = "SYNC_ACCUSATION"


class ChatMessage(BaseModel):
    role: Literal["user", "model"]
    text: str
    sender: Optional[str] = None


class ChatAppend(BaseModel):
    suspectId: str
    message: ChatMessage


class AccusationResult(BaseModel):
    isCorrect: bool
    feedback: str
    score: int


class SyncStateMessage(BaseModel):
    type: Literal["SYNC_STATE"]
    payload: Dict[str, Any]


class SyncNotesMessage(BaseModel):
    type: Literal["SYNC_NOTES"]
    payload: str


class SyncChatMessage(BaseModel):
    type: Literal["SYNC_CHAT"]
    payload: ChatAppend


class SyncAccusationMessage(BaseModel):
    type: Literal["SYNC_ACCUSATION"]
    payload: AccusationResult


# The relay never validates envelopes; this is for consumers that interpret payloads.
RelayMessage = Annotated[
    Union[SyncStateMessage, SyncNotesMessage, SyncChatMessage, SyncAccusationMessage],
    Field(discriminator="type"),
]

relay_message_adapter = TypeAdapter(RelayMessage)


def parse_relay_message(raw: Union[str, bytes]) -> RelayMessage:
    return relay_message_adapter.validate_json(raw)


def is_full_state_sync(envelope: Any) -> bool:
    """True for an envelope whose routing tag marks a full room-state sync."""
    return isinstance(envelope, dict) and envelope.get("type") == MessageType.SYNC_STATE.value and "payload" in envelope
