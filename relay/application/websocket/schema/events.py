from typing import Dict, Any, Optional, List, Literal
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from datetime import datetime
from enum import Enum

from relay.domain.models.conversation import Message


class EventType(str, Enum):
    """Control-plane event types"""
    # Emitted to agents
    CONNECTION = "connection"
    CONVERSATION_HISTORY = "conversation_history"
    CONVERSATION_TAKEN = "conversation_taken"
    CONVERSATION_CLOSED = "conversation_closed"
    USER_MESSAGE = "user_message"
    NEW_CONVERSATION = "new_conversation"
    MESSAGE_SENT_CONFIRMATION = "message_sent_confirmation"
    ERROR = "error"
    # Received from agents
    TAKE_CONVERSATION = "take_conversation"
    AGENT_MESSAGE = "agent_message"
    CLOSE_CONVERSATION = "close_conversation"
    AGENT_TYPING_STATUS = "agent_typing_status"


class ErrorCode(str, Enum):
    CONVERSATION_ALREADY_ASSIGNED = "conversation_already_assigned"
    CLAIM_FAILED = "claim_failed"
    INVALID_EVENT = "invalid_event"
    TRANSPORT_FATAL = "transport_fatal"


class BaseEvent(BaseModel):
    """Base event model for all control-plane frames.

    Serialized with camelCase keys; both spellings are accepted on input.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: EventType
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    session_id: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ConnectionEvent(BaseEvent):
    """Sent once when an agent connects; carries the agent's connection id"""
    type: Literal[EventType.CONNECTION] = EventType.CONNECTION
    status: Literal["connected", "disconnected", "reconnecting"]


class ConversationHistoryEvent(BaseEvent):
    type: Literal[EventType.CONVERSATION_HISTORY] = EventType.CONVERSATION_HISTORY
    conversation_id: str
    messages: List[Message] = Field(default_factory=list)


class ConversationTakenEvent(BaseEvent):
    type: Literal[EventType.CONVERSATION_TAKEN] = EventType.CONVERSATION_TAKEN
    conversation_id: str
    agent_id: str


class ConversationClosedEvent(BaseEvent):
    type: Literal[EventType.CONVERSATION_CLOSED] = EventType.CONVERSATION_CLOSED
    conversation_id: str


class UserMessageEvent(BaseEvent):
    """Inbound user text forwarded to the assigned agent"""
    type: Literal[EventType.USER_MESSAGE] = EventType.USER_MESSAGE
    conversation_id: str
    message: str


class NewConversationEvent(BaseEvent):
    """A user asked for a human; broadcast to every agent"""
    type: Literal[EventType.NEW_CONVERSATION] = EventType.NEW_CONVERSATION
    conversation_id: str


class MessageSentConfirmationEvent(BaseEvent):
    type: Literal[EventType.MESSAGE_SENT_CONFIRMATION] = EventType.MESSAGE_SENT_CONFIRMATION
    success: bool
    conversation_id: str
    message: Optional[str] = None
    error: Optional[str] = None


class ErrorEvent(BaseEvent):
    """Error event"""
    type: Literal[EventType.ERROR] = EventType.ERROR
    payload: Dict[str, Any]
    error_code: Optional[str] = None


class TakeConversationRequest(BaseEvent):
    type: Literal[EventType.TAKE_CONVERSATION] = EventType.TAKE_CONVERSATION
    conversation_id: str


class AgentMessageRequest(BaseEvent):
    type: Literal[EventType.AGENT_MESSAGE] = EventType.AGENT_MESSAGE
    conversation_id: str
    message: str


class CloseConversationRequest(BaseEvent):
    type: Literal[EventType.CLOSE_CONVERSATION] = EventType.CLOSE_CONVERSATION
    conversation_id: str


class AgentTypingStatusRequest(BaseEvent):
    type: Literal[EventType.AGENT_TYPING_STATUS] = EventType.AGENT_TYPING_STATUS
    conversation_id: str
    is_typing: bool = False
