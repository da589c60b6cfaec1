from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
import time
from enum import Enum
import re
import uuid


ADDRESS_SUFFIX = "@s.whatsapp.net"

_NON_DIGITS = re.compile(r"\D")


def normalize_address(raw: str) -> str:
    """Canonical conversation id: digits of the phone number plus the domain suffix"""

    if raw.endswith(ADDRESS_SUFFIX):
        raw = raw[: -len(ADDRESS_SUFFIX)]
    return f"{_NON_DIGITS.sub('', raw)}{ADDRESS_SUFFIX}"


class Sender(str, Enum):
    """Who authored a message"""
    USER = "user"
    AUTOMATED = "automated"
    AGENT = "agent"


class ConnectionState(str, Enum):
    """Transport connection states"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


class Message(BaseModel):
    """A single message in a conversation; never mutated after creation"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    sender: Sender
    timestamp: int = Field(default_factory=lambda: int(time.time()))
    content: str


class Conversation(BaseModel):
    """Snapshot of a conversation's ownership"""
    id: str
    assigned_agent: Optional[str] = None
    claim_in_flight: bool = False
