"""
Transport client boundary.

The messaging protocol itself (encryption, multi-device sync, framing) lives
in a concrete ``TransportClient`` subclass supplied by the deployment. The
relay only talks to this interface and to the events it emits.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Literal, Optional, Union
from pydantic import BaseModel, Field
import importlib


# Disconnect status codes that must not be retried
LOGGED_OUT = 401
CONNECTION_REPLACED = 440

FATAL_STATUS_CODES = frozenset({LOGGED_OUT, CONNECTION_REPLACED})


class TransportSession(BaseModel):
    """Handle returned by a successful connect"""
    session_id: str
    user_id: Optional[str] = None


class InboundMessageEvent(BaseModel):
    """A message received from a user.

    ``raw`` is the cache-shaped message dict:
    ``{"key": {"remote_jid", "id", "from_me"}, "message": {...}, "message_timestamp"}``
    """
    kind: Literal["inbound_message"] = "inbound_message"
    raw: Dict[str, Any]

    @property
    def remote_jid(self) -> str:
        return self.raw.get("key", {}).get("remote_jid", "")

    @property
    def from_me(self) -> bool:
        return bool(self.raw.get("key", {}).get("from_me"))

    @property
    def text(self) -> Optional[str]:
        """Plain or extended text body, if this is a text message"""
        body = self.raw.get("message") or {}
        extended = body.get("extended_text_message") or {}
        return extended.get("text") or body.get("conversation")


class ConnectionUpdateEvent(BaseModel):
    """Connection state reported by the transport"""
    kind: Literal["connection_update"] = "connection_update"
    connection: Literal["connecting", "open", "close"]
    status_code: Optional[int] = None
    reason: Optional[str] = None


class CredentialsUpdateEvent(BaseModel):
    """Session credentials changed and must be persisted"""
    kind: Literal["credentials_update"] = "credentials_update"
    credentials: Dict[str, Any] = Field(default_factory=dict)


TransportEvent = Union[InboundMessageEvent, ConnectionUpdateEvent, CredentialsUpdateEvent]
TransportListener = Callable[[TransportEvent], Awaitable[None]]


class TransportClient(ABC):
    """Abstract one-to-one messaging transport"""

    def __init__(self):
        self._listener: Optional[TransportListener] = None

    def subscribe(self, listener: TransportListener) -> None:
        """Register the single consumer of transport events"""
        self._listener = listener

    async def emit(self, event: TransportEvent) -> None:
        """Deliver an event to the subscribed listener"""
        if self._listener is not None:
            await self._listener(event)

    @abstractmethod
    async def connect(self, credentials: Optional[Dict[str, Any]]) -> TransportSession:
        """Open a new session; provisions fresh credentials when none are given"""

    @abstractmethod
    async def send_message(self, address: str, text: str) -> Optional[str]:
        """Send a text message and return the transport message id"""

    @abstractmethod
    async def send_presence(self, state: str, address: str) -> None:
        """Signal presence ("composing", "available") to a participant"""

    @abstractmethod
    async def mark_read(self, address: str, message_id: str) -> None:
        """Mark a message as read"""

    async def close(self) -> None:
        """Close the current session"""
        return None


def load_transport_client(path: str) -> TransportClient:
    """Instantiate a transport client from a "module:ClassName" path"""

    module_name, _, class_name = path.partition(":")
    if not module_name or not class_name:
        raise ValueError(f"Invalid transport client path '{path}', expected 'module:ClassName'")

    module = importlib.import_module(module_name)
    client_cls = getattr(module, class_name)
    client = client_cls()
    if not isinstance(client, TransportClient):
        raise TypeError(f"{path} is not a TransportClient")
    return client
