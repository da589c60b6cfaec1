import pathlib
import sys
from typing import Any, Dict, List, Optional

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

from relay.application.container import build_relay
from relay.infrastructure.config.settings import Settings
from relay.infrastructure.transport.base import TransportClient, TransportSession


class FakeTransport(TransportClient):
    """In-memory transport that records every call.

    ``send_failures`` / ``connect_failures`` are consumed one per call; a
    non-None entry is raised instead of succeeding.
    """

    def __init__(self):
        super().__init__()
        self.connect_calls: List[Optional[Dict[str, Any]]] = []
        self.sent: List[tuple] = []
        self.presence: List[tuple] = []
        self.read: List[tuple] = []
        self.closed = False
        self.send_failures: List[Optional[Exception]] = []
        self.connect_failures: List[Optional[Exception]] = []
        self.presence_error: Optional[Exception] = None
        self.read_error: Optional[Exception] = None

    async def connect(self, credentials):
        self.connect_calls.append(credentials)
        if self.connect_failures:
            error = self.connect_failures.pop(0)
            if error is not None:
                raise error
        return TransportSession(session_id=f"session-{len(self.connect_calls)}")

    async def send_message(self, address, text):
        self.sent.append((address, text))
        if self.send_failures:
            error = self.send_failures.pop(0)
            if error is not None:
                raise error
        return f"msg-{len(self.sent)}"

    async def send_presence(self, state, address):
        self.presence.append((state, address))
        if self.presence_error is not None:
            raise self.presence_error

    async def mark_read(self, address, message_id):
        self.read.append((address, message_id))
        if self.read_error is not None:
            raise self.read_error

    async def close(self):
        self.closed = True


class FakeResponder:
    def __init__(self, reply: str = "Hola, ¿en qué puedo ayudarte?", error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.calls: List[str] = []

    async def complete(self, text: str) -> str:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return self.reply


class FakeControlPlane:
    """Records events instead of writing to WebSockets"""

    def __init__(self):
        self.sent: List[tuple] = []
        self.broadcasts: List[tuple] = []
        self.connected = True

    async def send_event(self, agent_id, event):
        self.sent.append((agent_id, event))
        return self.connected

    async def broadcast(self, event, exclude=None):
        self.broadcasts.append((event, exclude))

    async def send_error(self, agent_id, error_message, error_code=None, details=None):
        from relay.application.websocket.schema.events import ErrorEvent

        payload = {"message": error_message}
        if details:
            payload["details"] = details
        self.sent.append((agent_id, ErrorEvent(payload=payload, error_code=error_code)))

    async def broadcast_error(self, error_message, error_code=None, details=None):
        from relay.application.websocket.schema.events import ErrorEvent

        self.broadcasts.append((ErrorEvent(payload={"message": error_message}, error_code=error_code), None))

    def events_for(self, agent_id, event_type):
        return [event for target, event in self.sent if target == agent_id and event.type == event_type]


def inbound_raw(address: str, text: Optional[str], message_id: str = "in-1", from_me: bool = False, timestamp: int = 1700000000):
    return {
        "key": {"remote_jid": address, "id": message_id, "from_me": from_me},
        "message": {"conversation": text} if text is not None else None,
        "message_timestamp": timestamp,
    }


@pytest.fixture
def settings(tmp_path):
    return Settings(
        auth_state_path=str(tmp_path / "auth" / "creds.json"),
        message_store_path=None,
        delivery_retry_delay_seconds=0,
        startup_retry_delay_seconds=0,
        log_format="console",
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def responder():
    return FakeResponder()


@pytest.fixture
def control_plane():
    return FakeControlPlane()


@pytest.fixture
def relay(settings, transport, responder, control_plane):
    return build_relay(settings, transport=transport, responder=responder, connection_manager=control_plane)
