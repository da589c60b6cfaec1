import asyncio

import pytest

from relay.domain.connection.lifecycle_manager import ConnectionLifecycleManager, classify_disconnect
from relay.domain.errors import TransportFatal, TransportRetryable
from relay.domain.models.conversation import ConnectionState
from relay.infrastructure.transport.base import (
    ConnectionUpdateEvent,
    CredentialsUpdateEvent,
    InboundMessageEvent,
)
from relay.infrastructure.transport.credential_store import FileCredentialStore
from relay.infrastructure.transport.message_cache import MessageCache

from conftest import FakeTransport, inbound_raw

CONVERSATION = "15551234567@s.whatsapp.net"


def _manager(transport, tmp_path, **kwargs):
    store = FileCredentialStore(str(tmp_path / "creds.json"))
    return ConnectionLifecycleManager(transport, credential_store=store, **kwargs)


def test_starts_disconnected_and_connects(tmp_path):
    transport = FakeTransport()
    manager = _manager(transport, tmp_path)

    assert manager.state == ConnectionState.DISCONNECTED

    session = asyncio.run(manager.connect())

    assert manager.state == ConnectionState.CONNECTED
    assert session.session_id == "session-1"
    assert transport.connect_calls == [None]


def test_connect_uses_stored_credentials(tmp_path):
    transport = FakeTransport()
    manager = _manager(transport, tmp_path)
    manager.credential_store.save({"me": "15550000000"})

    asyncio.run(manager.connect())

    assert transport.connect_calls == [{"me": "15550000000"}]


def test_retryable_disconnect_reconnects_once_per_signal(tmp_path):
    transport = FakeTransport()
    manager = _manager(transport, tmp_path)

    async def run():
        await manager.connect()
        await transport.emit(ConnectionUpdateEvent(connection="close", status_code=408, reason="timed out"))
        after_first = len(transport.connect_calls)
        await transport.emit(ConnectionUpdateEvent(connection="close", reason="stream errored"))
        return after_first

    after_first = asyncio.run(run())

    assert after_first == 2
    assert len(transport.connect_calls) == 3
    assert manager.reconnect_count == 2
    assert manager.state == ConnectionState.CONNECTED
    assert manager.terminal is False


@pytest.mark.parametrize("status_code", [401, 440])
def test_fatal_disconnect_is_terminal(tmp_path, status_code):
    transport = FakeTransport()
    alerts = []

    async def on_fatal(error):
        alerts.append(error)

    manager = _manager(transport, tmp_path, on_fatal=on_fatal)

    async def run():
        await manager.connect()
        await transport.emit(ConnectionUpdateEvent(connection="close", status_code=status_code))
        # Later signals are ignored once terminal
        await transport.emit(ConnectionUpdateEvent(connection="close", status_code=500))

    asyncio.run(run())

    assert manager.state == ConnectionState.DISCONNECTED
    assert manager.terminal is True
    assert len(transport.connect_calls) == 1
    assert len(alerts) == 1
    assert isinstance(alerts[0], TransportFatal)
    assert alerts[0].status_code == status_code


def test_classify_disconnect():
    assert isinstance(classify_disconnect(ConnectionUpdateEvent(connection="close", status_code=401)), TransportFatal)
    assert isinstance(classify_disconnect(ConnectionUpdateEvent(connection="close", status_code=440)), TransportFatal)
    assert isinstance(classify_disconnect(ConnectionUpdateEvent(connection="close", status_code=515)), TransportRetryable)
    assert isinstance(classify_disconnect(ConnectionUpdateEvent(connection="close")), TransportRetryable)


def test_reconnect_keeps_trying_until_connected(tmp_path):
    transport = FakeTransport()
    manager = _manager(transport, tmp_path)

    async def run():
        await manager.connect()
        transport.connect_failures = [OSError("dns"), OSError("dns"), None]
        await transport.emit(ConnectionUpdateEvent(connection="close", status_code=503))

    asyncio.run(run())

    assert len(transport.connect_calls) == 4
    assert manager.state == ConnectionState.CONNECTED


def test_start_gives_up_after_bounded_attempts(tmp_path):
    transport = FakeTransport()
    transport.connect_failures = [OSError("refused")] * 3
    manager = _manager(transport, tmp_path)

    with pytest.raises(TransportRetryable):
        asyncio.run(manager.start(max_attempts=3, retry_delay=0))

    assert len(transport.connect_calls) == 3
    assert manager.state == ConnectionState.DISCONNECTED


def test_start_succeeds_after_a_failed_attempt(tmp_path):
    transport = FakeTransport()
    transport.connect_failures = [OSError("refused"), None]
    manager = _manager(transport, tmp_path)

    asyncio.run(manager.start(max_attempts=3, retry_delay=0))

    assert manager.state == ConnectionState.CONNECTED
    assert len(transport.connect_calls) == 2


def test_credentials_update_is_persisted_without_state_change(tmp_path):
    transport = FakeTransport()
    manager = _manager(transport, tmp_path)

    async def run():
        await manager.connect()
        await transport.emit(CredentialsUpdateEvent(credentials={"noise_key": "abc"}))

    asyncio.run(run())

    assert manager.credential_store.load() == {"noise_key": "abc"}
    assert manager.state == ConnectionState.CONNECTED


def test_inbound_text_is_cached_and_routed(tmp_path):
    transport = FakeTransport()
    cache = MessageCache()
    routed = []

    async def on_message(conversation_id, text, message_id):
        routed.append((conversation_id, text, message_id))

    manager = _manager(transport, tmp_path, cache=cache, on_message=on_message)

    async def run():
        await manager.connect()
        await transport.emit(InboundMessageEvent(raw=inbound_raw(CONVERSATION, "hola", message_id="abc")))
        await transport.emit(InboundMessageEvent(raw=inbound_raw(CONVERSATION, "eco", from_me=True)))
        await transport.emit(InboundMessageEvent(raw=inbound_raw(CONVERSATION, None, message_id="img")))
        await manager.wait_idle()
        return await cache.load_messages(CONVERSATION, 10)

    cached = asyncio.run(run())

    assert routed == [(CONVERSATION, "hola", "abc")]
    assert len(cached) == 3


def test_extended_text_is_routed(tmp_path):
    transport = FakeTransport()
    routed = []

    async def on_message(conversation_id, text, message_id):
        routed.append(text)

    manager = _manager(transport, tmp_path, on_message=on_message)
    raw = inbound_raw(CONVERSATION, None)
    raw["message"] = {"extended_text_message": {"text": "mira este enlace https://example.com"}}

    async def run():
        await transport.emit(InboundMessageEvent(raw=raw))
        await manager.wait_idle()

    asyncio.run(run())

    assert routed == ["mira este enlace https://example.com"]


def test_routing_failure_is_contained(tmp_path):
    transport = FakeTransport()

    async def on_message(conversation_id, text, message_id):
        raise RuntimeError("router exploded")

    manager = _manager(transport, tmp_path, on_message=on_message)

    async def run():
        await transport.emit(InboundMessageEvent(raw=inbound_raw(CONVERSATION, "hola")))
        await manager.wait_idle()

    asyncio.run(run())


def test_close_is_terminal(tmp_path):
    transport = FakeTransport()
    manager = _manager(transport, tmp_path)

    async def run():
        await manager.connect()
        await manager.close()
        await transport.emit(ConnectionUpdateEvent(connection="close", status_code=500))

    asyncio.run(run())

    assert transport.closed is True
    assert manager.state == ConnectionState.DISCONNECTED
    assert len(transport.connect_calls) == 1


def test_corrupt_credentials_do_not_stop_reconnect(tmp_path):
    transport = FakeTransport()
    manager = _manager(transport, tmp_path)

    async def run():
        await manager.connect()
        (tmp_path / "creds.json").write_text("{half written", encoding="utf-8")
        await transport.emit(ConnectionUpdateEvent(connection="close", status_code=503))

    asyncio.run(run())

    assert manager.state == ConnectionState.CONNECTED
    assert transport.connect_calls == [None, None]


def test_overlapping_close_signals_run_one_reconnect_loop(tmp_path):
    class GatedTransport(FakeTransport):
        def __init__(self):
            super().__init__()
            self.gate = None

        async def connect(self, credentials):
            if self.gate is not None:
                await self.gate.wait()
            return await super().connect(credentials)

    transport = GatedTransport()
    manager = _manager(transport, tmp_path)

    async def run():
        await manager.connect()
        transport.gate = asyncio.Event()
        first = asyncio.create_task(transport.emit(ConnectionUpdateEvent(connection="close", status_code=503)))
        await asyncio.sleep(0)
        await transport.emit(ConnectionUpdateEvent(connection="close", status_code=503))
        transport.gate.set()
        await first

    asyncio.run(run())

    assert len(transport.connect_calls) == 2
    assert manager.reconnect_count == 1
    assert manager.state == ConnectionState.CONNECTED
