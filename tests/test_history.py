import asyncio

from relay.domain.conversation.history import (
    NO_CONTENT,
    UNSUPPORTED_CONTENT,
    HistoryStore,
    extract_content,
)
from relay.domain.models.conversation import Sender
from relay.infrastructure.transport.base import InboundMessageEvent
from relay.infrastructure.transport.message_cache import MessageCache

from conftest import FakeTransport, inbound_raw

CONVERSATION = "15551234567@s.whatsapp.net"


def _seed(cache, count):
    async def run():
        for i in range(count):
            await cache.record(inbound_raw(CONVERSATION, f"mensaje {i}", message_id=f"m{i}", timestamp=1700000000 + i))
    asyncio.run(run())


def test_load_returns_most_recent_oldest_first_and_marks_read():
    cache = MessageCache()
    transport = FakeTransport()
    _seed(cache, 5)

    messages = asyncio.run(HistoryStore(cache, transport).load("+1 555 123 4567", limit=3))

    assert [m.content for m in messages] == ["mensaje 2", "mensaje 3", "mensaje 4"]
    assert [m.id for m in messages] == ["m2", "m3", "m4"]
    assert all(m.sender == Sender.USER for m in messages)
    assert transport.read == [(CONVERSATION, "m4")]


def test_outbound_entries_map_to_automated_and_agent():
    cache = MessageCache()
    transport = FakeTransport()

    async def run():
        bot = inbound_raw(CONVERSATION, "respuesta automática", message_id="b1", from_me=True)
        agent = inbound_raw(CONVERSATION, "hola, soy Ana", message_id="a1", from_me=True)
        agent["sender"] = "agent"
        await cache.record(bot)
        await cache.record(agent)
        return await HistoryStore(cache, transport).load(CONVERSATION)

    messages = asyncio.run(run())

    assert [m.sender for m in messages] == [Sender.AUTOMATED, Sender.AGENT]


def test_empty_history_does_not_mark_read():
    transport = FakeTransport()

    messages = asyncio.run(HistoryStore(MessageCache(), transport).load(CONVERSATION))

    assert messages == []
    assert transport.read == []


def test_failure_returns_empty_history():
    cache = MessageCache()
    transport = FakeTransport()
    transport.read_error = RuntimeError("socket closed")
    _seed(cache, 2)

    assert asyncio.run(HistoryStore(cache, transport).load(CONVERSATION)) == []


def test_extract_content_fallbacks():
    assert extract_content({"message": None}) == NO_CONTENT
    assert extract_content({"message": {"image_message": {"url": "x"}}}) == UNSUPPORTED_CONTENT
    assert extract_content({"message": {"extended_text_message": {"text": "largo"}}}) == "largo"
    assert extract_content(
        {"message": {"buttons_response_message": {"selected_display_text": "Sí"}}}
    ) == "Sí"
    assert extract_content(
        {"message": {"template_button_reply_message": {"selected_display_text": "Ver menú"}}}
    ) == "Ver menú"


def test_missing_id_and_timestamp_are_filled_in():
    cache = MessageCache()

    async def run():
        await cache.record({"key": {"remote_jid": CONVERSATION}, "message": {"conversation": "sin id"}})
        return await HistoryStore(cache, FakeTransport()).load(CONVERSATION)

    messages = asyncio.run(run())

    assert messages[0].id
    assert messages[0].timestamp > 0
    assert messages[0].content == "sin id"


def test_transport_echo_of_our_send_is_not_duplicated(relay, transport):
    async def run():
        result = await relay.delivery.send(CONVERSATION, "hola, soy Ana", sender=Sender.AGENT)
        echo = inbound_raw(CONVERSATION, "hola, soy Ana", message_id=result.message.id, from_me=True)
        await transport.emit(InboundMessageEvent(raw=echo))
        await relay.lifecycle.wait_idle()
        return await relay.history.load(CONVERSATION)

    messages = asyncio.run(run())

    assert [(m.id, m.content) for m in messages] == [("msg-1", "hola, soy Ana")]
    assert messages[0].sender == Sender.AGENT
