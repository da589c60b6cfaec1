"""
Builds and owns the relay components for one process.
"""

from dataclasses import dataclass
from typing import Optional
import structlog

from relay.application.websocket.connection_manager import ConnectionManager
from relay.application.websocket.schema.events import ErrorCode
from relay.domain.connection.lifecycle_manager import ConnectionLifecycleManager
from relay.domain.conversation.handoff_coordinator import HandoffCoordinator
from relay.domain.conversation.history import HistoryStore
from relay.domain.conversation.registry import ConversationRegistry
from relay.domain.delivery.delivery_engine import DeliveryEngine
from relay.domain.errors import TransportFatal
from relay.domain.orchestration.agent_desk import AgentDesk
from relay.domain.routing.message_router import MessageRouter
from relay.infrastructure.config.settings import Settings
from relay.infrastructure.responder.llm_responder import LLMResponder, build_chat_model
from relay.infrastructure.transport.base import TransportClient, load_transport_client
from relay.infrastructure.transport.credential_store import FileCredentialStore
from relay.infrastructure.transport.message_cache import MessageCache

logger = structlog.get_logger(__name__)


@dataclass
class Relay:
    settings: Settings
    transport: TransportClient
    cache: MessageCache
    credential_store: FileCredentialStore
    registry: ConversationRegistry
    coordinator: HandoffCoordinator
    connection_manager: ConnectionManager
    delivery: DeliveryEngine
    history: HistoryStore
    router: MessageRouter
    desk: AgentDesk
    lifecycle: ConnectionLifecycleManager


def build_relay(
    settings: Settings,
    transport: Optional[TransportClient] = None,
    responder: Optional[LLMResponder] = None,
    connection_manager: Optional[ConnectionManager] = None
) -> Relay:
    """Wire every component; the transport and responder may be injected"""

    if transport is None:
        if not settings.transport_client:
            raise ValueError("TRANSPORT_CLIENT must name a TransportClient implementation (module:ClassName)")
        transport = load_transport_client(settings.transport_client)

    if responder is None:
        responder = LLMResponder(build_chat_model(settings.openai_api_key, settings.openai_model))

    connection_manager = connection_manager or ConnectionManager()
    cache = MessageCache(settings.message_store_path)
    credential_store = FileCredentialStore(settings.auth_state_path)
    registry = ConversationRegistry()
    coordinator = HandoffCoordinator()

    delivery = DeliveryEngine(
        transport,
        cache=cache,
        max_attempts=settings.delivery_max_attempts,
        retry_delay=settings.delivery_retry_delay_seconds
    )
    history = HistoryStore(cache, transport)
    router = MessageRouter(
        registry,
        delivery,
        responder,
        connection_manager,
        transport,
        handoff_keyword=settings.handoff_keyword
    )
    desk = AgentDesk(
        registry,
        coordinator,
        history,
        delivery,
        connection_manager,
        history_limit=settings.history_limit
    )

    async def on_fatal(error: TransportFatal):
        await connection_manager.broadcast_error(
            "Messaging transport logged out or replaced; restart required",
            error_code=ErrorCode.TRANSPORT_FATAL.value,
            details=str(error)
        )

    lifecycle = ConnectionLifecycleManager(
        transport,
        credential_store=credential_store,
        cache=cache,
        on_message=router.handle_inbound,
        on_fatal=on_fatal
    )

    return Relay(
        settings=settings,
        transport=transport,
        cache=cache,
        credential_store=credential_store,
        registry=registry,
        coordinator=coordinator,
        connection_manager=connection_manager,
        delivery=delivery,
        history=history,
        router=router,
        desk=desk,
        lifecycle=lifecycle,
    )
