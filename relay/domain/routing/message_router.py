from typing import Optional
from enum import Enum
import time
import structlog

from relay.application.websocket.connection_manager import ConnectionManager
from relay.application.websocket.schema.events import NewConversationEvent, UserMessageEvent
from relay.domain.conversation.registry import ConversationRegistry
from relay.domain.delivery.delivery_engine import DeliveryEngine
from relay.domain.errors import DeliveryFailed
from relay.domain.models.conversation import normalize_address
from relay.infrastructure.observability.logging import relay_logger, metrics
from relay.infrastructure.responder.llm_responder import LLMResponder
from relay.infrastructure.transport.base import TransportClient

logger = structlog.get_logger(__name__)

DEFAULT_HANDOFF_KEYWORD = "humano"
FALLBACK_REPLY = "Sorry, I am having trouble processing your request. Please try again later."


class RouteDecision(str, Enum):
    """Branch taken for an inbound message"""
    FORWARDED_TO_AGENT = "forwarded_to_agent"
    HANDOFF_REQUESTED = "handoff_requested"
    AUTOMATED_REPLY = "automated_reply"
    FALLBACK_REPLY = "fallback_reply"


class MessageRouter:
    """Decides who answers each inbound message.

    Precedence: an assigned agent always wins, then the handoff keyword,
    then the automated responder.
    """

    def __init__(
        self,
        registry: ConversationRegistry,
        delivery: DeliveryEngine,
        responder: LLMResponder,
        control_plane: ConnectionManager,
        transport: TransportClient,
        handoff_keyword: str = DEFAULT_HANDOFF_KEYWORD
    ):
        self.registry = registry
        self.delivery = delivery
        self.responder = responder
        self.control_plane = control_plane
        self.transport = transport
        self.handoff_keyword = handoff_keyword.lower()

    async def handle_inbound(self, conversation_id: str, text: str, message_id: Optional[str] = None) -> RouteDecision:
        """Route one inbound message; never raises for the automated branch"""

        conversation_id = normalize_address(conversation_id)
        agent_id = self.registry.lookup(conversation_id)

        if agent_id is not None:
            decision = await self._forward_to_agent(conversation_id, agent_id, text, message_id)
        elif self.handoff_keyword in text.lower():
            decision = await self._request_handoff(conversation_id)
        else:
            decision = await self._reply_automatically(conversation_id, text)

        relay_logger.log_route_decision(conversation_id, decision.value, agent_id=agent_id)
        metrics.increment_counter(f"route.{decision.value}")
        return decision

    async def _forward_to_agent(
        self, conversation_id: str, agent_id: str, text: str, message_id: Optional[str]
    ) -> RouteDecision:
        delivered = await self.control_plane.send_event(
            agent_id,
            UserMessageEvent(conversation_id=conversation_id, message=text)
        )
        if not delivered:
            logger.warning("Assigned agent is not connected", conversation_id=conversation_id, agent_id=agent_id)

        try:
            await self.transport.mark_read(conversation_id, message_id or str(int(time.time() * 1000)))
        except Exception as e:
            logger.error("Failed to mark message read", conversation_id=conversation_id, error=str(e))

        return RouteDecision.FORWARDED_TO_AGENT

    async def _request_handoff(self, conversation_id: str) -> RouteDecision:
        logger.info("User requested a human agent", conversation_id=conversation_id)
        await self.control_plane.broadcast(NewConversationEvent(conversation_id=conversation_id))
        return RouteDecision.HANDOFF_REQUESTED

    async def _reply_automatically(self, conversation_id: str, text: str) -> RouteDecision:
        decision = RouteDecision.AUTOMATED_REPLY
        try:
            reply = await self.responder.complete(text)
        except Exception as e:
            logger.error("Responder failed, sending fallback", conversation_id=conversation_id, error=str(e))
            reply = FALLBACK_REPLY
            decision = RouteDecision.FALLBACK_REPLY

        try:
            await self.delivery.send(conversation_id, reply)
        except DeliveryFailed as e:
            logger.error("Automated reply was not delivered", conversation_id=conversation_id, error=str(e))

        return decision
