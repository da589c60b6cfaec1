"""
Agent-originated operations: claiming, replying to, closing and typing in
conversations. Every failure is reported back to the requesting agent.
"""

from typing import Optional
from pydantic import BaseModel
import structlog

from relay.application.websocket.connection_manager import ConnectionManager
from relay.application.websocket.schema.events import (
    ConversationClosedEvent,
    ConversationHistoryEvent,
    ConversationTakenEvent,
    ErrorCode,
    MessageSentConfirmationEvent,
)
from relay.domain.conversation.handoff_coordinator import HandoffCoordinator
from relay.domain.conversation.history import HistoryStore
from relay.domain.conversation.registry import ConversationRegistry
from relay.domain.delivery.delivery_engine import DeliveryEngine
from relay.domain.errors import DeliveryFailed
from relay.domain.models.conversation import Sender, normalize_address

logger = structlog.get_logger(__name__)

HANDOFF_NOTICE = "Le he informado a un agente humano, dentro de poco te escribirá, hasta luego"
CLAIM_ERROR_MESSAGE = "Error al procesar la solicitud"


class ClaimOutcome(BaseModel):
    """Result of a take_conversation request"""
    conversation_id: str
    agent_id: str
    claimed: bool = False
    dropped: bool = False
    current_agent: Optional[str] = None


class AgentDesk:
    """Handles take / reply / close / typing requests from connected agents"""

    def __init__(
        self,
        registry: ConversationRegistry,
        coordinator: HandoffCoordinator,
        history: HistoryStore,
        delivery: DeliveryEngine,
        control_plane: ConnectionManager,
        history_limit: int = 100
    ):
        self.registry = registry
        self.coordinator = coordinator
        self.history = history
        self.delivery = delivery
        self.control_plane = control_plane
        self.history_limit = history_limit

    async def take_conversation(self, agent_id: str, conversation_id: str) -> ClaimOutcome:
        """Claim a conversation; duplicate claims while one is running are dropped"""

        conversation_id = normalize_address(conversation_id)
        outcome = ClaimOutcome(conversation_id=conversation_id, agent_id=agent_id)

        async def claim():
            logger.info("Agent taking conversation", agent_id=agent_id, conversation_id=conversation_id)

            if not await self.registry.try_assign(conversation_id, agent_id):
                outcome.current_agent = self.registry.lookup(conversation_id)
                await self.control_plane.send_error(
                    agent_id,
                    "Conversation already has an assigned agent",
                    error_code=ErrorCode.CONVERSATION_ALREADY_ASSIGNED.value,
                    details=conversation_id
                )
                return

            outcome.claimed = True
            outcome.current_agent = agent_id
            try:
                await self._complete_handoff(agent_id, conversation_id)
            except Exception as e:
                logger.error("Failed to complete handoff", conversation_id=conversation_id, error=str(e))
                await self.control_plane.send_error(
                    agent_id,
                    CLAIM_ERROR_MESSAGE,
                    error_code=ErrorCode.CLAIM_FAILED.value,
                    details=str(e)
                )

        ran = await self.coordinator.guard(conversation_id, claim)
        outcome.dropped = not ran
        return outcome

    async def _complete_handoff(self, agent_id: str, conversation_id: str):
        messages = await self.history.load(conversation_id, self.history_limit)

        await self.control_plane.send_event(
            agent_id,
            ConversationHistoryEvent(conversation_id=conversation_id, messages=messages)
        )
        await self.control_plane.broadcast(
            ConversationTakenEvent(conversation_id=conversation_id, agent_id=agent_id),
            exclude=agent_id
        )
        await self.delivery.send(conversation_id, HANDOFF_NOTICE)

        logger.info("Conversation handed off", conversation_id=conversation_id, agent_id=agent_id)

    async def agent_message(self, agent_id: str, conversation_id: str, message: str) -> bool:
        """Deliver an agent's reply and confirm the outcome to that agent"""

        conversation_id = normalize_address(conversation_id)
        owner = self.registry.lookup(conversation_id)
        if owner is not None and owner != agent_id:
            logger.warning(
                "Agent replying to a conversation owned by another agent",
                agent_id=agent_id,
                owner=owner,
                conversation_id=conversation_id
            )

        try:
            await self.delivery.send(conversation_id, message, sender=Sender.AGENT)
        except DeliveryFailed as e:
            await self.control_plane.send_event(
                agent_id,
                MessageSentConfirmationEvent(success=False, conversation_id=conversation_id, error=str(e))
            )
            return False

        await self.control_plane.send_event(
            agent_id,
            MessageSentConfirmationEvent(success=True, conversation_id=conversation_id, message=message)
        )
        return True

    async def close_conversation(self, agent_id: str, conversation_id: str):
        """Release the conversation back to automation and tell every agent"""

        conversation_id = normalize_address(conversation_id)
        await self.registry.release(conversation_id)
        await self.control_plane.broadcast(ConversationClosedEvent(conversation_id=conversation_id))

        logger.info("Conversation closed", conversation_id=conversation_id, agent_id=agent_id)

    async def typing_status(self, agent_id: str, conversation_id: str, is_typing: bool):
        await self.delivery.signal_typing(conversation_id, is_typing)

    def agent_disconnected(self, agent_id: str):
        """Conversations stay assigned until explicitly closed"""

        owned = self.registry.assignments_for(agent_id)
        if owned:
            logger.warning("Agent disconnected while owning conversations", agent_id=agent_id, conversations=owned)
