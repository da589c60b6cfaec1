from typing import Dict, List, Optional
import asyncio
import structlog

from relay.domain.models.conversation import normalize_address

logger = structlog.get_logger(__name__)


class ConversationRegistry:
    """Owns the conversation -> agent assignments.

    Every mutation goes through this class. ``try_assign`` is a check-and-set
    under the registry lock, so two agents claiming the same conversation
    across a suspension point cannot both win.
    """

    def __init__(self):
        self.assignments: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def try_assign(self, conversation_id: str, agent_id: str) -> bool:
        """Assign ``agent_id`` unless the conversation already has an agent"""

        conversation_id = normalize_address(conversation_id)
        async with self._lock:
            current = self.assignments.get(conversation_id)
            if current is not None:
                logger.info(
                    "Conversation already assigned",
                    conversation_id=conversation_id,
                    assigned_agent=current,
                    requested_by=agent_id
                )
                return False

            self.assignments[conversation_id] = agent_id

        logger.info("Agent assigned", conversation_id=conversation_id, agent_id=agent_id)
        return True

    async def release(self, conversation_id: str) -> None:
        """Clear the assignment; releasing an unassigned conversation is a no-op"""

        conversation_id = normalize_address(conversation_id)
        async with self._lock:
            previous = self.assignments.pop(conversation_id, None)

        if previous is not None:
            logger.info("Assignment released", conversation_id=conversation_id, agent_id=previous)

    def lookup(self, conversation_id: str) -> Optional[str]:
        """Agent currently assigned to the conversation, if any"""
        return self.assignments.get(normalize_address(conversation_id))

    def is_assigned(self, conversation_id: str) -> bool:
        return self.lookup(conversation_id) is not None

    def assignments_for(self, agent_id: str) -> List[str]:
        """Conversations owned by an agent"""
        return [cid for cid, owner in self.assignments.items() if owner == agent_id]

    def snapshot(self) -> Dict[str, str]:
        return dict(self.assignments)
