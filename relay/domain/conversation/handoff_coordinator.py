from typing import Awaitable, Callable, Set
import structlog

from relay.domain.models.conversation import normalize_address

logger = structlog.get_logger(__name__)


class HandoffCoordinator:
    """At most one in-flight claim per conversation.

    A claim arriving while another claim for the same conversation is still
    running is dropped, never queued. Claims on different conversations do
    not block each other.
    """

    def __init__(self):
        self._in_flight: Set[str] = set()

    def in_flight(self, conversation_id: str) -> bool:
        return normalize_address(conversation_id) in self._in_flight

    async def guard(self, conversation_id: str, work: Callable[[], Awaitable[None]]) -> bool:
        """Run ``work`` unless a claim for this conversation is already running.

        Returns True when ``work`` ran. Exceptions raised by ``work`` propagate
        after the conversation is unmarked.
        """

        conversation_id = normalize_address(conversation_id)
        if conversation_id in self._in_flight:
            logger.info("Claim already in progress, dropping duplicate", conversation_id=conversation_id)
            return False

        # No await between the check and the add
        self._in_flight.add(conversation_id)
        try:
            await work()
        finally:
            self._in_flight.discard(conversation_id)

        return True
