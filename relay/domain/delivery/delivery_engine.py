from typing import Optional
from pydantic import BaseModel
import asyncio
import uuid
import structlog

from relay.domain.errors import DeliveryFailed
from relay.domain.models.conversation import Message, Sender, normalize_address
from relay.infrastructure.observability.logging import relay_logger, metrics
from relay.infrastructure.transport.base import TransportClient
from relay.infrastructure.transport.message_cache import MessageCache

logger = structlog.get_logger(__name__)

COMPOSING = "composing"
AVAILABLE = "available"


class DeliveryResult(BaseModel):
    """Outcome of a successful send"""
    conversation_id: str
    message: Message
    attempts: int


class DeliveryEngine:
    """Sends outbound text with presence signaling and bounded retry"""

    def __init__(
        self,
        transport: TransportClient,
        cache: Optional[MessageCache] = None,
        max_attempts: int = 3,
        retry_delay: float = 2.0
    ):
        self.transport = transport
        self.cache = cache
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    async def send(self, conversation_id: str, text: str, sender: Sender = Sender.AUTOMATED) -> DeliveryResult:
        """Deliver ``text``; raises DeliveryFailed once every attempt has failed"""

        conversation_id = normalize_address(conversation_id)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            await self._presence(COMPOSING, conversation_id)
            try:
                message_id = await self.transport.send_message(conversation_id, text)
            except Exception as e:
                last_error = e
                relay_logger.log_delivery_attempt(
                    conversation_id, attempt, self.max_attempts, success=False, error=str(e)
                )
                metrics.increment_counter("delivery.attempt_failed")
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_delay)
                continue

            await self._presence(AVAILABLE, conversation_id)
            relay_logger.log_delivery_attempt(conversation_id, attempt, self.max_attempts)
            metrics.increment_counter("delivery.sent")

            message = Message(id=message_id or uuid.uuid4().hex, sender=sender, content=text)
            await self._record(conversation_id, message)
            return DeliveryResult(conversation_id=conversation_id, message=message, attempts=attempt)

        metrics.increment_counter("delivery.failed")
        logger.error(
            "Delivery failed, retries exhausted",
            conversation_id=conversation_id,
            attempts=self.max_attempts,
            error=str(last_error)
        )
        raise DeliveryFailed(conversation_id, self.max_attempts, last_error) from last_error

    async def signal_typing(self, conversation_id: str, is_typing: bool) -> None:
        """Forward an agent's typing indicator to the user"""
        await self._presence(COMPOSING if is_typing else AVAILABLE, normalize_address(conversation_id))

    async def _presence(self, state: str, conversation_id: str) -> None:
        try:
            await self.transport.send_presence(state, conversation_id)
        except Exception as e:
            logger.warning("Presence update failed", conversation_id=conversation_id, state=state, error=str(e))

    async def _record(self, conversation_id: str, message: Message) -> None:
        if self.cache is None:
            return
        await self.cache.record({
            "key": {"remote_jid": conversation_id, "id": message.id, "from_me": True},
            "message": {"conversation": message.content},
            "message_timestamp": message.timestamp,
            "sender": message.sender.value,
        })
