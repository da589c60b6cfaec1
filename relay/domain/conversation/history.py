from typing import Dict, List, Any, Optional
import time
import uuid
import structlog

from relay.domain.models.conversation import Message, Sender, normalize_address
from relay.infrastructure.transport.base import TransportClient
from relay.infrastructure.transport.message_cache import MessageCache

logger = structlog.get_logger(__name__)

NO_CONTENT = "Mensaje no disponible"
UNSUPPORTED_CONTENT = "Contenido no soportado"


def extract_content(raw: Dict[str, Any]) -> str:
    """Best-effort text of a cached message"""

    body = raw.get("message")
    if not body:
        return NO_CONTENT

    content = (
        body.get("conversation")
        or (body.get("extended_text_message") or {}).get("text")
        or (body.get("buttons_response_message") or {}).get("selected_display_text")
        or (body.get("template_button_reply_message") or {}).get("selected_display_text")
    )
    if not content:
        logger.debug("Unsupported message type", message_types=list(body.keys()))
        return UNSUPPORTED_CONTENT
    return content


def to_message(raw: Dict[str, Any]) -> Message:
    key = raw.get("key") or {}
    if key.get("from_me"):
        sender = Sender.AGENT if raw.get("sender") == Sender.AGENT.value else Sender.AUTOMATED
    else:
        sender = Sender.USER

    return Message(
        id=key.get("id") or uuid.uuid4().hex,
        sender=sender,
        timestamp=int(raw.get("message_timestamp") or time.time()),
        content=extract_content(raw),
    )


class HistoryStore:
    """Loads recent conversation history from the transport's message cache"""

    def __init__(self, cache: MessageCache, transport: TransportClient):
        self.cache = cache
        self.transport = transport

    async def load(self, conversation_id: str, limit: int = 100) -> List[Message]:
        """Up to ``limit`` most recent messages, oldest first; empty on any failure"""

        conversation_id = normalize_address(conversation_id)
        try:
            raw_messages = await self.cache.load_messages(conversation_id, limit)
            logger.info("History loaded", conversation_id=conversation_id, count=len(raw_messages))

            if raw_messages:
                newest_id: Optional[str] = (raw_messages[-1].get("key") or {}).get("id")
                if newest_id:
                    await self.transport.mark_read(conversation_id, newest_id)

            return [to_message(raw) for raw in raw_messages]

        except Exception as e:
            logger.error("Failed to load history", conversation_id=conversation_id, error=str(e))
            return []
