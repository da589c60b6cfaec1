from typing import Dict, List, Any, Optional
from collections import defaultdict
from pathlib import Path
import asyncio
import json
import structlog

logger = structlog.get_logger(__name__)


class MessageCache:
    """Per-conversation cache of raw transport messages, optionally backed by a JSON file"""

    def __init__(self, path: Optional[str] = None, max_per_conversation: int = 500):
        self.path = Path(path) if path else None
        self.max_per_conversation = max_per_conversation
        self.conversations: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def record(self, raw: Dict[str, Any]) -> None:
        """Upsert a raw message into its conversation, keyed by ``key.id``.

        The transport echoes our own sends back as ``from_me`` messages; the
        echo is merged into the entry recorded at send time.
        """

        key = raw.get("key", {})
        remote_jid = key.get("remote_jid")
        if not remote_jid:
            logger.warning("Dropping cached message without remote_jid")
            return

        message_id = key.get("id")
        async with self._lock:
            messages = self.conversations[remote_jid]
            if message_id:
                for index, existing in enumerate(messages):
                    if existing.get("key", {}).get("id") == message_id:
                        merged = dict(existing)
                        merged.update(raw)
                        messages[index] = merged
                        return

            messages.append(raw)
            if len(messages) > self.max_per_conversation:
                self.conversations[remote_jid] = messages[-self.max_per_conversation:]

    async def load_messages(self, conversation_id: str, limit: int) -> List[Dict[str, Any]]:
        """Return up to ``limit`` most recent messages, oldest first"""

        async with self._lock:
            messages = self.conversations.get(conversation_id, [])
            return list(messages[-limit:]) if limit > 0 else []

    def read_from_file(self) -> int:
        """Load cached conversations from disk; returns the number of messages loaded"""

        if not self.path or not self.path.exists():
            return 0

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error("Failed to read message store", path=str(self.path), error=str(e))
            return 0

        count = 0
        for conversation_id, messages in data.get("conversations", {}).items():
            self.conversations[conversation_id] = list(messages)[-self.max_per_conversation:]
            count += len(self.conversations[conversation_id])

        logger.info("Message store loaded", path=str(self.path), messages=count)
        return count

    def write_to_file(self) -> None:
        """Persist cached conversations to disk"""

        if not self.path:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(
            json.dumps({"conversations": dict(self.conversations)}),
            encoding="utf-8"
        )
        tmp_path.replace(self.path)

    async def run_periodic_flush(self, interval: float = 10.0):
        """Write the store to disk every ``interval`` seconds"""

        while True:
            await asyncio.sleep(interval)
            try:
                async with self._lock:
                    self.write_to_file()
            except OSError as e:
                logger.error("Message store flush failed", path=str(self.path), error=str(e))
