from typing import Dict, Set, Optional
from fastapi import WebSocket
import asyncio
from datetime import datetime
import structlog

from .schema.events import BaseEvent, ConnectionEvent, ErrorEvent

logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Manages agent WebSocket connections and pushes control-plane events"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.session_metadata: Dict[str, Dict] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, agent_id: str):
        """Accept a new agent connection"""
        await websocket.accept()

        async with self._lock:
            self.active_connections[agent_id] = websocket
            self.session_metadata[agent_id] = {
                "connected_at": datetime.utcnow(),
                "last_activity": datetime.utcnow()
            }

        # Tell the agent its connection id
        await self.send_event(
            agent_id,
            ConnectionEvent(
                status="connected",
                session_id=agent_id
            )
        )

        logger.info("Agent connected", agent_id=agent_id)

    async def disconnect(self, agent_id: str):
        """Disconnect an agent connection"""
        async with self._lock:
            if agent_id in self.active_connections:
                ws = self.active_connections.pop(agent_id)
                self.session_metadata.pop(agent_id, None)

                try:
                    await ws.close()
                except Exception as e:
                    logger.debug("WebSocket already closed", agent_id=agent_id, error=str(e))

        logger.info("Agent disconnected", agent_id=agent_id)

    async def send_event(self, agent_id: str, event: BaseEvent) -> bool:
        """Send an event to a specific agent"""
        if agent_id not in self.active_connections:
            logger.warning("Attempted to send to disconnected agent", agent_id=agent_id, event_type=event.type.value)
            return False

        websocket = self.active_connections[agent_id]

        try:
            await websocket.send_json(event.to_wire())

            if agent_id in self.session_metadata:
                self.session_metadata[agent_id]["last_activity"] = datetime.utcnow()

            return True

        except Exception as e:
            logger.error("Failed to send event", agent_id=agent_id, error=str(e))
            await self.disconnect(agent_id)
            return False

    async def broadcast(self, event: BaseEvent, exclude: Optional[str] = None):
        """Send an event to every connected agent, optionally skipping one"""
        agents = [agent_id for agent_id in list(self.active_connections) if agent_id != exclude]

        tasks = [self.send_event(agent_id, event) for agent_id in agents]
        await asyncio.gather(*tasks, return_exceptions=True)

    async def send_error(
        self,
        agent_id: str,
        error_message: str,
        error_code: Optional[str] = None,
        details: Optional[str] = None
    ):
        """Send an error event to an agent"""
        payload = {"message": error_message}
        if details:
            payload["details"] = details

        error_event = ErrorEvent(
            payload=payload,
            error_code=error_code,
            session_id=agent_id
        )
        await self.send_event(agent_id, error_event)

    async def broadcast_error(
        self,
        error_message: str,
        error_code: Optional[str] = None,
        details: Optional[str] = None
    ):
        """Send an error event to every connected agent"""
        payload = {"message": error_message}
        if details:
            payload["details"] = details

        await self.broadcast(ErrorEvent(payload=payload, error_code=error_code))

    def get_session_metadata(self, agent_id: str) -> Optional[Dict]:
        """Get metadata for an agent connection"""
        return self.session_metadata.get(agent_id)

    def get_active_sessions(self) -> Set[str]:
        """Get connected agent ids"""
        return set(self.active_connections.keys())
