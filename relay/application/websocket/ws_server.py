from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from typing import Any, Dict, Optional, Set
import asyncio
import json
import uuid
from datetime import datetime
import structlog

from relay.application.container import Relay, build_relay
from relay.domain.errors import TransportRetryable
from relay.infrastructure.config.settings import Settings, get_settings
from relay.infrastructure.observability.logging import setup_logging, metrics
from .schema.events import (
    EventType, ErrorCode,
    TakeConversationRequest, AgentMessageRequest,
    CloseConversationRequest, AgentTypingStatusRequest
)

logger = structlog.get_logger(__name__)


def create_app(relay: Optional[Relay] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the control-plane app; components are built at startup unless injected"""

    settings = settings or (relay.settings if relay else get_settings())
    setup_logging(settings.log_level, settings.log_format, settings.service_name)

    app = FastAPI(title="Relay Control Plane")
    app.state.relay = relay
    app.state.background_tasks = set()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_event():
        """Build components, load the message store and connect the transport"""

        if app.state.relay is None:
            app.state.relay = build_relay(settings)
        relay: Relay = app.state.relay

        relay.cache.read_from_file()
        if relay.cache.path is not None:
            flush_task = asyncio.create_task(
                relay.cache.run_periodic_flush(settings.message_store_flush_seconds)
            )
            app.state.background_tasks.add(flush_task)

        try:
            await relay.lifecycle.start(
                max_attempts=settings.startup_max_attempts,
                retry_delay=settings.startup_retry_delay_seconds
            )
        except TransportRetryable as e:
            logger.critical("Maximum connection attempts reached; check the network and credentials", error=str(e))
            raise

        logger.info("Relay started", host=settings.host, port=settings.port)

    @app.on_event("shutdown")
    async def shutdown_event():
        """Cleanup on shutdown"""
        relay: Optional[Relay] = app.state.relay
        if relay is None:
            return

        for agent_id in list(relay.connection_manager.active_connections.keys()):
            await relay.connection_manager.disconnect(agent_id)

        for task in app.state.background_tasks:
            task.cancel()

        await relay.lifecycle.close()
        relay.cache.write_to_file()

        logger.info("Relay shutdown")

    @app.websocket("/ws/agent")
    async def agent_websocket(websocket: WebSocket):
        """One control-plane connection per agent; the connection id is the agent id"""

        relay: Relay = app.state.relay
        agent_id = uuid.uuid4().hex
        pending: Set[asyncio.Task] = set()

        await relay.connection_manager.connect(websocket, agent_id)

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    data = json.loads(raw)
                except ValueError as e:
                    await relay.connection_manager.send_error(
                        agent_id,
                        "Malformed JSON frame",
                        error_code=ErrorCode.INVALID_EVENT.value,
                        details=str(e)
                    )
                    continue

                # Each request runs as its own task so duplicate claims can overlap
                task = asyncio.create_task(handle_agent_event(relay, agent_id, data))
                pending.add(task)
                task.add_done_callback(pending.discard)

        except WebSocketDisconnect:
            logger.info("Agent closed connection", agent_id=agent_id)
        except Exception as e:
            logger.error("WebSocket error", error=str(e), agent_id=agent_id)
        finally:
            if pending:
                await asyncio.gather(*list(pending), return_exceptions=True)
            await relay.connection_manager.disconnect(agent_id)
            relay.desk.agent_disconnected(agent_id)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        relay: Optional[Relay] = app.state.relay
        if relay is None:
            return {"status": "starting", "timestamp": datetime.utcnow().isoformat()}

        return {
            "status": "healthy" if not relay.lifecycle.terminal else "degraded",
            "connection_state": relay.lifecycle.state.value,
            "active_agents": len(relay.connection_manager.active_connections),
            "assigned_conversations": len(relay.registry.snapshot()),
            "metrics": metrics.get_metrics_summary(),
            "timestamp": datetime.utcnow().isoformat()
        }

    return app


async def handle_agent_event(relay: Relay, agent_id: str, data: Dict[str, Any]):
    """Dispatch one agent request; every failure is reported back to that agent"""

    structlog.contextvars.bind_contextvars(agent_id=agent_id)
    event_type = data.get("type") if isinstance(data, dict) else None
    fields = {k: v for k, v in data.items() if k != "type"} if isinstance(data, dict) else {}

    try:
        if event_type == EventType.TAKE_CONVERSATION:
            request = TakeConversationRequest.model_validate(fields)
            await relay.desk.take_conversation(agent_id, request.conversation_id)

        elif event_type == EventType.AGENT_MESSAGE:
            request = AgentMessageRequest.model_validate(fields)
            await relay.desk.agent_message(agent_id, request.conversation_id, request.message)

        elif event_type == EventType.CLOSE_CONVERSATION:
            request = CloseConversationRequest.model_validate(fields)
            await relay.desk.close_conversation(agent_id, request.conversation_id)

        elif event_type == EventType.AGENT_TYPING_STATUS:
            request = AgentTypingStatusRequest.model_validate(fields)
            await relay.desk.typing_status(agent_id, request.conversation_id, request.is_typing)

        else:
            logger.warning("Unknown agent event", event_type=event_type)
            await relay.connection_manager.send_error(
                agent_id,
                f"Unknown event type: {event_type}",
                error_code=ErrorCode.INVALID_EVENT.value
            )

    except ValidationError as e:
        await relay.connection_manager.send_error(
            agent_id,
            "Invalid event payload",
            error_code=ErrorCode.INVALID_EVENT.value,
            details=str(e)
        )
    except Exception as e:
        logger.error("Error processing agent event", error=str(e), event_type=event_type)
        await relay.connection_manager.send_error(agent_id, f"Error processing event: {str(e)}")
    finally:
        structlog.contextvars.unbind_contextvars("agent_id")


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
