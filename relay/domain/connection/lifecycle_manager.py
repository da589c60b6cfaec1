from typing import Awaitable, Callable, Optional, Set
import asyncio
import structlog

from relay.domain.errors import TransportError, TransportFatal, TransportRetryable
from relay.domain.models.conversation import ConnectionState
from relay.infrastructure.observability.logging import relay_logger, metrics
from relay.infrastructure.transport.base import (
    FATAL_STATUS_CODES,
    ConnectionUpdateEvent,
    CredentialsUpdateEvent,
    InboundMessageEvent,
    TransportClient,
    TransportEvent,
    TransportSession,
)
from relay.infrastructure.transport.credential_store import FileCredentialStore
from relay.infrastructure.transport.message_cache import MessageCache

logger = structlog.get_logger(__name__)

MessageHandler = Callable[[str, str, Optional[str]], Awaitable[object]]
FatalHandler = Callable[[TransportFatal], Awaitable[None]]


def classify_disconnect(event: ConnectionUpdateEvent) -> TransportError:
    """Logged out or replaced sessions are fatal; every other close is retryable"""

    reason = event.reason or "connection closed"
    if event.status_code in FATAL_STATUS_CODES:
        return TransportFatal(reason, status_code=event.status_code)
    return TransportRetryable(reason, status_code=event.status_code)


class ConnectionLifecycleManager:
    """Owns the transport connection state machine.

    disconnected -> connecting -> connected; a retryable close goes back to
    connecting immediately, a fatal close ends in a terminal disconnected
    state. Inbound messages are cached and handed to ``on_message``.
    """

    def __init__(
        self,
        transport: TransportClient,
        credential_store: Optional[FileCredentialStore] = None,
        cache: Optional[MessageCache] = None,
        on_message: Optional[MessageHandler] = None,
        on_fatal: Optional[FatalHandler] = None
    ):
        self.transport = transport
        self.credential_store = credential_store
        self.cache = cache
        self.on_message = on_message
        self.on_fatal = on_fatal

        self.state = ConnectionState.DISCONNECTED
        self.terminal = False
        self.session: Optional[TransportSession] = None
        self.reconnect_count = 0
        self._reconnecting = False
        self._tasks: Set[asyncio.Task] = set()

        transport.subscribe(self.handle_event)

    async def connect(self) -> TransportSession:
        """Open a new transport session with stored (or freshly provisioned) credentials"""

        self._transition(ConnectionState.CONNECTING, cause="connect")

        try:
            credentials = self.credential_store.load() if self.credential_store else None
            session = await self.transport.connect(credentials)
        except Exception as e:
            self._transition(ConnectionState.DISCONNECTED, cause="connect_failed")
            raise TransportRetryable(f"Connect failed: {e}") from e

        self.session = session
        self._transition(ConnectionState.CONNECTED, cause="connect_succeeded")
        return session

    async def start(self, max_attempts: int = 3, retry_delay: float = 5.0) -> TransportSession:
        """Initial connect with a bounded number of attempts"""

        last_error: Optional[TransportRetryable] = None
        for attempt in range(1, max_attempts + 1):
            try:
                return await self.connect()
            except TransportRetryable as e:
                last_error = e
                logger.error("Transport start failed", attempt=attempt, max_attempts=max_attempts, error=str(e))
                if attempt < max_attempts:
                    await asyncio.sleep(retry_delay)

        raise TransportRetryable(
            f"Could not connect after {max_attempts} attempts; check the network and credentials"
        ) from last_error

    async def close(self):
        """Shut the connection down for good"""

        self.terminal = True
        if self.state != ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.CLOSING, cause="shutdown")
            try:
                await self.transport.close()
            finally:
                self._transition(ConnectionState.DISCONNECTED, cause="shutdown")

        await self.wait_idle()

    async def wait_idle(self):
        """Wait for inbound message tasks that are still being routed"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def handle_event(self, event: TransportEvent):
        """Single entry point for transport events"""

        if isinstance(event, ConnectionUpdateEvent):
            await self._on_connection_update(event)
        elif isinstance(event, CredentialsUpdateEvent):
            self._on_credentials_update(event)
        elif isinstance(event, InboundMessageEvent):
            await self._on_inbound_message(event)

    async def _on_connection_update(self, event: ConnectionUpdateEvent):
        if self.terminal:
            logger.debug("Ignoring connection update after shutdown", connection=event.connection)
            return

        if event.connection == "open":
            if self.state != ConnectionState.CONNECTED:
                self._transition(ConnectionState.CONNECTED, cause="open")
            return

        if event.connection != "close":
            return

        error = classify_disconnect(event)
        if isinstance(error, TransportFatal):
            self.terminal = True
            self._transition(ConnectionState.DISCONNECTED, cause="fatal", status_code=error.status_code)
            metrics.increment_counter("transport.fatal")
            logger.critical(
                "Logged out or replaced by another session; resolve the issue and restart",
                status_code=error.status_code,
                reason=str(error)
            )
            if self.on_fatal is not None:
                await self.on_fatal(error)
            return

        if self._reconnecting:
            logger.info("Reconnect already in progress", status_code=error.status_code, reason=str(error))
            return

        logger.warning("Connection closed, reconnecting", status_code=error.status_code, reason=str(error))
        self.reconnect_count += 1
        metrics.increment_counter("transport.reconnect")
        await self._reconnect()

    async def _reconnect(self):
        # Retries without delay; the transport enforces its own connect timeout
        self._reconnecting = True
        try:
            while not self.terminal:
                try:
                    await self.connect()
                    return
                except TransportRetryable as e:
                    logger.warning("Reconnect attempt failed", error=str(e))
                    await asyncio.sleep(0)
        finally:
            self._reconnecting = False

    def _on_credentials_update(self, event: CredentialsUpdateEvent):
        if self.credential_store is None:
            logger.warning("Credentials changed but no credential store is configured")
            return
        self.credential_store.save(event.credentials)

    async def _on_inbound_message(self, event: InboundMessageEvent):
        if self.cache is not None:
            await self.cache.record(event.raw)

        if event.from_me:
            return

        text = event.text
        if not text:
            logger.debug("Ignoring non-text message", remote_jid=event.remote_jid)
            return

        logger.info("Received message", conversation_id=event.remote_jid, text_preview=text[:60])
        if self.on_message is None:
            return

        message_id = event.raw.get("key", {}).get("id")
        task = asyncio.create_task(self._route(event.remote_jid, text, message_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _route(self, conversation_id: str, text: str, message_id: Optional[str]):
        try:
            await self.on_message(conversation_id, text, message_id)
        except Exception:
            logger.exception("Failed to route inbound message", conversation_id=conversation_id)

    def _transition(self, to_state: ConnectionState, cause: Optional[str] = None, status_code: Optional[int] = None):
        from_state = self.state
        self.state = to_state
        relay_logger.log_state_transition(from_state.value, to_state.value, cause=cause, status_code=status_code)
