import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "relay"
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    # The OpenAI client logs every request through httpx at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    # Processors for structlog
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    # Add appropriate renderer based on format
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add service context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.utcnow().isoformat()

    # Agent connection currently being served, if any
    agent_id = structlog.contextvars.get_contextvars().get("agent_id")
    if agent_id and "agent_id" not in event_dict:
        event_dict["agent_id"] = agent_id

    return event_dict


class RelayLogger:
    """Specialized logger for routing and handoff decisions"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_route_decision(
        self,
        conversation_id: str,
        decision: str,
        agent_id: Optional[str] = None,
        **kwargs
    ):
        """Log which branch an inbound message took"""

        self.logger.info(
            "route_decision",
            conversation_id=conversation_id,
            decision=decision,
            agent_id=agent_id,
            **kwargs
        )

    def log_state_transition(
        self,
        from_state: str,
        to_state: str,
        cause: Optional[str] = None,
        status_code: Optional[int] = None
    ):
        """Log connection state machine transitions"""

        self.logger.info(
            "connection_transition",
            from_state=from_state,
            to_state=to_state,
            cause=cause,
            status_code=status_code
        )

    def log_delivery_attempt(
        self,
        conversation_id: str,
        attempt: int,
        max_attempts: int,
        success: bool = True,
        error: Optional[str] = None
    ):
        """Log a single outbound delivery attempt"""

        log = self.logger.info if success else self.logger.warning
        log(
            "delivery_attempt",
            conversation_id=conversation_id,
            attempt=attempt,
            max_attempts=max_attempts,
            success=success,
            error=error
        )


# Global logger instance
relay_logger = RelayLogger("relay")


class MetricsCollector:
    """Collect counters for the health endpoint"""

    def __init__(self):
        self.metrics: Dict[str, int] = {}

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """Increment a counter metric"""

        self.metrics[name] = self.metrics.get(name, 0) + value

        relay_logger.logger.debug(
            "metric",
            metric_type="counter",
            name=name,
            value=value,
            tags=tags or {}
        )

    def get_metrics_summary(self) -> Dict[str, int]:
        """Get summary of all metrics"""

        return dict(self.metrics)

    def reset(self):
        self.metrics.clear()


# Global metrics collector
metrics = MetricsCollector()
