"""
Error taxonomy for the relay core.

A claim conflict is not an error: it is reported through ``ClaimOutcome``
(see ``domain.orchestration.agent_desk``).
"""

from typing import Optional


class RelayError(Exception):
    """Base class for relay errors"""


class DeliveryFailed(RelayError):
    """All delivery attempts for an outbound message were exhausted"""

    def __init__(self, conversation_id: str, attempts: int, cause: Optional[BaseException] = None):
        self.conversation_id = conversation_id
        self.attempts = attempts
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(
            f"Delivery to {conversation_id} failed after {attempts} attempt(s){detail}"
        )


class ResponderFailed(RelayError):
    """The automated responder could not produce a reply"""


class TransportError(RelayError):
    """Base class for transport connection failures"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TransportFatal(TransportError):
    """Logged out or replaced by another session; not retried"""


class TransportRetryable(TransportError):
    """Any other disconnect; recovered by reconnecting"""
