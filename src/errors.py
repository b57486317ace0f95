"""
Error taxonomy for task dispatch.

Every error carries a ``retryable`` flag so callers can tell a broker that is
not ready yet from a condition that needs operator intervention.
"""


class DispatchError(Exception):
    """Base exception for all task-dispatch operations."""

    retryable: bool = False

    def __init__(self, message: str, retryable: bool | None = None):
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message)


class BrokerConnectionError(DispatchError, ConnectionError):
    """The broker is unreachable, rejected the handshake, or the link is closed."""

    retryable = True


class TopologyConflictError(DispatchError):
    """A queue already exists with settings incompatible with the declaration."""


class SerializationError(DispatchError, ValueError):
    """A task could not be encoded into a message body."""


class DeserializationError(DispatchError, ValueError):
    """A message body could not be decoded into a task."""


class PublishError(DispatchError):
    """The broker did not accept a published message."""

    def __init__(self, message: str, queue: str = "", retryable: bool | None = None):
        self.queue = queue
        super().__init__(message, retryable=retryable)
