"""
Queue topology.

Both the publisher and the consumer declare the queues they use before first
use, since neither can rely on the other having started first.
"""

import logging
from dataclasses import dataclass

from src.broker.connection import Link
from src.broker.repository import MessageRepository
from src.constants import DEAD_LETTER_SUFFIX, MAX_QUEUE_NAME_LENGTH
from src.errors import TopologyConflictError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueHandle:
    """A declared queue, as stored by the broker."""

    name: str
    durable: bool
    dead_letter_queue: str | None = None


def dead_letter_name(queue: str) -> str:
    """Conventional name of the dead-letter queue paired with ``queue``."""
    return f"{queue}{DEAD_LETTER_SUFFIX}"


async def ensure_queue(
    link: Link,
    name: str,
    durable: bool = True,
    dead_letter_queue: str | None = None,
) -> QueueHandle:
    """
    Declare a queue idempotently.

    Calling this any number of times, from any process, with the same settings
    yields the same single queue and never fails.

    Args:
        link: The broker link.
        name: Queue name.
        durable: Whether the queue survives broker restarts.
        dead_letter_queue: Optional dead-letter target. When given, it must
            match the target of an existing queue.

    Returns:
        QueueHandle for the declared queue.

    Raises:
        ValueError: If the name is empty or too long.
        TopologyConflictError: If the queue exists with other settings.
    """
    if not name or len(name) > MAX_QUEUE_NAME_LENGTH:
        raise ValueError(f"Queue name must be 1-{MAX_QUEUE_NAME_LENGTH} characters")

    async with link.channel() as session:
        repo = MessageRepository(session)
        record, created = await repo.declare_queue(
            name=name,
            durable=durable,
            dead_letter_queue=dead_letter_queue,
        )

    if record.durable != durable:
        raise TopologyConflictError(
            f"Queue '{name}' exists with durable={record.durable}, "
            f"declared with durable={durable}"
        )

    if dead_letter_queue is not None and record.dead_letter_queue != dead_letter_queue:
        raise TopologyConflictError(
            f"Queue '{name}' exists with dead_letter_queue={record.dead_letter_queue!r}, "
            f"declared with {dead_letter_queue!r}"
        )

    if not created:
        logger.debug("Queue already declared", extra={"queue": name})

    return QueueHandle(
        name=record.name,
        durable=record.durable,
        dead_letter_queue=record.dead_letter_queue,
    )
