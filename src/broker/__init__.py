"""
Broker module.
Contains the broker link, queue topology, publisher, and message repository.
"""

from src.broker.codec import deserialize_task, serialize_task
from src.broker.connection import Link, connect
from src.broker.models import Base, Message, QueueRecord
from src.broker.publisher import Publisher
from src.broker.repository import MessageRepository
from src.broker.topology import QueueHandle, dead_letter_name, ensure_queue

__all__ = [
    "connect",
    "Link",
    "ensure_queue",
    "dead_letter_name",
    "QueueHandle",
    "Publisher",
    "MessageRepository",
    "serialize_task",
    "deserialize_task",
    "Base",
    "Message",
    "QueueRecord",
]
