"""
Task-related type definitions for internal use.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


class Task(BaseModel):
    """
    A unit of work handed to the broker.

    Serialized on the wire with camelCase keys: ``postId`` and ``timestamp``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: UUID = Field(default_factory=uuid4)
    post_id: str = Field(..., alias="postId")
    platform: str
    payload: dict[str, Any] = Field(default_factory=dict)
    submitted_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        alias="timestamp",
    )

    @classmethod
    def for_post(cls, post_id: str, platform: str, **payload: Any) -> "Task":
        """Create a task to publish one post to one platform."""
        return cls(post_id=post_id, platform=platform, payload=payload)


class TaskResult(BaseModel):
    """
    Result of task execution.
    Returned by task handlers; the delivery loop picks a disposition from it.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    requeue: bool = False
    duration_ms: float | None = None


@dataclass(frozen=True)
class Delivery:
    """
    One broker-tracked attempt to hand a message to a consumer.
    Finalized by exactly one ack, reject, or dead-letter call.
    """

    delivery_tag: UUID
    consumer_tag: str
    queue: str
    message_id: UUID
    body: bytes
    content_type: str
    redelivered: bool
    delivery_count: int
    lease_expires_at: datetime
    sequence: int


@dataclass
class DeliveryContext:
    """
    Context passed to task handlers during execution.
    Contains the decoded task and the metadata of its delivery.
    """

    task: Task
    delivery_tag: UUID
    consumer_tag: str
    queue: str
    redelivered: bool
    delivery_count: int

    @property
    def is_first_delivery(self) -> bool:
        """Check if the broker has not handed this task out before."""
        return not self.redelivered


@dataclass(frozen=True)
class PublishAck:
    """Broker confirmation that a task is durably enqueued."""

    message_id: UUID
    queue: str
    sequence: int
    persistent: bool
    confirmed: bool = True


@dataclass(frozen=True)
class QueueStats:
    """Message counts for one queue."""

    queue: str
    ready: int
    unacked: int

    @property
    def total(self) -> int:
        """Messages still held by the broker, delivered or not."""
        return self.ready + self.unacked
