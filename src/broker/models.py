"""
SQLAlchemy broker models.
Defines the queue and message tables backing the durable broker.
"""

from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from src.constants import CONTENT_TYPE_JSON, MessageStatus


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class QueueRecord(Base):
    """
    A declared queue.

    Rows are only ever inserted idempotently; the settings of an existing
    queue are never changed by a later declaration.
    """

    __tablename__ = "queues"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    durable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    dead_letter_queue: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return f"QueueRecord(name={self.name}, durable={self.durable})"


class Message(Base):
    """
    A message holding one serialized task.

    This is the authoritative source of truth for delivery state.

    Key constraints:
    - sequence gives FIFO order; a requeued message keeps its position
    - delivery_tag is regenerated on every delivery so stale acks are refused
    - consumer_tag and lease_expires_at track the open delivery for
      at-least-once redelivery
    """

    __tablename__ = "messages"

    sequence: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    message_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    queue_name: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("queues.name", ondelete="CASCADE"),
        nullable=False,
    )

    # Payload
    body: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    content_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        default=CONTENT_TYPE_JSON,
    )
    persistent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Delivery state
    status: Mapped[MessageStatus] = mapped_column(
        Enum(
            MessageStatus,
            name="message_status",
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=MessageStatus.READY,
    )
    delivery_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    redelivered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    consumer_tag: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    delivery_tag: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, unique=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Timestamps
    enqueued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    # Error tracking
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    dead_lettered_from: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        # Index for efficient queue polling
        Index(
            "ix_messages_ready",
            "queue_name",
            "status",
            "sequence",
        ),
        # Index for lease expiry checks
        Index(
            "ix_messages_lease_expiry",
            "lease_expires_at",
            postgresql_where=(Column("status") == MessageStatus.UNACKED.value),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"Message(sequence={self.sequence}, queue={self.queue_name}, "
            f"status={self.status}, deliveries={self.delivery_count})"
        )
