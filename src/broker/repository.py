"""
Message repository for broker operations.
Implements the core data access patterns for queues and deliveries.
"""

import logging
from datetime import timedelta
from typing import Sequence
from uuid import UUID, uuid4

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.broker.models import Message, QueueRecord, utcnow
from src.constants import CONTENT_TYPE_JSON, MessageStatus
from src.types.task import Delivery, QueueStats

logger = logging.getLogger(__name__)


def _to_delivery(message: Message) -> Delivery:
    return Delivery(
        delivery_tag=message.delivery_tag,
        consumer_tag=message.consumer_tag,
        queue=message.queue_name,
        message_id=message.message_id,
        body=message.body,
        content_type=message.content_type,
        redelivered=message.redelivered,
        delivery_count=message.delivery_count,
        lease_expires_at=message.lease_expires_at,
        sequence=message.sequence,
    )


class MessageRepository:
    """
    Repository for broker database operations.

    Implements atomic operations for:
    - Idempotent queue declaration
    - Persistent enqueue
    - Delivery acquisition with FOR UPDATE SKIP LOCKED
    - Ack / reject / dead-letter guarded by delivery tag
    - Lease extension and expiry handling
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a channel session.

        Args:
            session: The async database session.
        """
        self._session = session

    def _insert(self):
        dialect = self._session.get_bind().dialect.name
        return pg_insert if dialect == "postgresql" else sqlite_insert

    async def declare_queue(
        self,
        name: str,
        durable: bool = True,
        dead_letter_queue: str | None = None,
    ) -> tuple[QueueRecord, bool]:
        """
        Declare a queue if it does not exist yet.

        Uses INSERT ... ON CONFLICT DO NOTHING so concurrent declarations from
        several processes never fail or duplicate the queue.

        Args:
            name: Queue name.
            durable: Durability flag for a newly created queue.
            dead_letter_queue: Optional dead-letter target for a new queue.

        Returns:
            Tuple of (QueueRecord, created). The record reflects the stored
            settings, which win over the arguments if the queue existed.
        """
        stmt = self._insert()(QueueRecord.__table__).values(
            name=name,
            durable=durable,
            dead_letter_queue=dead_letter_queue,
            created_at=utcnow(),
        ).on_conflict_do_nothing(index_elements=["name"])

        result = await self._session.execute(stmt)
        created = result.rowcount == 1

        record = await self.get_queue(name)
        if record is None:
            raise RuntimeError("Queue should exist after declaration")

        if created:
            logger.info(
                "Declared queue",
                extra={"queue": name, "durable": durable},
            )
        return record, created

    async def get_queue(self, name: str) -> QueueRecord | None:
        """Get a queue by name."""
        stmt = select(QueueRecord).where(QueueRecord.name == name)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def enqueue(
        self,
        queue: str,
        message_id: UUID,
        body: bytes,
        persistent: bool = True,
        content_type: str = CONTENT_TYPE_JSON,
    ) -> Message:
        """
        Append a message to the tail of a queue.

        Args:
            queue: Target queue name.
            message_id: Identifier of the carried task.
            body: Serialized task.
            persistent: Whether the message must survive broker restarts.
            content_type: Encoding of the body.

        Returns:
            The stored Message with its sequence assigned.
        """
        now = utcnow()
        message = Message(
            message_id=message_id,
            queue_name=queue,
            body=body,
            content_type=content_type,
            persistent=persistent,
            status=MessageStatus.READY,
            delivery_count=0,
            redelivered=False,
            enqueued_at=now,
            updated_at=now,
        )
        self._session.add(message)
        await self._session.flush()

        logger.debug(
            "Enqueued message",
            extra={"queue": queue, "message_id": str(message_id), "sequence": message.sequence},
        )
        return message

    async def acquire(
        self,
        queue: str,
        consumer_tag: str,
        limit: int,
        lease_seconds: int,
    ) -> list[Delivery]:
        """
        Hand up to ``limit`` ready messages to a consumer.

        This is the critical path for delivery. Candidates are picked in FIFO
        order with FOR UPDATE SKIP LOCKED, then each is claimed with a guarded
        update so a message is never delivered to two consumers at once.

        Args:
            queue: Queue name.
            consumer_tag: The consumer identifier.
            limit: Maximum number of deliveries to open.
            lease_seconds: Lease duration for each delivery.

        Returns:
            The opened deliveries, in queue order.
        """
        if limit <= 0:
            return []

        now = utcnow()
        lease_expires_at = now + timedelta(seconds=lease_seconds)

        candidates = (
            select(Message.sequence)
            .where(
                and_(
                    Message.queue_name == queue,
                    Message.status == MessageStatus.READY,
                )
            )
            .order_by(Message.sequence)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        sequences = (await self._session.execute(candidates)).scalars().all()

        tags: list[UUID] = []
        for sequence in sequences:
            tag = uuid4()
            stmt = (
                update(Message)
                .where(
                    and_(
                        Message.sequence == sequence,
                        Message.status == MessageStatus.READY,
                    )
                )
                .values(
                    status=MessageStatus.UNACKED,
                    consumer_tag=consumer_tag,
                    delivery_tag=tag,
                    lease_expires_at=lease_expires_at,
                    redelivered=Message.delivery_count > 0,
                    delivery_count=Message.delivery_count + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            result = await self._session.execute(stmt)
            if result.rowcount == 1:
                tags.append(tag)

        if not tags:
            return []

        rows = await self._session.execute(
            select(Message)
            .where(Message.delivery_tag.in_(tags))
            .order_by(Message.sequence)
        )
        deliveries = [_to_delivery(message) for message in rows.scalars().all()]

        logger.info(
            f"Opened {len(deliveries)} deliveries",
            extra={"queue": queue, "consumer_tag": consumer_tag},
        )
        return deliveries

    async def ack(self, delivery_tag: UUID, consumer_tag: str) -> bool:
        """
        Acknowledge a delivery, removing its message permanently.

        Args:
            delivery_tag: Tag of the open delivery.
            consumer_tag: The consumer that holds it.

        Returns:
            True if the delivery was open and is now acknowledged.
        """
        stmt = (
            delete(Message)
            .where(self._open_delivery(delivery_tag, consumer_tag))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        acked = result.rowcount == 1

        if not acked:
            logger.warning(
                "Ack for unknown delivery tag",
                extra={"delivery_tag": str(delivery_tag), "consumer_tag": consumer_tag},
            )
        return acked

    async def reject(
        self,
        delivery_tag: UUID,
        consumer_tag: str,
        requeue: bool,
        error: str | None = None,
    ) -> bool:
        """
        Reject a delivery.

        Without requeue the message is discarded. With requeue it returns to
        its original position in the queue and is flagged redelivered on its
        next delivery.

        Args:
            delivery_tag: Tag of the open delivery.
            consumer_tag: The consumer that holds it.
            requeue: Return the message to the queue instead of discarding it.
            error: Reason recorded on a requeued message.

        Returns:
            True if the delivery was open and is now finalized.
        """
        if requeue:
            stmt = (
                update(Message)
                .where(self._open_delivery(delivery_tag, consumer_tag))
                .values(
                    status=MessageStatus.READY,
                    consumer_tag=None,
                    delivery_tag=None,
                    lease_expires_at=None,
                    last_error=error,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
        else:
            stmt = (
                delete(Message)
                .where(self._open_delivery(delivery_tag, consumer_tag))
                .execution_options(synchronize_session=False)
            )

        result = await self._session.execute(stmt)
        rejected = result.rowcount == 1

        if rejected:
            logger.info(
                "Delivery rejected",
                extra={
                    "delivery_tag": str(delivery_tag),
                    "requeue": requeue,
                    "error": error,
                },
            )
        else:
            logger.warning(
                "Reject for unknown delivery tag",
                extra={"delivery_tag": str(delivery_tag), "consumer_tag": consumer_tag},
            )
        return rejected

    async def dead_letter(
        self,
        delivery_tag: UUID,
        consumer_tag: str,
        target_queue: str,
        error: str | None = None,
    ) -> bool:
        """
        Move the message of an open delivery to a dead-letter queue.

        The message arrives on the target as a fresh ready message with its
        origin recorded in ``dead_lettered_from``.

        Returns:
            True if the delivery was open and is now dead-lettered.
        """
        stmt = (
            update(Message)
            .where(self._open_delivery(delivery_tag, consumer_tag))
            .values(
                dead_lettered_from=Message.queue_name,
                queue_name=target_queue,
                status=MessageStatus.READY,
                consumer_tag=None,
                delivery_tag=None,
                lease_expires_at=None,
                delivery_count=0,
                redelivered=False,
                last_error=error,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        moved = result.rowcount == 1

        if moved:
            logger.warning(
                "Delivery dead-lettered",
                extra={
                    "delivery_tag": str(delivery_tag),
                    "target_queue": target_queue,
                    "error": error,
                },
            )
        return moved

    async def extend_leases(
        self,
        delivery_tags: Sequence[UUID],
        consumer_tag: str,
        lease_seconds: int,
    ) -> int:
        """
        Extend the leases of open deliveries (heartbeat).

        Returns:
            Number of leases extended.
        """
        if not delivery_tags:
            return 0

        now = utcnow()
        stmt = (
            update(Message)
            .where(
                and_(
                    Message.delivery_tag.in_(list(delivery_tags)),
                    Message.consumer_tag == consumer_tag,
                    Message.status == MessageStatus.UNACKED,
                )
            )
            .values(
                lease_expires_at=now + timedelta(seconds=lease_seconds),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def release_consumer(self, consumer_tag: str) -> int:
        """
        Requeue every delivery still held by a consumer.

        Called when a consumer disconnects; equivalent to the broker requeueing
        the unacknowledged deliveries of a closed channel.

        Returns:
            Number of deliveries returned to their queues.
        """
        stmt = (
            update(Message)
            .where(
                and_(
                    Message.consumer_tag == consumer_tag,
                    Message.status == MessageStatus.UNACKED,
                )
            )
            .values(
                status=MessageStatus.READY,
                consumer_tag=None,
                delivery_tag=None,
                lease_expires_at=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        count = result.rowcount

        if count > 0:
            logger.info(
                f"Released {count} deliveries",
                extra={"consumer_tag": consumer_tag},
            )
        return count

    async def recover_expired_leases(self) -> int:
        """
        Recover deliveries with expired leases.

        This is called by the reaper to handle consumer crashes.
        Unacked messages whose lease ran out are returned to READY.

        Returns:
            Number of recovered messages.
        """
        now = utcnow()

        stmt = (
            update(Message)
            .where(
                and_(
                    Message.status == MessageStatus.UNACKED,
                    Message.lease_expires_at < now,
                )
            )
            .values(
                status=MessageStatus.READY,
                consumer_tag=None,
                delivery_tag=None,
                lease_expires_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        count = result.rowcount

        if count > 0:
            logger.info(f"Recovered {count} deliveries with expired leases")

        return count

    async def get_queue_stats(self, queue: str) -> QueueStats:
        """
        Count ready and unacked messages of a queue.

        Args:
            queue: Queue name.

        Returns:
            QueueStats for the queue.
        """
        stmt = (
            select(Message.status, func.count())
            .where(Message.queue_name == queue)
            .group_by(Message.status)
        )
        result = await self._session.execute(stmt)
        counts = {MessageStatus(status): count for status, count in result.all()}

        return QueueStats(
            queue=queue,
            ready=counts.get(MessageStatus.READY, 0),
            unacked=counts.get(MessageStatus.UNACKED, 0),
        )

    async def get_queue_depth(self, queue: str) -> int:
        """Get the number of ready messages in a queue."""
        stmt = select(func.count()).select_from(Message).where(
            and_(
                Message.queue_name == queue,
                Message.status == MessageStatus.READY,
            )
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def count_unacked(self, consumer_tag: str) -> int:
        """Get the number of deliveries currently held by a consumer."""
        stmt = select(func.count()).select_from(Message).where(
            and_(
                Message.consumer_tag == consumer_tag,
                Message.status == MessageStatus.UNACKED,
            )
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def list_messages(self, queue: str, limit: int = 100) -> Sequence[Message]:
        """List messages of a queue in FIFO order."""
        stmt = (
            select(Message)
            .where(Message.queue_name == queue)
            .order_by(Message.sequence)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def purge_queue(self, queue: str) -> int:
        """
        Delete all ready messages of a queue.
        Open deliveries are left to be finalized by their consumers.

        Returns:
            Number of purged messages.
        """
        stmt = (
            delete(Message)
            .where(
                and_(
                    Message.queue_name == queue,
                    Message.status == MessageStatus.READY,
                )
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        count = result.rowcount

        logger.info(f"Purged {count} messages", extra={"queue": queue})
        return count

    @staticmethod
    def _open_delivery(delivery_tag: UUID, consumer_tag: str):
        return and_(
            Message.delivery_tag == delivery_tag,
            Message.consumer_tag == consumer_tag,
            Message.status == MessageStatus.UNACKED,
        )
