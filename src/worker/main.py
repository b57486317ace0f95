"""
Consumer process for executing tasks.

The consumer pulls deliveries from the queue under a prefetch limit, runs the
task handler for each, and finalizes every delivery with an ack, reject, or
dead-letter according to the outcome.
"""

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from functools import partial
from uuid import UUID, uuid4

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from src.broker.codec import deserialize_task
from src.broker.connection import Link, connect, is_retryable
from src.broker.repository import MessageRepository
from src.broker.topology import QueueHandle, dead_letter_name, ensure_queue
from src.config import get_settings
from src.constants import SPAN_HANDLE_DELIVERY, Disposition, FailurePolicy
from src.errors import BrokerConnectionError, DeserializationError
from src.observability.logging import bind_context, setup_logging
from src.observability.metrics import get_metrics, setup_metrics
from src.observability.tracing import (
    get_tracer,
    instrument_sqlalchemy,
    messaging_attributes,
    setup_tracing,
)
from src.types.task import Delivery, DeliveryContext, TaskResult
from src.worker.handlers import TaskHandler, execute_task
from src.worker.policy import decide_disposition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingDisposition:
    """A decided outcome the broker has not accepted yet."""

    delivery: Delivery
    disposition: Disposition
    error: str | None
    started_at: float


class Consumer:
    """
    Prefetch-bounded consumer of one queue.

    Features:
    - Never holds more than ``prefetch`` unacknowledged deliveries
    - Heartbeat to extend leases for long-running handlers
    - Graceful shutdown on stop(); in-flight handlers finish first
    - Deliveries still open on exit are released back to the queue
    - Configurable failure policy: discard, retry, or dead-letter
    """

    def __init__(
        self,
        link: Link,
        queue: QueueHandle,
        handler: TaskHandler | None = None,
        prefetch: int | None = None,
        consumer_tag: str | None = None,
        poll_interval: float | None = None,
        lease_duration: int | None = None,
        heartbeat_interval: float | None = None,
        handler_timeout: float | None = None,
        failure_policy: FailurePolicy | None = None,
        max_deliveries: int | None = None,
        dead_letter_queue: str | None = None,
        finalize_max_attempts: int | None = None,
        finalize_backoff: float | None = None,
    ):
        """
        Initialize the consumer.

        Args:
            link: The broker link.
            queue: The declared queue to consume.
            handler: Handler for every task. Defaults to the platform registry.
            prefetch: Maximum unacknowledged deliveries held at once.
            consumer_tag: Unique consumer identifier. Defaults to hostname + PID.
            poll_interval: Seconds between polls when the queue is empty.
            lease_duration: Seconds a delivery stays owned without heartbeat.
            heartbeat_interval: Seconds between lease extensions.
            handler_timeout: Optional bound on one handler run, in seconds.
            failure_policy: What to do with failed tasks.
            max_deliveries: Deliveries allowed before a failing task is given up.
            dead_letter_queue: Target for the dead-letter policy.
            finalize_max_attempts: Tries per ack/reject before the delivery
                is parked until the next poll.
            finalize_backoff: Multiplier of the wait between those tries.
        """
        settings = get_settings()

        self.link = link
        self.queue = queue
        self.handler = handler
        self.prefetch = prefetch if prefetch is not None else settings.consumer_prefetch
        if self.prefetch < 1:
            raise ValueError("prefetch must be at least 1")

        self.consumer_tag = consumer_tag or (
            f"{os.uname().nodename}-{os.getpid()}-{uuid4().hex[:8]}"
        )
        self.poll_interval = (
            poll_interval
            if poll_interval is not None
            else settings.consumer_poll_interval_seconds
        )
        self.lease_duration = (
            lease_duration
            if lease_duration is not None
            else settings.consumer_lease_duration_seconds
        )
        self.heartbeat_interval = (
            heartbeat_interval
            if heartbeat_interval is not None
            else settings.consumer_heartbeat_interval_seconds
        )
        self.handler_timeout = (
            handler_timeout
            if handler_timeout is not None
            else settings.consumer_handler_timeout_seconds
        )
        self.failure_policy = failure_policy or settings.consumer_failure_policy
        self.max_deliveries = (
            max_deliveries
            if max_deliveries is not None
            else settings.consumer_max_deliveries
        )
        if self.max_deliveries < 1:
            raise ValueError("max_deliveries must be at least 1")
        self.finalize_max_attempts = (
            finalize_max_attempts
            if finalize_max_attempts is not None
            else settings.consumer_finalize_max_attempts
        )
        if self.finalize_max_attempts < 1:
            raise ValueError("finalize_max_attempts must be at least 1")
        self.finalize_backoff = (
            finalize_backoff
            if finalize_backoff is not None
            else settings.consumer_finalize_backoff_seconds
        )
        self.dead_letter_queue = (
            dead_letter_queue
            or queue.dead_letter_queue
            or settings.consumer_dead_letter_queue
            or dead_letter_name(queue.name)
        )

        self._running = False
        self._in_flight: dict[UUID, asyncio.Task] = {}
        # Deliveries whose disposition the broker has not accepted yet.
        # They keep their prefetch slot until finalized or released.
        self._pending: dict[UUID, PendingDisposition] = {}
        self._heartbeat_task: asyncio.Task | None = None
        self._dead_letter: QueueHandle | None = None
        self._metrics = get_metrics()

    @property
    def in_flight(self) -> int:
        """Number of deliveries currently held by this consumer."""
        return len(self._in_flight) + len(self._pending)

    async def subscribe(self) -> None:
        """
        Consume until stop() is called, the task is cancelled, or the link
        is closed.
        """
        logger.info(
            "Consumer subscribing",
            extra={
                "consumer_tag": self.consumer_tag,
                "queue": self.queue.name,
                "prefetch": self.prefetch,
                "failure_policy": self.failure_policy.value,
            },
        )

        self._running = True

        if self.failure_policy == FailurePolicy.DEAD_LETTER:
            self._dead_letter = await ensure_queue(
                self.link,
                self.dead_letter_queue,
                durable=self.queue.durable,
            )

        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        try:
            while self._running:
                try:
                    opened = await self._fill()
                except BrokerConnectionError:
                    if self.link.is_closed:
                        raise
                    logger.exception("Broker unavailable", extra={"consumer_tag": self.consumer_tag})
                    opened = 0
                except Exception as e:
                    logger.exception(
                        f"Error in consumer loop: {e}",
                        extra={"consumer_tag": self.consumer_tag},
                    )
                    opened = 0

                await self._wait(opened)

            # Let in-flight handlers finish before releasing the rest
            if self._in_flight:
                logger.info(f"Waiting for {len(self._in_flight)} deliveries to finish")
                await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)
            await self._retry_pending()

        except asyncio.CancelledError:
            for task in list(self._in_flight.values()):
                task.cancel()
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)
            raise

        finally:
            self._running = False

            if self._heartbeat_task:
                self._heartbeat_task.cancel()
                try:
                    await self._heartbeat_task
                except asyncio.CancelledError:
                    pass

            await self._release()
            logger.info("Consumer stopped", extra={"consumer_tag": self.consumer_tag})

    async def stop(self) -> None:
        """Stop consuming gracefully."""
        logger.info("Consumer stopping", extra={"consumer_tag": self.consumer_tag})
        self._running = False

    async def _fill(self) -> int:
        """
        Open deliveries into the free prefetch slots.

        Returns:
            Number of deliveries opened.
        """
        if self._pending:
            await self._retry_pending()

        free = self.prefetch - self.in_flight
        if free <= 0:
            return 0

        async with self.link.channel() as session:
            repo = MessageRepository(session)
            deliveries = await repo.acquire(
                queue=self.queue.name,
                consumer_tag=self.consumer_tag,
                limit=free,
                lease_seconds=self.lease_duration,
            )

        if not deliveries:
            return 0

        self._metrics.record_deliveries_acquired(self.queue.name, len(deliveries))

        for delivery in deliveries:
            task = asyncio.create_task(self._handle_delivery(delivery))
            self._in_flight[delivery.delivery_tag] = task
            task.add_done_callback(partial(self._forget, delivery.delivery_tag))

        self._metrics.set_in_flight(self.queue.name, self.in_flight)
        return len(deliveries)

    def _forget(self, delivery_tag: UUID, _task: asyncio.Task) -> None:
        self._in_flight.pop(delivery_tag, None)
        self._metrics.set_in_flight(self.queue.name, self.in_flight)

    async def _wait(self, opened: int) -> None:
        """Block until a slot frees up, or until the next poll is due."""
        if opened and self.in_flight < self.prefetch:
            return

        if self._in_flight:
            await asyncio.wait(
                list(self._in_flight.values()),
                timeout=self.poll_interval,
                return_when=asyncio.FIRST_COMPLETED,
            )
        else:
            await asyncio.sleep(self.poll_interval)

    async def _handle_delivery(self, delivery: Delivery) -> None:
        """
        Run one delivery to its disposition.

        Handles the full lifecycle:
        1. Decode the body (malformed bodies are finalized, never left open)
        2. Execute the handler
        3. Ack, requeue, discard, or dead-letter

        A delivery whose disposition cannot be applied after retrying stays
        counted against prefetch until a later poll applies it or the consumer
        releases it.
        """
        start_time = time.monotonic()

        try:
            result, error = await self._process(delivery)
        except Exception as e:
            logger.exception(
                "Exception processing delivery",
                extra={"delivery_tag": str(delivery.delivery_tag), "error": str(e)},
            )
            error = f"Delivery processing failed: {e}"
            result = TaskResult(success=False, error=error)

        disposition = decide_disposition(
            result,
            delivery_count=delivery.delivery_count,
            policy=self.failure_policy,
            max_deliveries=self.max_deliveries,
        )
        pending = PendingDisposition(delivery, disposition, error, start_time)

        try:
            await self._finalize_with_retry(pending)
        except Exception as e:
            logger.error(
                "Could not finalize delivery, holding it for the next poll",
                extra={
                    "delivery_tag": str(delivery.delivery_tag),
                    "disposition": disposition.value,
                    "error": str(e),
                },
            )
            self._pending[delivery.delivery_tag] = pending
            return

        self._record_finalized(pending)

    async def _process(self, delivery: Delivery) -> tuple[TaskResult | None, str | None]:
        """Decode and execute a delivery. A None result means a malformed body."""
        try:
            task = deserialize_task(delivery.body, delivery.content_type)
        except DeserializationError as e:
            logger.warning(
                "Malformed delivery",
                extra={"delivery_tag": str(delivery.delivery_tag), "error": str(e)},
            )
            return None, str(e)

        context = DeliveryContext(
            task=task,
            delivery_tag=delivery.delivery_tag,
            consumer_tag=self.consumer_tag,
            queue=delivery.queue,
            redelivered=delivery.redelivered,
            delivery_count=delivery.delivery_count,
        )

        logger.info(
            "Received task",
            extra={
                "task_id": str(task.id),
                "platform": task.platform,
                "redelivered": delivery.redelivered,
                "delivery_count": delivery.delivery_count,
            },
        )

        with get_tracer().start_as_current_span(SPAN_HANDLE_DELIVERY) as span:
            span.set_attributes(
                messaging_attributes(
                    "process",
                    delivery.queue,
                    str(task.id),
                    delivery_tag=str(delivery.delivery_tag),
                    delivery_count=delivery.delivery_count,
                    redelivered=delivery.redelivered,
                )
            )

            result = await execute_task(
                context,
                handler=self.handler,
                timeout=self.handler_timeout,
            )
        return result, result.error

    async def _finalize_with_retry(self, pending: PendingDisposition) -> bool:
        """Apply a disposition, retrying transient broker errors with backoff."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.finalize_max_attempts),
            wait=wait_exponential(multiplier=self.finalize_backoff),
            retry=retry_if_exception(is_retryable),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                done = await self._finalize(pending.delivery, pending.disposition, pending.error)
        return done

    async def _retry_pending(self) -> None:
        """Try once more to apply dispositions the broker did not accept."""
        for delivery_tag, pending in list(self._pending.items()):
            try:
                await self._finalize(pending.delivery, pending.disposition, pending.error)
            except Exception as e:
                logger.warning(
                    "Delivery still awaiting finalize",
                    extra={"delivery_tag": str(delivery_tag), "error": str(e)},
                )
                continue

            del self._pending[delivery_tag]
            self._record_finalized(pending)

        self._metrics.set_in_flight(self.queue.name, self.in_flight)

    def _record_finalized(self, pending: PendingDisposition) -> None:
        self._metrics.record_delivery_finalized(
            queue=pending.delivery.queue,
            disposition=pending.disposition.value,
            duration_seconds=time.monotonic() - pending.started_at,
        )

    async def _finalize(
        self,
        delivery: Delivery,
        disposition: Disposition,
        error: str | None,
    ) -> bool:
        """
        Apply a disposition to an open delivery.

        Returns:
            True if the broker still knew the delivery.
        """
        async with self.link.channel() as session:
            repo = MessageRepository(session)

            if disposition == Disposition.ACK:
                done = await repo.ack(delivery.delivery_tag, self.consumer_tag)
            elif disposition == Disposition.REQUEUE:
                done = await repo.reject(
                    delivery.delivery_tag, self.consumer_tag, requeue=True, error=error
                )
            elif disposition == Disposition.DEAD_LETTER:
                done = await repo.dead_letter(
                    delivery.delivery_tag,
                    self.consumer_tag,
                    target_queue=self._dead_letter.name,
                    error=error,
                )
            else:
                done = await repo.reject(
                    delivery.delivery_tag, self.consumer_tag, requeue=False, error=error
                )

        if done:
            log = logger.info if disposition == Disposition.ACK else logger.warning
            log(
                "Delivery finalized",
                extra={
                    "delivery_tag": str(delivery.delivery_tag),
                    "disposition": disposition.value,
                    "error": error,
                },
            )
        else:
            logger.warning(
                "Delivery no longer held - lease may have expired",
                extra={
                    "delivery_tag": str(delivery.delivery_tag),
                    "disposition": disposition.value,
                },
            )
        return done

    async def _release(self) -> None:
        """Return every delivery still held by this consumer to the queue."""
        try:
            async with self.link.channel() as session:
                repo = MessageRepository(session)
                await repo.release_consumer(self.consumer_tag)
        except Exception as e:
            logger.warning(
                "Could not release deliveries, they return on lease expiry",
                extra={"consumer_tag": self.consumer_tag, "error": str(e)},
            )
            return
        self._pending.clear()

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend leases on open deliveries.

        This prevents deliveries from being reclaimed by the reaper
        while their handlers are still running.
        """
        while self._running:
            try:
                await asyncio.sleep(self.heartbeat_interval)

                if not self._in_flight:
                    continue

                async with self.link.channel() as session:
                    repo = MessageRepository(session)
                    extended = await repo.extend_leases(
                        list(self._in_flight.keys()),
                        self.consumer_tag,
                        self.lease_duration,
                    )

                logger.debug(
                    "Extended leases",
                    extra={"consumer_tag": self.consumer_tag, "count": extended},
                )

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in heartbeat loop: {e}")


async def run_async() -> None:
    """Run the consumer asynchronously."""
    setup_logging("worker")
    setup_metrics()
    setup_tracing("worker")

    settings = get_settings()
    link = await connect()
    if settings.otel_enabled:
        instrument_sqlalchemy(link.engine.sync_engine)

    try:
        queue = await ensure_queue(link, settings.queue_name, durable=settings.queue_durable)
        consumer = Consumer(link, queue)
        bind_context(consumer_tag=consumer.consumer_tag)

        # Handle shutdown signals
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda: asyncio.create_task(consumer.stop())
            )

        logger.info(f"Worker is running, waiting for messages in '{queue.name}'")
        await consumer.subscribe()
    finally:
        await link.close()


def run() -> None:
    """Run the worker."""
    try:
        asyncio.run(run_async())
    except BrokerConnectionError as e:
        logger.error(
            "Worker failed to start",
            extra={"error": str(e), "retryable": e.retryable},
        )
        raise SystemExit(1) from e


if __name__ == "__main__":
    run()
