"""
Task publisher.

Publishing returns as soon as the broker has durably accepted the message;
it never waits for a consumer to execute the task.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from src.broker.codec import serialize_task
from src.broker.connection import Link
from src.broker.repository import MessageRepository
from src.broker.topology import QueueHandle
from src.config import get_settings
from src.constants import CONTENT_TYPE_JSON, SPAN_PUBLISH_TASK
from src.errors import BrokerConnectionError, PublishError
from src.observability.metrics import get_metrics
from src.observability.tracing import get_tracer, messaging_attributes
from src.types.task import PublishAck, Task

logger = logging.getLogger(__name__)


class Publisher:
    """
    Durably enqueues tasks over a broker link.

    The enqueue transaction is committed before publish() returns, so a
    returned PublishAck always stands for a message the broker has stored.
    """

    def __init__(self, link: Link):
        self._link = link
        self._metrics = get_metrics()

    async def publish(
        self,
        queue: QueueHandle,
        task: Task,
        persistent: bool | None = None,
    ) -> PublishAck:
        """
        Publish a task to a declared queue.

        Args:
            queue: The target queue.
            task: The task to enqueue.
            persistent: Mark the message persistent. Defaults to the
                configured publisher_persistent.

        Returns:
            PublishAck confirming the stored message.

        Raises:
            SerializationError: If the task cannot be encoded.
            PublishError: If the broker did not accept the message.
        """
        if persistent is None:
            persistent = get_settings().publisher_persistent

        body = serialize_task(task)

        with get_tracer().start_as_current_span(SPAN_PUBLISH_TASK) as span:
            span.set_attributes(messaging_attributes("publish", queue.name, str(task.id)))

            try:
                async with self._link.channel() as session:
                    repo = MessageRepository(session)

                    if await repo.get_queue(queue.name) is None:
                        raise PublishError(
                            f"Queue '{queue.name}' is not declared",
                            queue=queue.name,
                            retryable=False,
                        )

                    message = await repo.enqueue(
                        queue=queue.name,
                        message_id=task.id,
                        body=body,
                        persistent=persistent,
                        content_type=CONTENT_TYPE_JSON,
                    )
                    sequence = message.sequence

            except PublishError:
                self._metrics.record_publish_failure(queue.name)
                raise
            except BrokerConnectionError as e:
                self._metrics.record_publish_failure(queue.name)
                raise PublishError(
                    f"Link unavailable: {e}", queue=queue.name, retryable=e.retryable
                ) from e
            except SQLAlchemyError as e:
                self._metrics.record_publish_failure(queue.name)
                logger.exception(
                    "Broker rejected publish",
                    extra={"queue": queue.name, "task_id": str(task.id)},
                )
                raise PublishError(
                    f"Broker rejected message: {e}", queue=queue.name, retryable=True
                ) from e

        self._metrics.record_task_published(queue.name)

        logger.info(
            "Task published",
            extra={
                "queue": queue.name,
                "task_id": str(task.id),
                "platform": task.platform,
                "sequence": sequence,
            },
        )

        return PublishAck(
            message_id=task.id,
            queue=queue.name,
            sequence=sequence,
            persistent=persistent,
        )
