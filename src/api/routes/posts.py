"""
Post submission routes.
"""

import logging

from fastapi import APIRouter, Depends, status

from src.api.dependencies import get_publisher, get_queue
from src.broker.publisher import Publisher
from src.broker.topology import QueueHandle
from src.types.api import ErrorResponse, PostNowRequest, QueuedResponse
from src.types.task import Task

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Posts"])


@router.post(
    "/post-now",
    response_model=QueuedResponse,
    status_code=status.HTTP_200_OK,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="Publish a post in the background",
    description="Queue a post for upload. Returns once the task is durably queued.",
)
async def post_now(
    request: PostNowRequest,
    publisher: Publisher = Depends(get_publisher),
    queue: QueueHandle = Depends(get_queue),
) -> QueuedResponse:
    """
    Queue a post upload.

    The response does not wait for the upload; a consumer executes the
    task later. A broker failure surfaces as a PublishError, which the
    application maps to 503.

    Args:
        request: Post submission request.
        publisher: The task publisher.
        queue: The task queue.

    Returns:
        QueuedResponse carrying the queued task.
    """
    task = Task.for_post(request.post_id, request.platform)
    ack = await publisher.publish(queue, task)

    logger.info(
        "Post queued",
        extra={
            "task_id": str(task.id),
            "post_id": task.post_id,
            "platform": task.platform,
            "sequence": ack.sequence,
        },
    )

    return QueuedResponse(data=task)
