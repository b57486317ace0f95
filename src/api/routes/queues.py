"""
Queue inspection routes.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from src.api.dependencies import get_link
from src.broker.connection import Link
from src.broker.repository import MessageRepository
from src.observability.metrics import get_metrics
from src.types.api import QueueStatsResponse

router = APIRouter(prefix="/queues", tags=["Queues"])


@router.get(
    "/{name}/stats",
    response_model=QueueStatsResponse,
    summary="Queue statistics",
    description="Count ready and unacknowledged messages of a queue.",
)
async def get_queue_stats(
    name: str,
    link: Link = Depends(get_link),
) -> QueueStatsResponse:
    """
    Get message counts for a queue.

    Args:
        name: Queue name.
        link: Broker link.

    Returns:
        QueueStatsResponse for the queue.

    Raises:
        HTTPException: If the queue was never declared.
    """
    async with link.channel() as session:
        repo = MessageRepository(session)

        if await repo.get_queue(name) is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Queue {name} not found",
            )

        stats = await repo.get_queue_stats(name)

    get_metrics().update_queue_depth(name, stats.ready)

    return QueueStatsResponse(
        queue=stats.queue,
        ready=stats.ready,
        unacked=stats.unacked,
        total=stats.total,
    )
