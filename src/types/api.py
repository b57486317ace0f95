"""
API request and response type definitions.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from src.types.task import Task


class PostNowRequest(BaseModel):
    """Request body for publishing a post in the background."""

    model_config = ConfigDict(populate_by_name=True)

    post_id: str = Field(..., alias="postId", min_length=1, description="Post identifier")
    platform: str = Field(..., min_length=1, description="Target platform, e.g. 'ig'")


class QueuedResponse(BaseModel):
    """Response body after a task was durably queued."""

    status: str = "queued"
    message: str = "Your post is being processed in the background!"
    data: Task


class QueueStatsResponse(BaseModel):
    """Message counts of one queue."""

    queue: str
    ready: int
    unacked: int
    total: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    broker: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
