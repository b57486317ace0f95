"""
Type definitions for task dispatch.
Contains input/output type definitions for all functions, grouped by module.
"""

from src.types.api import (
    ErrorResponse,
    HealthResponse,
    PostNowRequest,
    QueuedResponse,
    QueueStatsResponse,
)
from src.types.task import (
    Delivery,
    DeliveryContext,
    PublishAck,
    QueueStats,
    Task,
    TaskResult,
)

__all__ = [
    # API types
    "PostNowRequest",
    "QueuedResponse",
    "QueueStatsResponse",
    "HealthResponse",
    "ErrorResponse",
    # Task types
    "Task",
    "TaskResult",
    "Delivery",
    "DeliveryContext",
    "PublishAck",
    "QueueStats",
]
