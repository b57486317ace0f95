"""
Task handlers registry and implementations.

Task handlers must be idempotent - they may be executed multiple times
for the same task in case of consumer crashes or lease expiry.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

from src.config import get_settings
from src.types.task import DeliveryContext, TaskResult

logger = logging.getLogger(__name__)

# Type alias for task handler functions
TaskHandler = Callable[[DeliveryContext], Awaitable[TaskResult]]

# Handler registry, keyed by platform
_handlers: dict[str, TaskHandler] = {}


def register_handler(platform: str) -> Callable[[TaskHandler], TaskHandler]:
    """
    Decorator to register a platform-specific task handler.

    Args:
        platform: The platform this handler publishes to.

    Returns:
        Decorator function.

    Example:
        @register_handler("ig")
        async def handle_instagram(context: DeliveryContext) -> TaskResult:
            ...
    """
    def decorator(handler: TaskHandler) -> TaskHandler:
        _handlers[platform] = handler
        logger.info(f"Registered handler for platform: {platform}")
        return handler
    return decorator


def unregister_handler(platform: str) -> None:
    """Remove a platform handler, falling back to the default upload."""
    _handlers.pop(platform, None)


def get_handler(platform: str) -> TaskHandler:
    """
    Get the handler for a platform.

    Platforms without a dedicated handler use the default upload.
    """
    return _handlers.get(platform, handle_upload)


def list_handlers() -> list[str]:
    """List all platforms with a dedicated handler."""
    return list(_handlers.keys())


async def handle_upload(context: DeliveryContext) -> TaskResult:
    """
    Default handler: simulated upload of a post to its platform.

    Payload may contain:
    - duration_seconds: How long the upload takes
    """
    task = context.task
    duration = task.payload.get(
        "duration_seconds",
        get_settings().task_simulated_duration_seconds,
    )

    logger.info(
        "Uploading post",
        extra={
            "task_id": str(task.id),
            "post_id": task.post_id,
            "platform": task.platform,
            "redelivered": context.redelivered,
        },
    )

    await asyncio.sleep(duration)

    return TaskResult(
        success=True,
        output={"post_id": task.post_id, "platform": task.platform},
    )


async def execute_task(
    context: DeliveryContext,
    handler: TaskHandler | None = None,
    timeout: float | None = None,
) -> TaskResult:
    """
    Execute a task, never raising.

    Handler exceptions and return values that are not a TaskResult become
    failed results. A timeout becomes a failed result that asks for requeue.

    Args:
        context: The delivery context.
        handler: Handler to run. Defaults to the platform's handler.
        timeout: Optional bound on handler execution, in seconds.

    Returns:
        TaskResult from the handler, with duration_ms filled in.
    """
    if handler is None:
        handler = get_handler(context.task.platform)

    start = time.monotonic()
    try:
        result = await asyncio.wait_for(handler(context), timeout=timeout)
        if not isinstance(result, TaskResult):
            logger.error(
                "Handler returned an invalid result",
                extra={"task_id": str(context.task.id), "result_type": type(result).__name__},
            )
            result = TaskResult(
                success=False,
                error=f"Handler returned {type(result).__name__}, expected TaskResult",
            )
    except asyncio.TimeoutError:
        logger.warning(
            "Handler timed out",
            extra={"task_id": str(context.task.id), "timeout": timeout},
        )
        result = TaskResult(
            success=False,
            error=f"Handler timed out after {timeout}s",
            requeue=True,
        )
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"task_id": str(context.task.id), "error": str(e)},
        )
        result = TaskResult(
            success=False,
            error=f"Handler exception: {e}",
        )

    duration_ms = (time.monotonic() - start) * 1000
    return result.model_copy(update={"duration_ms": duration_ms})
