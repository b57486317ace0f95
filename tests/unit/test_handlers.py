"""
Unit tests for task handlers.
"""

import asyncio
from uuid import uuid4

import pytest

from src.types.task import DeliveryContext, Task, TaskResult
from src.worker.handlers import (
    execute_task,
    get_handler,
    handle_upload,
    list_handlers,
    register_handler,
    unregister_handler,
)


class TestTaskHandlers:
    """Tests for task handlers."""

    @pytest.fixture
    def context(self) -> DeliveryContext:
        """Create a test delivery context."""
        return DeliveryContext(
            task=Task.for_post("p1", "ig", duration_seconds=0),
            delivery_tag=uuid4(),
            consumer_tag="test-consumer",
            queue="post_tasks",
            redelivered=False,
            delivery_count=1,
        )

    def test_unknown_platform_uses_upload(self):
        """Test platforms without a dedicated handler fall back to upload."""
        assert get_handler("nonexistent") is handle_upload

    def test_register_handler(self):
        """Test registering and removing a platform handler."""

        @register_handler("test-platform")
        async def handle_test(context: DeliveryContext) -> TaskResult:
            return TaskResult(success=True)

        try:
            assert get_handler("test-platform") is handle_test
            assert "test-platform" in list_handlers()
        finally:
            unregister_handler("test-platform")

        assert get_handler("test-platform") is handle_upload

    @pytest.mark.asyncio
    async def test_upload_handler(self, context: DeliveryContext):
        """Test the default upload handler."""
        result = await handle_upload(context)

        assert result.success is True
        assert result.output == {"post_id": "p1", "platform": "ig"}

    def test_first_delivery(self, context: DeliveryContext):
        """Test first deliveries are recognised."""
        assert context.is_first_delivery is True


class TestExecuteTask:
    """Tests for running a handler to a result."""

    @pytest.fixture
    def context(self) -> DeliveryContext:
        return DeliveryContext(
            task=Task.for_post("p1", "ig"),
            delivery_tag=uuid4(),
            consumer_tag="test-consumer",
            queue="post_tasks",
            redelivered=True,
            delivery_count=2,
        )

    @pytest.mark.asyncio
    async def test_success_records_duration(self, context: DeliveryContext):
        """Test successful results carry their duration."""

        async def handler(ctx: DeliveryContext) -> TaskResult:
            return TaskResult(success=True, output={"ok": True})

        result = await execute_task(context, handler=handler)

        assert result.success is True
        assert result.output == {"ok": True}
        assert result.duration_ms is not None
        assert result.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_exception_becomes_failure(self, context: DeliveryContext):
        """Test handler exceptions never escape."""

        async def handler(ctx: DeliveryContext) -> TaskResult:
            raise RuntimeError("Intentional failure")

        result = await execute_task(context, handler=handler)

        assert result.success is False
        assert "Intentional failure" in result.error
        assert result.requeue is False

    @pytest.mark.asyncio
    async def test_invalid_return_becomes_failure(self, context: DeliveryContext):
        """Test a handler returning something other than a TaskResult fails the task."""

        async def handler(ctx: DeliveryContext):
            return None

        result = await execute_task(context, handler=handler)

        assert result.success is False
        assert "expected TaskResult" in result.error
        assert result.duration_ms is not None

    @pytest.mark.asyncio
    async def test_timeout_asks_for_requeue(self, context: DeliveryContext):
        """Test a handler exceeding its timeout fails with requeue."""

        async def handler(ctx: DeliveryContext) -> TaskResult:
            await asyncio.sleep(10)
            return TaskResult(success=True)

        result = await execute_task(context, handler=handler, timeout=0.05)

        assert result.success is False
        assert result.requeue is True
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_registered_handler_used_by_default(self, context: DeliveryContext):
        """Test the platform's registered handler runs when none is given."""
        calls: list[str] = []

        @register_handler("ig")
        async def handle_ig(ctx: DeliveryContext) -> TaskResult:
            calls.append(ctx.task.post_id)
            return TaskResult(success=True)

        try:
            result = await execute_task(context)
        finally:
            unregister_handler("ig")

        assert result.success is True
        assert calls == ["p1"]
