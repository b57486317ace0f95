"""
Integration tests for the lease reaper.
"""

import asyncio

import pytest

from src.broker.codec import serialize_task
from src.broker.connection import Link
from src.broker.repository import MessageRepository
from src.broker.topology import QueueHandle
from src.reaper.main import Reaper
from src.types.task import Task


class TestReaper:
    """Tests for recovering expired leases."""

    async def enqueue_and_acquire(self, link: Link, queue: QueueHandle, lease_seconds: int) -> None:
        task = Task.for_post("p1", "ig")
        async with link.channel() as session:
            repo = MessageRepository(session)
            await repo.enqueue(queue.name, task.id, serialize_task(task))

        async with link.channel() as session:
            await MessageRepository(session).acquire(
                queue=queue.name,
                consumer_tag="crashed-consumer",
                limit=1,
                lease_seconds=lease_seconds,
            )

    @pytest.mark.asyncio
    async def test_run_once_recovers_expired(self, link: Link, queue: QueueHandle, queue_stats):
        await self.enqueue_and_acquire(link, queue, lease_seconds=0)
        await asyncio.sleep(0.05)

        recovered = await Reaper(link, interval_seconds=1).run_once()

        assert recovered >= 1
        stats = await queue_stats(queue.name)
        assert (stats.ready, stats.unacked) == (1, 0)

    @pytest.mark.asyncio
    async def test_live_lease_untouched(self, link: Link, queue: QueueHandle, queue_stats):
        await self.enqueue_and_acquire(link, queue, lease_seconds=60)

        await Reaper(link).run_once()

        stats = await queue_stats(queue.name)
        assert (stats.ready, stats.unacked) == (0, 1)

    @pytest.mark.asyncio
    async def test_loop_recovers_until_stopped(
        self,
        link: Link,
        queue: QueueHandle,
        queue_stats,
        wait_until,
    ):
        """Test the periodic loop recovers leases and exits on stop()."""
        reaper = Reaper(link, interval_seconds=1)
        await self.enqueue_and_acquire(link, queue, lease_seconds=0)
        await asyncio.sleep(0.05)

        loop_task = asyncio.create_task(reaper.start())

        async def recovered() -> bool:
            return (await queue_stats(queue.name)).ready == 1

        try:
            await wait_until(recovered)
            await reaper.stop()
            await asyncio.wait_for(loop_task, timeout=5)
        finally:
            loop_task.cancel()

        assert loop_task.done()

    @pytest.mark.asyncio
    async def test_explicit_zero_interval_kept(self, link: Link):
        assert Reaper(link, interval_seconds=0).interval == 0
