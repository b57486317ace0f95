"""
Integration tests for queue declaration.
"""

import asyncio

import pytest

from src.broker.connection import Link, connect
from src.broker.repository import MessageRepository
from src.broker.topology import dead_letter_name, ensure_queue
from src.errors import TopologyConflictError


class TestEnsureQueue:
    """Tests for idempotent queue declaration."""

    @pytest.mark.asyncio
    async def test_declare_new_queue(self, link: Link, queue_name: str):
        """Test declaring a queue returns its stored settings."""
        handle = await ensure_queue(link, queue_name, durable=True)

        assert handle.name == queue_name
        assert handle.durable is True
        assert handle.dead_letter_queue is None

    @pytest.mark.asyncio
    async def test_repeated_declaration_is_idempotent(self, link: Link, queue_name: str):
        """Test declaring N times yields one queue and no error."""
        handles = [await ensure_queue(link, queue_name) for _ in range(5)]

        assert len(set(handles)) == 1

        async with link.channel() as session:
            repo = MessageRepository(session)
            record = await repo.get_queue(queue_name)

        assert record is not None
        assert record.name == queue_name

    @pytest.mark.asyncio
    async def test_concurrent_declaration_from_two_links(
        self,
        link: Link,
        other_link: Link,
        queue_name: str,
    ):
        """Test publisher and consumer may declare the same queue at once."""
        first, second = await asyncio.gather(
            ensure_queue(link, queue_name),
            ensure_queue(other_link, queue_name),
        )

        assert first == second

    @pytest.mark.asyncio
    async def test_durability_conflict(self, link: Link, queue_name: str):
        """Test redeclaring with other durability is a conflict."""
        await ensure_queue(link, queue_name, durable=True)

        with pytest.raises(TopologyConflictError) as exc_info:
            await ensure_queue(link, queue_name, durable=False)

        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_dead_letter_conflict(self, link: Link, queue_name: str):
        """Test an explicit dead-letter target must match the stored one."""
        await ensure_queue(link, queue_name, dead_letter_queue="failed_a")

        with pytest.raises(TopologyConflictError):
            await ensure_queue(link, queue_name, dead_letter_queue="failed_b")

    @pytest.mark.asyncio
    async def test_omitted_dead_letter_keeps_stored(self, link: Link, queue_name: str):
        """Test declaring without a dead-letter target accepts the stored one."""
        await ensure_queue(link, queue_name, dead_letter_queue="failed")

        handle = await ensure_queue(link, queue_name)

        assert handle.dead_letter_queue == "failed"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["", "q" * 256])
    async def test_invalid_name(self, link: Link, name: str):
        with pytest.raises(ValueError):
            await ensure_queue(link, name)

    @pytest.mark.asyncio
    async def test_queue_survives_reconnect(self, broker_url: str, queue_name: str):
        """Test a durable queue is still declared after the link is reopened."""
        async with await connect(broker_url, max_attempts=1) as first:
            await ensure_queue(first, queue_name)

        async with await connect(broker_url, max_attempts=1) as second:
            async with second.channel() as session:
                record = await MessageRepository(session).get_queue(queue_name)

        assert record is not None
        assert record.durable is True

    def test_dead_letter_name(self):
        assert dead_letter_name("post_tasks") == "post_tasks.dlq"
