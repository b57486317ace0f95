"""
Pytest configuration and shared fixtures.

Tests run against a throwaway SQLite broker by default. Set TEST_BROKER_URL
to run the same suite against PostgreSQL.
"""

import asyncio
import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from uuid import uuid4

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.api.main import create_app
from src.broker.connection import Link, connect
from src.broker.publisher import Publisher
from src.broker.repository import MessageRepository
from src.broker.topology import QueueHandle, ensure_queue
from src.types.task import DeliveryContext, QueueStats, TaskResult
from src.worker.main import Consumer

TEST_BROKER_URL = os.getenv("TEST_BROKER_URL")


@pytest.fixture
def broker_url(tmp_path: Path) -> str:
    """Get the test broker URL."""
    if TEST_BROKER_URL:
        return TEST_BROKER_URL
    return f"sqlite+aiosqlite:///{tmp_path / 'broker.db'}"


@pytest_asyncio.fixture
async def link(broker_url: str) -> AsyncGenerator[Link]:
    """Open a broker link for tests."""
    link = await connect(broker_url, max_attempts=1)
    yield link
    await link.close()


@pytest_asyncio.fixture
async def other_link(broker_url: str, link: Link) -> AsyncGenerator[Link]:
    """A second, independent link to the same broker (another process)."""
    other = await connect(broker_url, max_attempts=1)
    yield other
    await other.close()


@pytest.fixture
def queue_name() -> str:
    """Generate a unique queue name."""
    return f"test_tasks_{uuid4().hex[:8]}"


@pytest_asyncio.fixture
async def queue(link: Link, queue_name: str) -> QueueHandle:
    """Declare a durable test queue."""
    return await ensure_queue(link, queue_name, durable=True)


@pytest.fixture
def publisher(link: Link) -> Publisher:
    """Create a publisher on the test link."""
    return Publisher(link)


@pytest.fixture
def queue_stats(link: Link) -> Callable[[str], Awaitable[QueueStats]]:
    """Read ready/unacked counts of a queue."""

    async def _stats(name: str) -> QueueStats:
        async with link.channel() as session:
            return await MessageRepository(session).get_queue_stats(name)

    return _stats


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll an async predicate until it holds or the timeout passes."""

    async def _wait(
        predicate: Callable[[], Awaitable[bool]],
        timeout: float = 5.0,
        interval: float = 0.02,
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not await predicate():
            if loop.time() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(interval)

    return _wait


@pytest_asyncio.fixture
async def start_consumer(link: Link) -> AsyncGenerator[Callable[[Consumer], asyncio.Task]]:
    """Run consumers in the background; cancel whatever is left at teardown."""
    running: list[asyncio.Task] = []

    def _start(consumer: Consumer) -> asyncio.Task:
        task = asyncio.create_task(consumer.subscribe())
        running.append(task)
        return task

    yield _start

    for task in running:
        if not task.done():
            task.cancel()
    await asyncio.gather(*running, return_exceptions=True)


class RecordingHandler:
    """Task handler that records what it sees and can be held open."""

    def __init__(self, success: bool = True, requeue: bool = False, hold: bool = False):
        self.success = success
        self.requeue = requeue
        self.seen: list[DeliveryContext] = []
        self.active = 0
        self.max_active = 0
        self.release = asyncio.Event()
        if not hold:
            self.release.set()

    async def __call__(self, context: DeliveryContext) -> TaskResult:
        self.seen.append(context)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await self.release.wait()
        finally:
            self.active -= 1

        if self.success:
            return TaskResult(success=True, output={"post_id": context.task.post_id})
        return TaskResult(success=False, error="upload failed", requeue=self.requeue)

    @property
    def post_ids(self) -> list[str]:
        return [context.task.post_id for context in self.seen]


@pytest.fixture
def recording_handler() -> RecordingHandler:
    """A handler that succeeds immediately."""
    return RecordingHandler()


@pytest_asyncio.fixture
async def app(link: Link, queue: QueueHandle) -> FastAPI:
    """Create a FastAPI app wired to the test broker."""
    app = create_app()
    app.state.link = link
    app.state.queue = queue
    app.state.publisher = Publisher(link)
    return app


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def make_handler() -> type[RecordingHandler]:
    """Factory for handlers with custom outcomes."""
    return RecordingHandler
