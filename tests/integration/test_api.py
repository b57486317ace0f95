"""
Integration tests for the API endpoints.
"""

import pytest
from fastapi import FastAPI
from httpx import AsyncClient

from src.broker.codec import deserialize_task
from src.broker.connection import Link, connect
from src.broker.publisher import Publisher
from src.broker.repository import MessageRepository
from src.broker.topology import QueueHandle


class TestPostNowAPI:
    """Integration tests for post submission."""

    @pytest.mark.asyncio
    async def test_post_now_queues_task(
        self,
        client: AsyncClient,
        link: Link,
        queue: QueueHandle,
    ):
        """Test a submission is durably queued and echoed back."""
        response = await client.post("/post-now", json={"postId": "p1", "platform": "ig"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "queued"
        assert body["message"] == "Your post is being processed in the background!"
        assert body["data"]["postId"] == "p1"
        assert body["data"]["platform"] == "ig"
        assert "timestamp" in body["data"]

        async with link.channel() as session:
            [message] = await MessageRepository(session).list_messages(queue.name)

        task = deserialize_task(message.body)
        assert str(task.id) == body["data"]["id"]
        assert task.post_id == "p1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"platform": "ig"},
            {"postId": "p1"},
            {"postId": "", "platform": "ig"},
        ],
    )
    async def test_post_now_validation(self, client: AsyncClient, payload: dict):
        response = await client.post("/post-now", json=payload)

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_post_now_broker_down(self, app: FastAPI, client: AsyncClient, broker_url: str):
        """Test a publish failure maps to 503."""
        closed = await connect(broker_url, max_attempts=1)
        await closed.close()
        app.state.publisher = Publisher(closed)

        response = await client.post("/post-now", json={"postId": "p1", "platform": "ig"})

        assert response.status_code == 503
        body = response.json()
        assert body["error"] == "Service unavailable"
        assert "Link" in body["detail"]


class TestQueueStatsAPI:
    """Integration tests for queue inspection."""

    @pytest.mark.asyncio
    async def test_stats(self, client: AsyncClient, queue: QueueHandle):
        await client.post("/post-now", json={"postId": "p1", "platform": "ig"})
        await client.post("/post-now", json={"postId": "p2", "platform": "ig"})

        response = await client.get(f"/queues/{queue.name}/stats")

        assert response.status_code == 200
        assert response.json() == {
            "queue": queue.name,
            "ready": 2,
            "unacked": 0,
            "total": 2,
        }

    @pytest.mark.asyncio
    async def test_stats_unknown_queue(self, client: AsyncClient):
        response = await client.get("/queues/never_declared/stats")

        assert response.status_code == 404


class TestHealthAPI:
    """Integration tests for health endpoints."""

    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["broker"] == "healthy"
        assert "version" in data

    @pytest.mark.asyncio
    async def test_health_check_broker_down(self, app: FastAPI, client: AsyncClient, broker_url: str):
        closed = await connect(broker_url, max_attempts=1)
        await closed.close()
        app.state.link = closed

        response = await client.get("/health")

        assert response.json()["status"] == "degraded"
        assert (await client.get("/ready")).json() == {"ready": False}

    @pytest.mark.asyncio
    async def test_readiness_check(self, client: AsyncClient):
        response = await client.get("/ready")

        assert response.status_code == 200
        assert response.json() == {"ready": True}

    @pytest.mark.asyncio
    async def test_liveness_check(self, client: AsyncClient):
        response = await client.get("/live")

        assert response.status_code == 200
        assert response.json() == {"alive": True}

    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client: AsyncClient):
        await client.post("/post-now", json={"postId": "p1", "platform": "ig"})

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "tasks_published_total" in response.text
