"""
Lease reaper for recovering expired deliveries.

The reaper runs periodically to find unacknowledged deliveries whose lease
ran out and returns their messages to the queue. This handles consumer
crashes and keeps delivery at-least-once.
"""

import asyncio
import logging
import signal

from src.broker.connection import Link, connect
from src.broker.repository import MessageRepository
from src.config import get_settings
from src.errors import BrokerConnectionError
from src.observability.logging import setup_logging
from src.observability.metrics import get_metrics, setup_metrics

logger = logging.getLogger(__name__)


class Reaper:
    """
    Lease reaper that recovers expired deliveries.

    Runs periodically to:
    1. Find UNACKED messages with an expired lease_expires_at
    2. Return them to READY, flagged for redelivery
    3. Record metrics for monitoring
    """

    def __init__(self, link: Link, interval_seconds: int | None = None):
        """
        Initialize the reaper.

        Args:
            link: The broker link.
            interval_seconds: Seconds between reaper runs.
        """
        settings = get_settings()
        self.link = link
        self.interval = (
            interval_seconds
            if interval_seconds is not None
            else settings.reaper_interval_seconds
        )
        self._running = False
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(f"Reaper starting with interval {self.interval}s")
        self._running = True

        while self._running:
            try:
                recovered = await self._recover_expired_leases()

                if recovered > 0:
                    logger.info(f"Recovered {recovered} expired leases")

            except BrokerConnectionError:
                if self.link.is_closed:
                    raise
                logger.exception("Broker unavailable")
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            await asyncio.sleep(self.interval)

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False

    async def _recover_expired_leases(self) -> int:
        """
        Find and recover deliveries with expired leases.

        Returns:
            Number of deliveries recovered.
        """
        async with self.link.channel() as session:
            repo = MessageRepository(session)
            count = await repo.recover_expired_leases()

        if count > 0:
            self._metrics.record_lease_expired(count)

        return count

    async def run_once(self) -> int:
        """
        Run the reaper once (for testing or cron-style execution).

        Returns:
            Number of deliveries recovered.
        """
        return await self._recover_expired_leases()


async def run_async() -> None:
    """Run the reaper asynchronously."""
    setup_logging("reaper")
    setup_metrics()

    link = await connect()
    reaper = Reaper(link)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(reaper.stop())
        )

    try:
        await reaper.start()
    finally:
        await link.close()


def run() -> None:
    """Run the reaper."""
    try:
        asyncio.run(run_async())
    except BrokerConnectionError as e:
        logger.error(
            "Reaper failed to start",
            extra={"error": str(e), "retryable": e.retryable},
        )
        raise SystemExit(1) from e


if __name__ == "__main__":
    run()
