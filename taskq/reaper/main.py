"""
Lease reaper for recovering expired task leases.

The reaper runs periodically to find tasks whose lease deadline has passed
and returns them to their queue. This handles worker crashes and is what
makes delivery at-least-once. Workers also recover expired leases lazily
when they lease, so the reaper mainly keeps recovery timely when workers
are idle. The stores count every recovery in the lease-expired metric.
"""

import asyncio
import logging
import signal

from taskq.config import get_settings
from taskq.observability.logging import setup_logging
from taskq.store.base import QueueStore

logger = logging.getLogger(__name__)


class Reaper:
    """
    Lease reaper that recovers expired task leases.

    Runs periodically to:
    1. Find leased tasks whose deadline has passed
    2. Return them to PENDING, or dead-letter them if that was their final attempt
    """

    def __init__(
        self,
        store: QueueStore,
        interval_seconds: float = 10.0,
    ):
        self.store = store
        self.interval = interval_seconds
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(f"Reaper starting with interval {self.interval}s")
        self._stop_event.clear()

        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._stop_event.set()

    async def run_once(self) -> int:
        """
        Run the reaper once (for testing or cron-style execution).

        Returns:
            Number of leases recovered.
        """
        count = await self.store.recover_expired_leases()
        if count > 0:
            logger.info(f"Reaper recovered {count} expired leases")
        return count


async def run_async() -> None:
    """Run the reaper against the configured SQL store."""
    from taskq.store import create_store

    settings = get_settings()
    setup_logging(settings)

    if settings.store_backend != "sql":
        logger.warning(
            "Reaper started with the in-memory store; it can only see its own process"
        )

    store = await create_store(settings)
    reaper = Reaper(store, interval_seconds=settings.reaper_interval_seconds)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(reaper.stop()))

    try:
        await reaper.start()
    finally:
        await store.close()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
