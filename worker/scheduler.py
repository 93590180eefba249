#!/usr/bin/env python3
"""
Scheduler worker.

Runs the scheduled publish/unpublish pass every SCHEDULER_PUBLISH_INTERVAL
seconds and the view-history retention cleanup every
SCHEDULER_CLEANUP_INTERVAL seconds, in one long-lived process.

Run with: python -m worker.scheduler
"""

import asyncio
import logging
import signal
import time
from typing import Optional

from api.database import configure_database, database
from api.scheduled_publisher import run_scheduled_publishing
from api.view_history_cleanup import run_scheduled_cleanup
from config import SCHEDULER_CLEANUP_INTERVAL, SCHEDULER_PUBLISH_INTERVAL

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("scheduler")

# Granularity of the main loop; bounds how long shutdown can take
TICK_SECONDS = 1.0


class SchedulerWorker:
    """Periodic publisher and history cleanup."""

    def __init__(
        self,
        publish_interval: int = SCHEDULER_PUBLISH_INTERVAL,
        cleanup_interval: int = SCHEDULER_CLEANUP_INTERVAL,
    ):
        self.publish_interval = publish_interval
        self.cleanup_interval = cleanup_interval
        self.running = False
        self._last_publish: Optional[float] = None
        self._last_cleanup: Optional[float] = None

    def _due(self, last_run: Optional[float], interval: int, now: float) -> bool:
        return last_run is None or now - last_run >= interval

    async def run_publish(self) -> None:
        stats = await run_scheduled_publishing()
        if stats.processed or stats.errorCount:
            logger.info(f"Scheduled publishing: {stats.as_dict()}")

    async def run_cleanup(self) -> None:
        result = await run_scheduled_cleanup()
        logger.info(f"View history cleanup: {result['message']}")

    async def tick(self, now: Optional[float] = None) -> None:
        """Run whichever jobs are due. A failing job is logged and retried on its next interval."""
        now = time.monotonic() if now is None else now

        if self._due(self._last_publish, self.publish_interval, now):
            self._last_publish = now
            try:
                await self.run_publish()
            except Exception as e:
                logger.error(f"Scheduled publishing failed: {e}", exc_info=True)

        if self._due(self._last_cleanup, self.cleanup_interval, now):
            self._last_cleanup = now
            try:
                await self.run_cleanup()
            except Exception as e:
                logger.error(f"View history cleanup failed: {e}", exc_info=True)

    async def start(self) -> None:
        logger.info("Starting scheduler worker...")
        await database.connect()
        await configure_database()
        self.running = True

        # Set up signal handlers
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_shutdown)

        logger.info(
            f"Scheduler worker started (publish every {self.publish_interval}s, "
            f"cleanup every {self.cleanup_interval}s)"
        )

        try:
            while self.running:
                await self.tick()
                await asyncio.sleep(TICK_SECONDS)
        except asyncio.CancelledError:
            pass
        finally:
            logger.info("Shutting down scheduler worker...")
            await database.disconnect()

    def _handle_shutdown(self) -> None:
        """Handle shutdown signal."""
        logger.info("Shutdown signal received")
        self.running = False


def main():
    """Entry point for the scheduler worker."""
    asyncio.run(SchedulerWorker().start())


if __name__ == "__main__":
    main()
