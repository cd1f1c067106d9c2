"""
Communication Worker
Background worker for scheduled messages and periodic tenant sweeps.

Run as separate process:
    python -m smartcomm.workers.communication_worker

Every poll it sends scheduled messages that have become due. Every
sweep interval it runs the decision engine over all enabled tenants.
"""
import asyncio
import logging
import signal
import time
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv
from supabase import Client, create_client

from smartcomm.core.config import get_settings
from smartcomm.infrastructure.llm.factory import create_llm_provider
from smartcomm.services.communication_engine import CommunicationEngine, get_communication_engine

load_dotenv()

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


class CommunicationWorker:
    """
    Background worker for the outreach engine.

    Responsibilities:
    - Send due scheduled_communication rows (gate re-checked at fire time)
    - Run the all-tenant sweep on a fixed interval
    """

    MAX_CONSECUTIVE_ERRORS = 10
    BATCH_SIZE = 50

    def __init__(
        self,
        engine: Optional[CommunicationEngine] = None,
        poll_interval: Optional[float] = None,
        sweep_interval: Optional[float] = None,
    ):
        settings = get_settings()
        self.running = False
        self.engine = engine
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.sweep_interval = sweep_interval or settings.worker_sweep_interval_seconds
        self._supabase: Optional[Client] = None
        self._llm_provider = None
        self._last_sweep: Optional[float] = None

        # Stats
        self._scheduled_sent = 0
        self._scheduled_failed = 0
        self._scheduled_skipped = 0
        self._sweeps = 0
        self._sweep_sent = 0

    async def initialize(self) -> None:
        """Initialize connections and services."""
        if self.engine is not None:
            return

        logger.info("Initializing Communication Worker...")
        settings = get_settings()

        if not settings.supabase_url or not settings.supabase_service_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")

        self._supabase = create_client(settings.supabase_url, settings.supabase_service_key)
        self._llm_provider = await create_llm_provider()
        self.engine = get_communication_engine(self._supabase, llm_provider=self._llm_provider)

        logger.info("Communication Worker initialized successfully")

    def _sweep_due(self, monotonic_now: float) -> bool:
        return self._last_sweep is None or monotonic_now - self._last_sweep >= self.sweep_interval

    async def tick(self, now: Optional[datetime] = None) -> int:
        """
        One worker iteration.

        Returns:
            Number of scheduled messages processed
        """
        now = now or datetime.now(timezone.utc)

        stats = await self.engine.dispatcher.process_due(now=now, limit=self.BATCH_SIZE)
        self._scheduled_sent += stats["sent"]
        self._scheduled_failed += stats["failed"]
        self._scheduled_skipped += stats["skipped"]

        monotonic_now = time.monotonic()
        if self._sweep_due(monotonic_now):
            self._last_sweep = monotonic_now
            summary = await self.engine.run_all_tenants(now=now)
            self._sweeps += 1
            self._sweep_sent += summary.total_sent
            logger.info(
                f"Sweep complete: {summary.businesses} businesses, "
                f"{summary.total_evaluated} evaluated, {summary.total_sent} sent"
            )

        return stats["processed"]

    async def run(self) -> None:
        """Main worker loop."""
        await self.initialize()

        self.running = True
        consecutive_errors = 0

        logger.info("Communication Worker started")

        while self.running:
            try:
                await self.tick()
                consecutive_errors = 0
                await asyncio.sleep(self.poll_interval)

            except asyncio.CancelledError:
                logger.info("Worker received cancellation signal")
                break
            except Exception as e:
                consecutive_errors += 1
                logger.error(f"Worker error ({consecutive_errors}): {e}", exc_info=True)

                if consecutive_errors >= self.MAX_CONSECUTIVE_ERRORS:
                    logger.critical("Too many consecutive errors, stopping worker")
                    break

                await asyncio.sleep(min(5 * consecutive_errors, 60))

        await self.shutdown()

    async def shutdown(self) -> None:
        """Graceful shutdown."""
        logger.info("Shutting down Communication Worker...")
        self.running = False

        if self._llm_provider is not None:
            await self._llm_provider.cleanup()
            self._llm_provider = None

        logger.info(
            f"Communication Worker shutdown complete. "
            f"Scheduled sent: {self._scheduled_sent}, "
            f"failed: {self._scheduled_failed}, "
            f"skipped: {self._scheduled_skipped}, "
            f"sweeps: {self._sweeps}"
        )

    def get_stats(self) -> dict:
        """Get worker statistics."""
        return {
            "running": self.running,
            "scheduled_sent": self._scheduled_sent,
            "scheduled_failed": self._scheduled_failed,
            "scheduled_skipped": self._scheduled_skipped,
            "sweeps": self._sweeps,
            "sweep_sent": self._sweep_sent,
        }


async def main():
    """Entry point for running the communication worker as separate process."""
    worker = CommunicationWorker()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        worker.running = False

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await worker.run()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    finally:
        await worker.shutdown()


def run_worker():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run_worker()
