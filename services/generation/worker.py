"""
Reconciler Worker

Background loop that runs a reconcile sweep every `interval_seconds`.
"""

import asyncio
import logging
import os
import signal
from typing import Optional

from core.config import get_config
from services.video_generation.store import GenerationStore

from .reconciler import JobReconciler

logger = logging.getLogger(__name__)


class ReconcilerWorker:
    """
    Periodically settles provider jobs.

    A sweep that raises (e.g. the store is down) is logged and retried on
    the next tick; the loop only ends on stop() or cancellation.
    """

    def __init__(self, reconciler: JobReconciler, interval_seconds: Optional[int] = None):
        self.reconciler = reconciler
        self.poll_interval = interval_seconds or reconciler.settings.interval_seconds
        self._running = False
        self._wakeup = asyncio.Event()

    async def start(self):
        self._running = True
        logger.info(f"Reconciler worker starting (interval {self.poll_interval}s)")

        while self._running:
            try:
                await self.reconciler.reconcile_once()
            except asyncio.CancelledError:
                logger.info("Reconciler worker cancelled")
                break
            except Exception as e:
                logger.error(f"Reconcile sweep failed: {type(e).__name__}: {e}")

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

    async def stop(self):
        self._running = False
        self._wakeup.set()


async def main():
    """Entry point for the standalone reconciler worker."""
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO")),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = get_config()
    for issue in config.validate():
        logger.warning(f"Config: {issue}")

    store = await GenerationStore.connect(config.database)
    reconciler = JobReconciler(store, config=config)
    worker = ReconcilerWorker(reconciler)

    stop_event = asyncio.Event()

    def handle_signal():
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_event_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal)

    worker_task = asyncio.create_task(worker.start())
    await stop_event.wait()

    await worker.stop()
    await worker_task

    await reconciler.provider.close()
    await store.close()
    logger.info("Reconciler worker stopped")


if __name__ == "__main__":
    asyncio.run(main())
