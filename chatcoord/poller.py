"""
Background poller: runs ingestion on a cancellable ticker.
"""

import time
import logging
import threading
from typing import Callable, Optional

from .ingestion import IngestionPipeline, PollResult

logger = logging.getLogger(__name__)


class BackgroundPoller:
    """
    Ticker thread driving ``IngestionPipeline.poll_cycle``.

    Every ``purge_interval_s`` it also runs the retention sweep. ``stop``
    sets the shared stop event and joins the thread. The lease is released
    by whichever side sees the thread finished, never while a cycle may
    still be running.

    Args:
        pipeline: Ingestion pipeline to drive
        interval_ms: Time between cycles
        purge_interval_s: Time between retention sweeps
        inbox_retention_s: Age after which read/processed rows are purged
        watch_retention_s: Age after which watched threads are purged
        initial_delay_s: Wait before the first cycle
        stop_event: Shared shutdown signal
    """

    def __init__(
        self,
        pipeline: IngestionPipeline,
        interval_ms: int = 10000,
        purge_interval_s: float = 6 * 3600,
        inbox_retention_s: float = 7 * 86400,
        watch_retention_s: float = 48 * 3600,
        initial_delay_s: float = 3.0,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.pipeline = pipeline
        self.interval_s = interval_ms / 1000.0
        self.purge_interval_s = purge_interval_s
        self.inbox_retention_s = inbox_retention_s
        self.watch_retention_s = watch_retention_s
        self.initial_delay_s = initial_delay_s
        self._stop = stop_event or threading.Event()
        self._clock = clock
        self._thread: Optional[threading.Thread] = None
        self._last_purge: Optional[float] = None
        self._cycle_lock = threading.Lock()
        self.cycles = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            logger.warning("Background poller already started")
            return

        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name="ChatCoordPoller"
        )
        self._thread.start()
        logger.info(
            f"Background poller started (interval: {self.interval_s:.1f}s, "
            f"process: {self.pipeline.process_id})"
        )

    def stop(self, timeout: float = 5.0) -> bool:
        """
        Stop the ticker and release the lease if this process holds it.

        The ticker thread releases the lease on exit. Returns False if it
        is still finishing a cycle after ``timeout``.
        """
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(
                    f"Background poller still running after {timeout}s; "
                    f"lease is kept until its cycle ends"
                )
                return False
            self._thread = None
        else:
            self.pipeline.lease.release(self.pipeline.process_id)
        logger.info("Background poller stopped")
        return True

    def run_once(self) -> Optional[PollResult]:
        """
        One tick: a poll cycle, then the retention sweep if it is due.

        Returns None if another tick is already in progress in this process.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Poll cycle already in progress, skipping tick")
            return None
        try:
            result = self.pipeline.poll_cycle()
            self.cycles += 1
            if not result.skipped:
                self._maybe_purge()
            return result
        finally:
            self._cycle_lock.release()

    def _maybe_purge(self):
        now = self._clock()
        if self._last_purge is not None and now - self._last_purge < self.purge_interval_s:
            return
        self._last_purge = now
        self.pipeline.purge(self.inbox_retention_s, self.watch_retention_s)

    def _run(self):
        try:
            if self._stop.wait(self.initial_delay_s):
                return

            while not self._stop.is_set():
                try:
                    self.run_once()
                except Exception as e:
                    logger.error(f"Unexpected error in poll cycle: {e}", exc_info=True)

                self._stop.wait(self.interval_s)
        finally:
            self.pipeline.lease.release(self.pipeline.process_id)
