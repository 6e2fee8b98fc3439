# chunkflow/server/worker.py
import logging
import time
from typing import Callable, Optional

from .engine import ContinuationEngine
from .scheduler import Scheduler

logger = logging.getLogger(__name__)


class Worker:
    def __init__(
        self,
        engine: ContinuationEngine,
        scheduler: Optional[Scheduler] = None,
        poll_interval: float = 1.0,
        continuation_batch: int = 10,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.engine = engine
        self.scheduler = scheduler
        self.poll_interval = poll_interval
        self.continuation_batch = continuation_batch
        self.sleep = sleep
        self.worker_id = engine.worker_id
        self._shutdown_requested = False

    def request_shutdown(self) -> None:
        self._shutdown_requested = True

    def run_once(self) -> int:
        """One loop iteration: due sweeps, then due continuations.

        Returns how many sweeps and slices ran.
        """
        done = 0
        if self.scheduler is not None:
            done += len(self.scheduler.run_due())
        summary = self.engine.drain_continuations(self.continuation_batch)
        done += len(summary.jobs)
        return done

    def run(self):
        """Starts the worker's processing loop."""
        logger.info(f"[{self.worker_id}] Starting worker")
        while not self._shutdown_requested:
            try:
                if not self.run_once():
                    self.sleep(self.poll_interval)
            except KeyboardInterrupt:
                logger.info(f"[{self.worker_id}] Shutdown requested...")
                self._shutdown_requested = True
            except Exception:
                logger.error(f"[{self.worker_id}] Unhandled exception in worker loop", exc_info=True)
                self.sleep(5)  # Cooldown period after a major failure

        logger.info(f"[{self.worker_id}] Worker has stopped.")
