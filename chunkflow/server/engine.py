# chunkflow/server/engine.py
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Callable, List, Optional, Sequence, TypeVar

from chunkflow.common.clock import Clock, utcnow
from chunkflow.common.job import Continuation, SliceResult, TriggerSummary
from chunkflow.common.states import JobStatus, TERMINAL_JOB_STATUSES
from chunkflow.config import Settings
from chunkflow.dispatch.base import ContinuationQueue
from chunkflow.dispatch.memory_queue import MemoryContinuationQueue
from chunkflow.execution.registry import ProcessorRegistry
from chunkflow.filters.builtin import DeduplicationFilter, ErrorClassificationFilter
from chunkflow.registry import JobRegistry
from chunkflow.storage.base import JobStorage
from .processor import FAILED, LOST, SKIPPED, SUCCEEDED, UnitProcessor
from .retry import RetryController

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BatchRunner:
    """Runs units in groups of ``concurrency`` with a fixed pause between groups."""

    def __init__(
        self,
        concurrency: int = 3,
        pause_seconds: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.concurrency = max(1, concurrency)
        self.pause_seconds = pause_seconds
        self.sleep = sleep

    def run_group(self, items: Sequence[T], func: Callable[[T], str]) -> List[str]:
        if not items:
            return []
        if len(items) == 1:
            return [func(items[0])]
        with ThreadPoolExecutor(max_workers=min(self.concurrency, len(items))) as executor:
            return list(executor.map(func, items))

    def pause(self) -> None:
        if self.pause_seconds > 0:
            self.sleep(self.pause_seconds)

    def run(self, items: Sequence[T], func: Callable[[T], str]) -> List[str]:
        outcomes: List[str] = []
        for start in range(0, len(items), self.concurrency):
            if start:
                self.pause()
            outcomes.extend(self.run_group(items[start : start + self.concurrency], func))
        return outcomes


def _count(outcomes: List[str]):
    """(processed, succeeded, failed, skipped) for a list of unit outcomes."""
    skipped = sum(1 for outcome in outcomes if outcome in (SKIPPED, LOST))
    return len(outcomes), outcomes.count(SUCCEEDED), outcomes.count(FAILED), skipped


class ContinuationEngine:
    """Drives jobs to completion one bounded slice per invocation.

    Each slice persists the job's cursor and, when work remains, pushes an
    explicit continuation record instead of calling itself, so a chain of
    slices survives a crash of the process running it.
    """

    def __init__(
        self,
        storage: JobStorage,
        processors: Optional[ProcessorRegistry] = None,
        settings: Optional[Settings] = None,
        queue: Optional[ContinuationQueue] = None,
        clock: Optional[Clock] = None,
        sleep: Callable[[float], None] = time.sleep,
        worker_id: Optional[str] = None,
    ):
        self.storage = storage
        self.processors = processors or ProcessorRegistry()
        self.settings = settings or Settings()
        self.queue = queue if queue is not None else MemoryContinuationQueue()
        self.clock = clock or utcnow
        self.worker_id = worker_id or f"worker:{uuid.uuid4()}"

        self.registry = JobRegistry(storage, self.settings, clock=self.clock)
        self.retry = RetryController(storage, self.settings, registry=self.registry, clock=self.clock)
        self.dedup = DeduplicationFilter(storage, self.settings.dedup_window_seconds)
        self.unit_processor = UnitProcessor(
            storage,
            self.processors,
            filters=[self.dedup, ErrorClassificationFilter()],
            clock=self.clock,
        )
        self.runner = BatchRunner(self.settings.concurrency, self.settings.inter_batch_pause, sleep)

    # --- Slices ---

    def process_slice(
        self, job_id: str, cursor: Optional[int] = None, batch_size: Optional[int] = None
    ) -> SliceResult:
        """Claim and process up to ``batch_size`` chunks starting at ``cursor``."""
        job = self.registry.load_job(job_id)
        if job.status == JobStatus.CANCELLING:
            status = self.registry.finish_cancellation(job_id)
            return SliceResult(job_id, next_cursor=job.cursor, is_complete=True, status=status)
        if job.status in TERMINAL_JOB_STATUSES:
            return SliceResult(job_id, next_cursor=job.cursor, is_complete=True, status=job.status)

        batch_size = batch_size or self.settings.slice_batch_size
        cursor = job.cursor if cursor is None else cursor
        if job.total_chunks:
            cursor %= job.total_chunks
        result = SliceResult(job_id, next_cursor=cursor, status=job.status)

        self.retry.sweep(job_id=job_id)

        started = self.clock()
        budget = timedelta(seconds=self.settings.invocation_budget_seconds)
        first_group = True
        while result.processed_count < batch_size:
            if not first_group:
                if self.clock() - started >= budget:
                    logger.info(f"Job {job_id}: invocation budget spent after {result.processed_count} chunks")
                    break
                current = self.registry.load_job(job_id)
                if current.status == JobStatus.CANCELLING:
                    break
                self.runner.pause()

            limit = min(self.settings.concurrency, batch_size - result.processed_count)
            chunks = self.storage.claim_next_chunks(
                job_id,
                limit,
                self.clock(),
                cursor=cursor,
                max_retries=self.settings.max_retries,
                worker_id=self.worker_id,
            )
            if not chunks:
                break
            first_group = False

            outcomes = self.runner.run_group(
                chunks, lambda chunk: self.unit_processor.process_chunk(job, chunk)
            )
            processed, succeeded, failed, skipped = _count(outcomes)
            result.processed_count += processed
            result.succeeded += succeeded
            result.failed += failed
            result.skipped += skipped
            cursor = (chunks[-1].ordinal + 1) % job.total_chunks
            if len(chunks) < limit:
                break

        result.next_cursor = cursor
        self.registry.save_cursor(job_id, cursor)
        result.status = self.registry.advance_job(job_id)
        if result.status == JobStatus.CANCELLING:
            result.status = self.registry.finish_cancellation(job_id)
        result.is_complete = result.status in TERMINAL_JOB_STATUSES
        logger.info(
            f"Job {job_id} slice: {result.processed_count} processed "
            f"({result.succeeded} ok, {result.failed} failed), next cursor {cursor}, status {result.status}"
        )
        return result

    def _dispatch_next(self, result: SliceResult) -> Optional[Continuation]:
        if result.is_complete:
            return None
        not_before = self.clock()
        if result.processed_count == 0:
            # Nothing claimable right now (backoff or units held elsewhere).
            not_before += timedelta(seconds=self.settings.continuation_idle_delay)
        continuation = Continuation(job_id=result.job_id, cursor=result.next_cursor, not_before=not_before)
        self.queue.push(continuation)
        return continuation

    def run_slice(self, job_id: str, cursor: Optional[int] = None) -> SliceResult:
        result = self.process_slice(job_id, cursor)
        self._dispatch_next(result)
        return result

    # --- Trigger surface ---

    def resume(self, job_id: str, cursor: Optional[int] = None) -> TriggerSummary:
        """Self-continuation trigger: run the next slice from ``cursor``."""
        summary = TriggerSummary()
        summary.add_slice(self.run_slice(job_id, cursor))
        return summary

    def trigger(self, job_id: Optional[str] = None) -> TriggerSummary:
        """Manual trigger for one job, or a full tick when no job is given."""
        if job_id is None:
            return self.tick()
        return self.resume(job_id)

    def tick(self) -> TriggerSummary:
        """Scheduled entry point: retry sweep, one slice per active job, one task batch."""
        summary = TriggerSummary()
        self.retry.sweep()
        for job in self.registry.list_active_jobs():
            try:
                summary.add_slice(self.run_slice(job.id))
            except Exception:
                logger.error(f"Slice for job {job.id} failed", exc_info=True)
        tasks = self.process_tasks()
        summary.processed += tasks.processed
        summary.succeeded += tasks.succeeded
        summary.failed += tasks.failed
        summary.skipped += tasks.skipped
        return summary

    def process_tasks(self, limit: Optional[int] = None) -> TriggerSummary:
        """Claim one batch of queue tasks and process them in bounded groups."""
        summary = TriggerSummary()
        kinds = self.processors.task_kinds()
        if not kinds:
            return summary
        tasks = self.storage.claim_next_tasks(
            limit or self.settings.task_batch_limit, self.clock(), kinds=kinds
        )
        if not tasks:
            return summary

        outcomes = self.runner.run(tasks, self.unit_processor.process_task)
        summary.processed, summary.succeeded, summary.failed, summary.skipped = _count(outcomes)
        logger.info(
            f"Task batch: {summary.processed} processed ({summary.succeeded} ok, "
            f"{summary.failed} failed, {summary.skipped} skipped)"
        )
        return summary

    def drain_continuations(self, limit: int = 10) -> TriggerSummary:
        """Run every continuation that is due now."""
        summary = TriggerSummary()
        for continuation in self.queue.pop_due(self.clock(), limit):
            try:
                summary.add_slice(self.run_slice(continuation.job_id, continuation.cursor))
            except Exception:
                logger.error(f"Continuation for job {continuation.job_id} failed", exc_info=True)
        return summary

