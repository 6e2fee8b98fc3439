# chunkflow/registry.py
import logging
from typing import Optional, Dict, Any, List, Iterable, Collection

from .common.clock import Clock, utcnow
from .common.exceptions import InvalidInput, NotFound
from .common.job import Job, Chunk, build_chunks
from .common.states import (
    ChunkStatus,
    JobStatus,
    JOB_TRANSITIONS,
    TERMINAL_JOB_STATUSES,
    ACTIVE_JOB_STATUSES,
)
from .config import Settings
from .storage.base import JobStorage

logger = logging.getLogger(__name__)

# Conditional writes attempted before advance_job gives up on a contended row.
_ADVANCE_ATTEMPTS = 5


def is_dead_lettered(unit, max_retries: int) -> bool:
    return unit.status == ChunkStatus.FAILED and unit.retry_count > max_retries


def derive_job_status(chunks: List[Chunk], max_retries: int, current: str) -> str:
    """Job status implied by its chunks. Never moves a job backwards."""
    if current in TERMINAL_JOB_STATUSES or current == JobStatus.CANCELLING:
        return current
    if not chunks:
        return current

    completed = sum(1 for c in chunks if c.status == ChunkStatus.COMPLETED)
    dead = sum(1 for c in chunks if is_dead_lettered(c, max_retries))
    if completed + dead == len(chunks):
        if dead == 0:
            return JobStatus.COMPLETED
        if completed == 0:
            return JobStatus.FAILED
        return JobStatus.COMPLETED_WITH_ERRORS

    started = any(
        c.status != ChunkStatus.PENDING or c.retry_count > 0 for c in chunks
    )
    if started or current == JobStatus.RUNNING:
        return JobStatus.RUNNING
    return current


def aggregate_chunks(chunks: Iterable[Chunk], max_retries: int) -> Dict[str, Any]:
    """Recompute a job's aggregate counters from its chunk rows.

    Pure function: calling it twice over the same rows gives the same answer,
    which is what makes ``JobRegistry.advance_job`` safe to repeat.
    """
    completed_chunks = 0
    failed_chunks = 0
    processed_items = 0
    result_totals: Dict[str, float] = {}
    error_summary: List[Dict[str, str]] = []

    for chunk in sorted(chunks, key=lambda c: c.ordinal):
        if chunk.status == ChunkStatus.COMPLETED:
            completed_chunks += 1
            processed_items += chunk.size
            for key, value in (chunk.result or {}).items():
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    continue
                result_totals[key] = result_totals.get(key, 0) + value
        elif chunk.status == ChunkStatus.FAILED:
            if is_dead_lettered(chunk, max_retries):
                failed_chunks += 1
            error_summary.append(
                {
                    "unit": f"chunk {chunk.ordinal} [{chunk.start}, {chunk.end})",
                    "message": chunk.last_error or "",
                }
            )

    return {
        "completed_chunks": completed_chunks,
        "failed_chunks": failed_chunks,
        "processed_items": processed_items,
        "result_totals": result_totals,
        "error_summary": error_summary,
    }


class JobRegistry:
    """Creates jobs, derives their status from chunk rows and records cursors."""

    def __init__(
        self,
        storage: JobStorage,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.storage = storage
        self.settings = settings or Settings()
        self.clock = clock or utcnow

    def create_job(
        self,
        kind: str,
        total_items: int,
        chunk_size: int,
        owner: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Job:
        if not kind:
            raise InvalidInput("Job kind is required")
        if total_items <= 0:
            raise InvalidInput(f"total_items must be positive, got {total_items}")
        if chunk_size <= 0:
            raise InvalidInput(f"chunk_size must be positive, got {chunk_size}")

        now = self.clock()
        job = Job(
            kind=kind,
            total_items=total_items,
            chunk_size=chunk_size,
            owner=owner,
            params=dict(params or {}),
            created_at=now,
            updated_at=now,
        )
        chunks = build_chunks(job)
        self.storage.create_job(job, chunks)
        logger.info(
            f"Created job {job.id} ({kind}): {total_items} items in {job.total_chunks} chunks"
        )
        return job

    def load_job(self, job_id: str) -> Job:
        job = self.storage.get_job(job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found")
        return job

    def list_jobs(
        self,
        statuses: Optional[Collection[str]] = None,
        kind: Optional[str] = None,
        start: int = 0,
        count: int = 50,
    ) -> List[Job]:
        return self.storage.list_jobs(statuses=statuses, kind=kind, start=start, count=count)

    def list_active_jobs(self, count: int = 100) -> List[Job]:
        return self.storage.list_jobs(statuses=ACTIVE_JOB_STATUSES, count=count)

    def advance_job(self, job_id: str) -> str:
        """Recompute counters and derived status; returns the resulting status."""
        for _ in range(_ADVANCE_ATTEMPTS):
            job = self.load_job(job_id)
            if job.status in TERMINAL_JOB_STATUSES:
                return job.status

            chunks = self.storage.get_chunks(job_id)
            values = aggregate_chunks(chunks, self.settings.max_retries)
            status = derive_job_status(chunks, self.settings.max_retries, job.status)
            now = self.clock()
            values["status"] = status
            if status != JobStatus.PENDING and job.started_at is None:
                values["started_at"] = now
            if status in TERMINAL_JOB_STATUSES:
                values["completed_at"] = now

            if self.storage.update_job(job_id, values, now, expected_statuses={job.status}):
                if status != job.status:
                    logger.info(f"Job {job_id}: {job.status} -> {status}")
                return status
            logger.debug(f"Job {job_id} changed during advance, recomputing")

        return self.load_job(job_id).status

    def save_cursor(self, job_id: str, cursor: int) -> bool:
        return self.storage.update_job(
            job_id, {"cursor": cursor}, self.clock(), expected_statuses=ACTIVE_JOB_STATUSES
        )

    def cancel_job(self, job_id: str) -> str:
        """Request cancellation; the next slice finalizes it as ``cancelled``."""
        job = self.load_job(job_id)
        if job.status not in JOB_TRANSITIONS[JobStatus.CANCELLING]:
            return job.status
        if self.storage.update_job(
            job_id,
            {"status": JobStatus.CANCELLING},
            self.clock(),
            expected_statuses=JOB_TRANSITIONS[JobStatus.CANCELLING],
        ):
            logger.info(f"Job {job_id}: cancellation requested")
            return JobStatus.CANCELLING
        return self.load_job(job_id).status

    def finish_cancellation(self, job_id: str) -> str:
        now = self.clock()
        if self.storage.update_job(
            job_id,
            {"status": JobStatus.CANCELLED, "completed_at": now},
            now,
            expected_statuses=JOB_TRANSITIONS[JobStatus.CANCELLED],
        ):
            closed = self.storage.cancel_open_chunks(job_id, self.settings.max_retries, now)
            logger.info(f"Job {job_id}: cancelled, {closed} open chunks closed")
            return JobStatus.CANCELLED
        return self.load_job(job_id).status
