# chunkflow/common/job.py
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Optional, Dict, Any, List

from .states import JobStatus, ChunkStatus


@dataclass
class Job:
    """
    A top-level import/processing request, partitioned into chunks.

    Aggregate counters (``completed_chunks``, ``failed_chunks``,
    ``processed_items``, ``result_totals``, ``error_summary``) are always
    recomputed from the chunk rows, never incremented in place.
    """

    kind: str
    total_items: int
    chunk_size: int
    owner: Optional[str] = None

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    params: Dict[str, Any] = field(default_factory=dict)
    total_chunks: int = 0
    cursor: int = 0
    status: str = JobStatus.PENDING

    completed_chunks: int = 0
    failed_chunks: int = 0
    processed_items: int = 0
    result_totals: Dict[str, float] = field(default_factory=dict)
    error_summary: List[Dict[str, str]] = field(default_factory=list)

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 0

    def __post_init__(self):
        if not self.total_chunks and self.total_items > 0 and self.chunk_size > 0:
            self.total_chunks = math.ceil(self.total_items / self.chunk_size)


@dataclass
class Chunk:
    """A bounded partition [start, end) of a job's input set."""

    job_id: str
    ordinal: int
    start: int
    end: int
    job_kind: str = ""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: str = ChunkStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    error_kind: Optional[str] = None
    retry_history: List[Dict[str, Any]] = field(default_factory=list)
    result: Optional[Dict[str, Any]] = None
    worker_id: Optional[str] = None

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    available_at: Optional[datetime] = None
    version: int = 0

    @property
    def size(self) -> int:
        return self.end - self.start


def build_chunks(job: Job) -> List[Chunk]:
    chunks = []
    for ordinal in range(job.total_chunks):
        start = ordinal * job.chunk_size
        chunks.append(
            Chunk(
                job_id=job.id,
                ordinal=ordinal,
                start=start,
                end=min(start + job.chunk_size, job.total_items),
                job_kind=job.kind,
                created_at=job.created_at,
                updated_at=job.created_at,
            )
        )
    return chunks


@dataclass
class Continuation:
    """An explicit request to run the next slice of a job from ``cursor``."""

    job_id: str
    cursor: int = 0
    not_before: datetime = field(default_factory=lambda: datetime.now(UTC))
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class SliceResult:
    job_id: str
    processed_count: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    next_cursor: int = 0
    is_complete: bool = False
    status: str = JobStatus.PENDING


@dataclass
class TriggerSummary:
    """Machine-readable result returned by every trigger entry point."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    jobs: Dict[str, str] = field(default_factory=dict)

    def add_slice(self, result: SliceResult) -> None:
        self.processed += result.processed_count
        self.succeeded += result.succeeded
        self.failed += result.failed
        self.skipped += result.skipped
        self.jobs[result.job_id] = result.status

    def as_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "jobs": dict(self.jobs),
        }
