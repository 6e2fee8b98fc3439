# chunkflow/common/states.py

from typing import Any, Dict, Optional, Union


class JobStatus:
    PENDING = "pending"
    RUNNING = "running"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


class ChunkStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    IGNORED = "ignored"


ALL_JOB_STATUSES = [
    JobStatus.PENDING,
    JobStatus.RUNNING,
    JobStatus.CANCELLING,
    JobStatus.CANCELLED,
    JobStatus.COMPLETED,
    JobStatus.COMPLETED_WITH_ERRORS,
    JobStatus.FAILED,
]

TERMINAL_JOB_STATUSES = frozenset(
    {
        JobStatus.CANCELLED,
        JobStatus.COMPLETED,
        JobStatus.COMPLETED_WITH_ERRORS,
        JobStatus.FAILED,
    }
)

ACTIVE_JOB_STATUSES = frozenset(
    {JobStatus.PENDING, JobStatus.RUNNING, JobStatus.CANCELLING}
)

ALL_CHUNK_STATUSES = [
    ChunkStatus.PENDING,
    ChunkStatus.PROCESSING,
    ChunkStatus.COMPLETED,
    ChunkStatus.FAILED,
    ChunkStatus.CANCELLED,
]

ALL_TASK_STATUSES = [
    TaskStatus.PENDING,
    TaskStatus.PROCESSING,
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.IGNORED,
]

# Job statuses only move forward. Keys are the target status, values the
# statuses a job may hold right before it.
JOB_TRANSITIONS = {
    JobStatus.RUNNING: {JobStatus.PENDING, JobStatus.RUNNING},
    JobStatus.CANCELLING: {JobStatus.PENDING, JobStatus.RUNNING},
    JobStatus.CANCELLED: {JobStatus.CANCELLING},
    JobStatus.COMPLETED: {JobStatus.PENDING, JobStatus.RUNNING},
    JobStatus.COMPLETED_WITH_ERRORS: {JobStatus.PENDING, JobStatus.RUNNING},
    JobStatus.FAILED: {JobStatus.PENDING, JobStatus.RUNNING},
}



class CompletedState:
    """Outcome of a processor that returned normally."""

    def __init__(self, result: Dict[str, Any], reason: Optional[str] = None):
        self.result = result
        self.reason = reason


class FailedState:
    """Outcome of a processor that raised; filters may refine ``error_kind``."""

    def __init__(self, exception: BaseException, error_kind: str = "unknown"):
        self.exception = exception
        self.exception_message = str(exception) or type(exception).__name__
        self.error_kind = error_kind


UnitState = Union[CompletedState, FailedState]
