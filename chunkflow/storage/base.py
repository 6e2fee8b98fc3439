# chunkflow/storage/base.py
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List, Dict, Any, Collection, Iterable

from chunkflow.common.job import Job, Chunk
from chunkflow.common.task import QueueTask
from chunkflow.common.alert import Alert

UNIT_CHUNK = "chunk"
UNIT_TASK = "task"


class JobStorage(ABC):
    """Durable store for jobs, chunks, queue tasks and alerts.

    Every state-changing method is a conditional update of a single row: it
    matches the row's id plus the expected prior status (and, for recovery
    writes, the expected ``version``) and returns ``False`` when another
    caller got there first. Losing such a race is never an error.
    """

    # --- Jobs ---

    @abstractmethod
    def create_job(self, job: Job, chunks: Iterable[Chunk]) -> str: ...

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[Job]: ...

    @abstractmethod
    def list_jobs(
        self,
        statuses: Optional[Collection[str]] = None,
        kind: Optional[str] = None,
        start: int = 0,
        count: int = 50,
    ) -> List[Job]: ...

    @abstractmethod
    def update_job(
        self,
        job_id: str,
        values: Dict[str, Any],
        now: datetime,
        expected_statuses: Optional[Collection[str]] = None,
    ) -> bool: ...

    # --- Chunks ---

    @abstractmethod
    def get_chunk(self, chunk_id: str) -> Optional[Chunk]: ...

    @abstractmethod
    def get_chunks(self, job_id: str) -> List[Chunk]: ...

    @abstractmethod
    def claim_next_chunks(
        self,
        job_id: str,
        limit: int,
        now: datetime,
        cursor: int = 0,
        max_retries: Optional[int] = None,
        worker_id: Optional[str] = None,
    ) -> List[Chunk]:
        """Move up to ``limit`` available pending chunks to processing.

        Chunks are considered from ordinal ``cursor`` upwards, then from the
        start. A pending chunk whose retry count already exceeds
        ``max_retries`` is force-terminalized as dead-lettered instead of
        being returned.
        """

    @abstractmethod
    def complete_chunk(self, chunk_id: str, result: Any, now: datetime) -> bool: ...

    @abstractmethod
    def fail_chunk(
        self, chunk_id: str, error_message: str, error_kind: str, now: datetime
    ) -> bool: ...

    @abstractmethod
    def get_failed_chunks(
        self, max_retries: int, limit: int, job_id: Optional[str] = None
    ) -> List[Chunk]:
        """Failed chunks that are not yet dead-lettered, oldest first."""

    @abstractmethod
    def requeue_chunk(
        self,
        chunk_id: str,
        expected_version: int,
        available_at: datetime,
        history_entry: Dict[str, Any],
        now: datetime,
    ) -> bool: ...

    @abstractmethod
    def dead_letter_chunk(
        self, chunk_id: str, expected_version: int, retry_count: int, now: datetime
    ) -> bool: ...

    @abstractmethod
    def get_processing_chunks(
        self,
        started_before: datetime,
        limit: int,
        kinds: Optional[Collection[str]] = None,
        exclude_kinds: Optional[Collection[str]] = None,
    ) -> List[Chunk]:
        """Chunks processing since ``started_before`` or earlier, oldest first,
        optionally restricted to (or excluding) the given job kinds."""

    @abstractmethod
    def reset_stalled_chunk(self, chunk_id: str, expected_version: int, now: datetime) -> bool: ...

    @abstractmethod
    def cancel_open_chunks(self, job_id: str, max_retries: int, now: datetime) -> int:
        """Moves every pending, processing and retryable failed chunk of a job
        to ``cancelled``; returns how many rows changed."""

    # --- Queue tasks ---

    @abstractmethod
    def add_task(self, task: QueueTask) -> str: ...

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[QueueTask]: ...

    @abstractmethod
    def list_tasks(
        self, status: Optional[str] = None, start: int = 0, count: int = 50
    ) -> List[QueueTask]: ...

    @abstractmethod
    def claim_next_tasks(
        self,
        limit: int,
        now: datetime,
        kinds: Optional[Collection[str]] = None,
    ) -> List[QueueTask]: ...

    @abstractmethod
    def complete_task(
        self, task_id: str, result: Any, log: Dict[str, Any], now: datetime
    ) -> bool: ...

    @abstractmethod
    def fail_task(
        self,
        task_id: str,
        error_message: str,
        error_kind: str,
        log: Dict[str, Any],
        now: datetime,
    ) -> bool: ...

    @abstractmethod
    def ignore_task(self, task_id: str, reason: str, log: Dict[str, Any], now: datetime) -> bool: ...

    @abstractmethod
    def find_completed_tasks(
        self,
        fingerprint: str,
        received_from: datetime,
        received_to: datetime,
        exclude_id: Optional[str] = None,
    ) -> List[QueueTask]: ...

    @abstractmethod
    def get_failed_tasks(self, max_retries: int, limit: int) -> List[QueueTask]: ...

    @abstractmethod
    def requeue_task(
        self,
        task_id: str,
        expected_version: int,
        available_at: datetime,
        log: Dict[str, Any],
        now: datetime,
    ) -> bool: ...

    @abstractmethod
    def dead_letter_task(
        self,
        task_id: str,
        expected_version: int,
        retry_count: int,
        log: Dict[str, Any],
        now: datetime,
    ) -> bool: ...

    @abstractmethod
    def get_processing_tasks(self, started_before: datetime, limit: int) -> List[QueueTask]: ...

    @abstractmethod
    def reset_stalled_task(
        self, task_id: str, expected_version: int, log: Dict[str, Any], now: datetime
    ) -> bool: ...

    # --- Alerts ---

    @abstractmethod
    def add_alert(self, alert: Alert) -> str: ...

    @abstractmethod
    def get_alerts(
        self, start: int = 0, count: int = 50, since: Optional[datetime] = None
    ) -> List[Alert]: ...

    @abstractmethod
    def get_latest_alert(self, dedupe_key: str) -> Optional[Alert]: ...

    # --- Metrics ---

    @abstractmethod
    def get_job_status_counts(self) -> Dict[str, int]: ...

    @abstractmethod
    def get_status_counts(self, unit: str, max_retries: int) -> Dict[str, int]:
        """Current counts per status for ``unit``; dead-lettered failures are
        reported under ``dead_lettered`` and excluded from ``failed``."""

    @abstractmethod
    def get_window_stats(self, unit: str, since: datetime) -> Dict[str, Any]:
        """Outcome counts for ``unit`` since ``since``.

        Keys: ``completed`` (by ``completed_at``), ``failed`` and ``ignored``
        (by ``updated_at``), ``timed`` (completed rows with a start time) and
        ``average_duration_seconds`` over the timed rows, or ``None``.
        """
