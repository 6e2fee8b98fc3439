# chunkflow/storage/memory_storage.py
import copy
from datetime import datetime
from threading import RLock
from typing import Optional, List, Dict, Any, Collection, Iterable

from chunkflow.storage.base import JobStorage, UNIT_CHUNK, UNIT_TASK
from chunkflow.common.job import Job, Chunk
from chunkflow.common.task import QueueTask
from chunkflow.common.alert import Alert
from chunkflow.common.states import (
    ChunkStatus,
    TaskStatus,
    ALL_CHUNK_STATUSES,
    ALL_JOB_STATUSES,
    ALL_TASK_STATUSES,
)

_JOB_FIELDS = {
    "status",
    "cursor",
    "completed_chunks",
    "failed_chunks",
    "processed_items",
    "result_totals",
    "error_summary",
    "started_at",
    "completed_at",
    "params",
}


def _is_available(unit, now: datetime) -> bool:
    return unit.available_at is None or unit.available_at <= now


class MemoryStorage(JobStorage):
    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._chunks: Dict[str, Chunk] = {}
        self._job_chunks: Dict[str, List[str]] = {}
        self._tasks: Dict[str, QueueTask] = {}
        self._alerts: List[Alert] = []
        self._lock = RLock()

    def _transition(
        self,
        rows: Dict[str, Any],
        row_id: str,
        expected_status: str,
        now: datetime,
        expected_version: Optional[int] = None,
        **changes,
    ):
        row = rows.get(row_id)
        if row is None or row.status != expected_status:
            return None
        if expected_version is not None and row.version != expected_version:
            return None
        for name, value in changes.items():
            setattr(row, name, value)
        row.updated_at = now
        row.version += 1
        return row

    # --- Jobs ---

    def create_job(self, job: Job, chunks: Iterable[Chunk]) -> str:
        with self._lock:
            self._jobs[job.id] = copy.deepcopy(job)
            ids = []
            for chunk in chunks:
                self._chunks[chunk.id] = copy.deepcopy(chunk)
                ids.append(chunk.id)
            self._job_chunks[job.id] = ids
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def list_jobs(
        self,
        statuses: Optional[Collection[str]] = None,
        kind: Optional[str] = None,
        start: int = 0,
        count: int = 50,
    ) -> List[Job]:
        with self._lock:
            jobs = [
                job
                for job in self._jobs.values()
                if (statuses is None or job.status in statuses)
                and (kind is None or job.kind == kind)
            ]
            jobs.sort(key=lambda j: j.created_at, reverse=True)
            return [copy.deepcopy(job) for job in jobs[start : start + count]]

    def update_job(
        self,
        job_id: str,
        values: Dict[str, Any],
        now: datetime,
        expected_statuses: Optional[Collection[str]] = None,
    ) -> bool:
        unknown = set(values) - _JOB_FIELDS
        if unknown:
            raise ValueError(f"Unsupported job field update: {sorted(unknown)}")
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            if expected_statuses is not None and job.status not in expected_statuses:
                return False
            for name, value in values.items():
                setattr(job, name, copy.deepcopy(value))
            job.updated_at = now
            job.version += 1
            return True

    # --- Chunks ---

    def get_chunk(self, chunk_id: str) -> Optional[Chunk]:
        with self._lock:
            chunk = self._chunks.get(chunk_id)
            return copy.deepcopy(chunk) if chunk else None

    def get_chunks(self, job_id: str) -> List[Chunk]:
        with self._lock:
            chunks = [self._chunks[cid] for cid in self._job_chunks.get(job_id, [])]
            chunks.sort(key=lambda c: c.ordinal)
            return [copy.deepcopy(chunk) for chunk in chunks]

    def claim_next_chunks(
        self,
        job_id: str,
        limit: int,
        now: datetime,
        cursor: int = 0,
        max_retries: Optional[int] = None,
        worker_id: Optional[str] = None,
    ) -> List[Chunk]:
        if limit <= 0:
            return []
        claimed: List[Chunk] = []
        with self._lock:
            candidates = [
                self._chunks[cid]
                for cid in self._job_chunks.get(job_id, [])
                if self._chunks[cid].status == ChunkStatus.PENDING
                and _is_available(self._chunks[cid], now)
            ]
            candidates.sort(key=lambda c: (c.ordinal < cursor, c.ordinal))
            for chunk in candidates:
                if len(claimed) >= limit:
                    break
                if max_retries is not None and chunk.retry_count > max_retries:
                    self._transition(
                        self._chunks,
                        chunk.id,
                        ChunkStatus.PENDING,
                        now,
                        status=ChunkStatus.FAILED,
                        error_kind="permanent",
                        last_error="Retry ceiling exceeded before claim",
                    )
                    continue
                row = self._transition(
                    self._chunks,
                    chunk.id,
                    ChunkStatus.PENDING,
                    now,
                    status=ChunkStatus.PROCESSING,
                    started_at=now,
                    worker_id=worker_id,
                    available_at=None,
                )
                if row is not None:
                    claimed.append(copy.deepcopy(row))
        return claimed

    def complete_chunk(self, chunk_id: str, result: Any, now: datetime) -> bool:
        with self._lock:
            row = self._transition(
                self._chunks,
                chunk_id,
                ChunkStatus.PROCESSING,
                now,
                status=ChunkStatus.COMPLETED,
                result=copy.deepcopy(result),
                completed_at=now,
            )
            return row is not None

    def fail_chunk(
        self, chunk_id: str, error_message: str, error_kind: str, now: datetime
    ) -> bool:
        with self._lock:
            row = self._transition(
                self._chunks,
                chunk_id,
                ChunkStatus.PROCESSING,
                now,
                status=ChunkStatus.FAILED,
                last_error=error_message,
                error_kind=error_kind,
            )
            return row is not None

    def get_failed_chunks(
        self, max_retries: int, limit: int, job_id: Optional[str] = None
    ) -> List[Chunk]:
        with self._lock:
            chunks = [
                c
                for c in self._chunks.values()
                if c.status == ChunkStatus.FAILED
                and c.retry_count <= max_retries
                and (job_id is None or c.job_id == job_id)
            ]
            chunks.sort(key=lambda c: (c.updated_at or c.created_at, c.ordinal))
            return [copy.deepcopy(c) for c in chunks[:limit]]

    def requeue_chunk(
        self,
        chunk_id: str,
        expected_version: int,
        available_at: datetime,
        history_entry: Dict[str, Any],
        now: datetime,
    ) -> bool:
        with self._lock:
            current = self._chunks.get(chunk_id)
            if current is None:
                return False
            row = self._transition(
                self._chunks,
                chunk_id,
                ChunkStatus.FAILED,
                now,
                expected_version=expected_version,
                status=ChunkStatus.PENDING,
                retry_count=current.retry_count + 1,
                retry_history=current.retry_history + [dict(history_entry)],
                available_at=available_at,
                started_at=None,
                worker_id=None,
            )
            return row is not None

    def dead_letter_chunk(
        self, chunk_id: str, expected_version: int, retry_count: int, now: datetime
    ) -> bool:
        with self._lock:
            row = self._transition(
                self._chunks,
                chunk_id,
                ChunkStatus.FAILED,
                now,
                expected_version=expected_version,
                retry_count=retry_count,
            )
            return row is not None

    def get_processing_chunks(
        self,
        started_before: datetime,
        limit: int,
        kinds: Optional[Collection[str]] = None,
        exclude_kinds: Optional[Collection[str]] = None,
    ) -> List[Chunk]:
        with self._lock:
            chunks = [
                c
                for c in self._chunks.values()
                if c.status == ChunkStatus.PROCESSING
                and c.started_at is not None
                and c.started_at <= started_before
                and (kinds is None or c.job_kind in kinds)
                and (not exclude_kinds or c.job_kind not in exclude_kinds)
            ]
            chunks.sort(key=lambda c: c.started_at)
            return [copy.deepcopy(c) for c in chunks[:limit]]

    def reset_stalled_chunk(self, chunk_id: str, expected_version: int, now: datetime) -> bool:
        with self._lock:
            row = self._transition(
                self._chunks,
                chunk_id,
                ChunkStatus.PROCESSING,
                now,
                expected_version=expected_version,
                status=ChunkStatus.PENDING,
                started_at=None,
                worker_id=None,
                available_at=None,
            )
            return row is not None

    def cancel_open_chunks(self, job_id: str, max_retries: int, now: datetime) -> int:
        with self._lock:
            cancelled = 0
            for chunk_id in self._job_chunks.get(job_id, []):
                chunk = self._chunks[chunk_id]
                retryable = chunk.status == ChunkStatus.FAILED and chunk.retry_count <= max_retries
                if chunk.status in (ChunkStatus.PENDING, ChunkStatus.PROCESSING) or retryable:
                    self._transition(
                        self._chunks,
                        chunk_id,
                        chunk.status,
                        now,
                        status=ChunkStatus.CANCELLED,
                        available_at=None,
                        worker_id=None,
                    )
                    cancelled += 1
            return cancelled

    # --- Queue tasks ---

    def add_task(self, task: QueueTask) -> str:
        with self._lock:
            self._tasks[task.id] = copy.deepcopy(task)
        return task.id

    def get_task(self, task_id: str) -> Optional[QueueTask]:
        with self._lock:
            task = self._tasks.get(task_id)
            return copy.deepcopy(task) if task else None

    def list_tasks(
        self, status: Optional[str] = None, start: int = 0, count: int = 50
    ) -> List[QueueTask]:
        with self._lock:
            tasks = [t for t in self._tasks.values() if status is None or t.status == status]
            tasks.sort(key=lambda t: t.received_at, reverse=True)
            return [copy.deepcopy(t) for t in tasks[start : start + count]]

    def claim_next_tasks(
        self,
        limit: int,
        now: datetime,
        kinds: Optional[Collection[str]] = None,
    ) -> List[QueueTask]:
        if limit <= 0:
            return []
        claimed: List[QueueTask] = []
        with self._lock:
            candidates = [
                t
                for t in self._tasks.values()
                if t.status == TaskStatus.PENDING
                and _is_available(t, now)
                and (kinds is None or t.kind in kinds)
            ]
            candidates.sort(key=lambda t: (-t.priority, t.received_at))
            for task in candidates[:limit]:
                row = self._transition(
                    self._tasks,
                    task.id,
                    TaskStatus.PENDING,
                    now,
                    status=TaskStatus.PROCESSING,
                    started_at=now,
                    available_at=None,
                )
                if row is not None:
                    claimed.append(copy.deepcopy(row))
        return claimed

    def _finish_task(self, task_id: str, log: Dict[str, Any], now: datetime, **changes) -> bool:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                return False
            row = self._transition(
                self._tasks,
                task_id,
                TaskStatus.PROCESSING,
                now,
                processing_log=current.processing_log + [dict(log)],
                **changes,
            )
            return row is not None

    def complete_task(
        self, task_id: str, result: Any, log: Dict[str, Any], now: datetime
    ) -> bool:
        return self._finish_task(
            task_id,
            log,
            now,
            status=TaskStatus.COMPLETED,
            result=copy.deepcopy(result),
            completed_at=now,
        )

    def fail_task(
        self,
        task_id: str,
        error_message: str,
        error_kind: str,
        log: Dict[str, Any],
        now: datetime,
    ) -> bool:
        return self._finish_task(
            task_id,
            log,
            now,
            status=TaskStatus.FAILED,
            error_message=error_message,
            error_kind=error_kind,
        )

    def ignore_task(self, task_id: str, reason: str, log: Dict[str, Any], now: datetime) -> bool:
        return self._finish_task(
            task_id,
            log,
            now,
            status=TaskStatus.IGNORED,
            error_message=reason,
            completed_at=now,
        )

    def find_completed_tasks(
        self,
        fingerprint: str,
        received_from: datetime,
        received_to: datetime,
        exclude_id: Optional[str] = None,
    ) -> List[QueueTask]:
        with self._lock:
            return [
                copy.deepcopy(t)
                for t in self._tasks.values()
                if t.fingerprint == fingerprint
                and t.status == TaskStatus.COMPLETED
                and received_from <= t.received_at <= received_to
                and t.id != exclude_id
            ]

    def get_failed_tasks(self, max_retries: int, limit: int) -> List[QueueTask]:
        with self._lock:
            tasks = [
                t
                for t in self._tasks.values()
                if t.status == TaskStatus.FAILED and t.retry_count <= max_retries
            ]
            tasks.sort(key=lambda t: t.updated_at or t.created_at)
            return [copy.deepcopy(t) for t in tasks[:limit]]

    def requeue_task(
        self,
        task_id: str,
        expected_version: int,
        available_at: datetime,
        log: Dict[str, Any],
        now: datetime,
    ) -> bool:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                return False
            row = self._transition(
                self._tasks,
                task_id,
                TaskStatus.FAILED,
                now,
                expected_version=expected_version,
                status=TaskStatus.PENDING,
                retry_count=current.retry_count + 1,
                processing_log=current.processing_log + [dict(log)],
                available_at=available_at,
                started_at=None,
            )
            return row is not None

    def dead_letter_task(
        self,
        task_id: str,
        expected_version: int,
        retry_count: int,
        log: Dict[str, Any],
        now: datetime,
    ) -> bool:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                return False
            row = self._transition(
                self._tasks,
                task_id,
                TaskStatus.FAILED,
                now,
                expected_version=expected_version,
                retry_count=retry_count,
                processing_log=current.processing_log + [dict(log)],
            )
            return row is not None

    def get_processing_tasks(self, started_before: datetime, limit: int) -> List[QueueTask]:
        with self._lock:
            tasks = [
                t
                for t in self._tasks.values()
                if t.status == TaskStatus.PROCESSING
                and t.started_at is not None
                and t.started_at <= started_before
            ]
            tasks.sort(key=lambda t: t.started_at)
            return [copy.deepcopy(t) for t in tasks[:limit]]

    def reset_stalled_task(
        self, task_id: str, expected_version: int, log: Dict[str, Any], now: datetime
    ) -> bool:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                return False
            row = self._transition(
                self._tasks,
                task_id,
                TaskStatus.PROCESSING,
                now,
                expected_version=expected_version,
                status=TaskStatus.PENDING,
                started_at=None,
                processing_log=current.processing_log + [dict(log)],
            )
            return row is not None

    # --- Alerts ---

    def add_alert(self, alert: Alert) -> str:
        with self._lock:
            self._alerts.append(copy.deepcopy(alert))
        return alert.id

    def get_alerts(
        self, start: int = 0, count: int = 50, since: Optional[datetime] = None
    ) -> List[Alert]:
        with self._lock:
            alerts = [a for a in self._alerts if since is None or a.created_at >= since]
            alerts.sort(key=lambda a: a.created_at, reverse=True)
            return [copy.deepcopy(a) for a in alerts[start : start + count]]

    def get_latest_alert(self, dedupe_key: str) -> Optional[Alert]:
        with self._lock:
            matches = [a for a in self._alerts if a.dedupe_key == dedupe_key]
            if not matches:
                return None
            return copy.deepcopy(max(matches, key=lambda a: a.created_at))

    # --- Metrics ---

    def _units(self, unit: str):
        if unit == UNIT_CHUNK:
            return self._chunks.values(), ALL_CHUNK_STATUSES
        if unit == UNIT_TASK:
            return self._tasks.values(), ALL_TASK_STATUSES
        raise ValueError(f"Unknown unit type: {unit}")

    def get_job_status_counts(self) -> Dict[str, int]:
        with self._lock:
            counts = {status: 0 for status in ALL_JOB_STATUSES}
            for job in self._jobs.values():
                counts[job.status] += 1
            return counts

    def get_status_counts(self, unit: str, max_retries: int) -> Dict[str, int]:
        with self._lock:
            rows, statuses = self._units(unit)
            counts = {status: 0 for status in statuses}
            counts["dead_lettered"] = 0
            for row in rows:
                if row.status == ChunkStatus.FAILED and row.retry_count > max_retries:
                    counts["dead_lettered"] += 1
                else:
                    counts[row.status] += 1
            return counts

    def get_window_stats(self, unit: str, since: datetime) -> Dict[str, Any]:
        with self._lock:
            rows, _ = self._units(unit)
            stats = {"completed": 0, "failed": 0, "ignored": 0, "timed": 0}
            total_duration = 0.0
            for row in rows:
                if row.status == ChunkStatus.COMPLETED:
                    if row.completed_at is None or row.completed_at < since:
                        continue
                    stats["completed"] += 1
                    if row.started_at is not None:
                        stats["timed"] += 1
                        total_duration += (row.completed_at - row.started_at).total_seconds()
                elif row.status in (ChunkStatus.FAILED, TaskStatus.IGNORED):
                    if (row.updated_at or row.created_at) >= since:
                        stats[row.status] += 1
            stats["average_duration_seconds"] = (
                total_duration / stats["timed"] if stats["timed"] else None
            )
            return stats
