# chunkflow/client.py
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .common.alert import Alert
from .common.clock import Clock, utcnow
from .common.exceptions import InvalidInput, NotFound
from .common.job import Chunk, Job
from .common.task import QueueTask
from .config import Settings
from .filters.builtin import compute_fingerprint
from .monitoring.metrics import MetricsCollector, MetricsSnapshot
from .registry import JobRegistry
from .storage.base import UNIT_CHUNK, UNIT_TASK, JobStorage


class ChunkFlowClient:
    """
    A client for interacting with chunkflow, enabling job registration, task
    enqueuing, cancellation and querying for the dashboard.
    """

    def __init__(
        self,
        storage: JobStorage,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.storage = storage
        self.settings = settings or Settings()
        self.clock = clock or utcnow
        self.registry = JobRegistry(storage, self.settings, clock=self.clock)
        self.metrics = MetricsCollector(storage, self.settings, clock=self.clock)

    def create_job(
        self,
        kind: str,
        total_items: int,
        chunk_size: int,
        owner: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Job:
        return self.registry.create_job(kind, total_items, chunk_size, owner=owner, params=params)

    def cancel_job(self, job_id: str) -> str:
        return self.registry.cancel_job(job_id)

    def enqueue_task(
        self,
        kind: str,
        payload: Optional[Dict[str, Any]] = None,
        source_identity: Optional[str] = None,
        content_identity: Optional[str] = None,
        owner: Optional[str] = None,
        priority: int = 0,
        received_at: Optional[datetime] = None,
    ) -> str:
        """Creates a pending queue task; duplicates are screened when it is processed."""
        if not kind:
            raise InvalidInput("Task kind is required")
        now = self.clock()
        task = QueueTask(
            kind=kind,
            owner=owner,
            payload=dict(payload or {}),
            source_identity=source_identity,
            content_identity=content_identity,
            fingerprint=compute_fingerprint(source_identity, content_identity),
            priority=priority,
            received_at=received_at or now,
            created_at=now,
            updated_at=now,
        )
        return self.storage.add_task(task)

    # --- Dashboard Methods ---

    def get_job(self, job_id: str) -> Job:
        return self.registry.load_job(job_id)

    def get_job_details(self, job_id: str) -> Tuple[Job, List[Chunk]]:
        job = self.registry.load_job(job_id)
        return job, self.storage.get_chunks(job_id)

    def get_jobs(
        self,
        status: Optional[str] = None,
        kind: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> List[Job]:
        start = (page - 1) * page_size
        statuses = [status] if status else None
        return self.registry.list_jobs(statuses=statuses, kind=kind, start=start, count=page_size)

    def get_task(self, task_id: str) -> QueueTask:
        task = self.storage.get_task(task_id)
        if task is None:
            raise NotFound(f"Task {task_id} not found")
        return task

    def get_tasks(
        self, status: Optional[str] = None, page: int = 1, page_size: int = 20
    ) -> List[QueueTask]:
        start = (page - 1) * page_size
        return self.storage.list_tasks(status=status, start=start, count=page_size)

    def get_state_counts(self) -> Dict[str, Dict[str, int]]:
        max_retries = self.settings.max_retries
        return {
            "jobs": self.storage.get_job_status_counts(),
            "chunks": self.storage.get_status_counts(UNIT_CHUNK, max_retries),
            "tasks": self.storage.get_status_counts(UNIT_TASK, max_retries),
        }

    def get_metrics(self, window: str = "1h", unit: Optional[str] = None) -> MetricsSnapshot:
        return self.metrics.snapshot(window, unit)

    def get_alerts(self, page: int = 1, page_size: int = 20) -> List[Alert]:
        start = (page - 1) * page_size
        return self.storage.get_alerts(start=start, count=page_size)
