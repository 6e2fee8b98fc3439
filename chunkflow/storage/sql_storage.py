# chunkflow/storage/sql_storage.py
from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Collection, Dict, Iterable, List, Optional

from sqlalchemy import (
    DateTime,
    Engine,
    Integer,
    String,
    Text,
    and_,
    case,
    create_engine,
    func,
    literal_column,
    or_,
    select,
    update,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from chunkflow.common.alert import Alert
from chunkflow.common.job import Chunk, Job
from chunkflow.common.states import (
    ALL_CHUNK_STATUSES,
    ALL_JOB_STATUSES,
    ALL_TASK_STATUSES,
    ChunkStatus,
    TaskStatus,
)
from chunkflow.common.task import QueueTask
from chunkflow.serialization.base import BaseSerializer
from chunkflow.serialization.json_serializer import JsonSerializer
from chunkflow.storage.base import UNIT_CHUNK, UNIT_TASK, JobStorage

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Base(DeclarativeBase):
    pass


class JobModel(Base):
    __tablename__ = "chunkflow_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(100), index=True)
    owner: Mapped[Optional[str]] = mapped_column(String(128), index=True)
    params: Mapped[str] = mapped_column(Text, default="{}")
    total_items: Mapped[int] = mapped_column(Integer)
    chunk_size: Mapped[int] = mapped_column(Integer)
    total_chunks: Mapped[int] = mapped_column(Integer)
    cursor: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(32), index=True)
    completed_chunks: Mapped[int] = mapped_column(Integer, default=0)
    failed_chunks: Mapped[int] = mapped_column(Integer, default=0)
    processed_items: Mapped[int] = mapped_column(Integer, default=0)
    result_totals: Mapped[str] = mapped_column(Text, default="{}")
    error_summary: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    version: Mapped[int] = mapped_column(Integer, default=0)


class ChunkModel(Base):
    __tablename__ = "chunkflow_chunks"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    job_id: Mapped[str] = mapped_column(String(64), index=True)
    job_kind: Mapped[str] = mapped_column(String(100), default="")
    ordinal: Mapped[int] = mapped_column(Integer)
    start: Mapped[int] = mapped_column(Integer)
    end: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(32), index=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    error_kind: Mapped[Optional[str]] = mapped_column(String(32))
    retry_history: Mapped[str] = mapped_column(Text, default="[]")
    result: Mapped[Optional[str]] = mapped_column(Text)
    worker_id: Mapped[Optional[str]] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    available_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    version: Mapped[int] = mapped_column(Integer, default=0)


class TaskModel(Base):
    __tablename__ = "chunkflow_tasks"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(100), index=True)
    owner: Mapped[Optional[str]] = mapped_column(String(128), index=True)
    payload: Mapped[str] = mapped_column(Text, default="{}")
    source_identity: Mapped[Optional[str]] = mapped_column(String(255))
    content_identity: Mapped[Optional[str]] = mapped_column(String(255))
    fingerprint: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(32), index=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    error_kind: Mapped[Optional[str]] = mapped_column(String(32))
    result: Mapped[Optional[str]] = mapped_column(Text)
    processing_log: Mapped[str] = mapped_column(Text, default="[]")
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    available_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    version: Mapped[int] = mapped_column(Integer, default=0)


class AlertModel(Base):
    __tablename__ = "chunkflow_alerts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    severity: Mapped[str] = mapped_column(String(16), index=True)
    component: Mapped[str] = mapped_column(String(100))
    message: Mapped[str] = mapped_column(Text)
    dedupe_key: Mapped[str] = mapped_column(String(255), index=True)
    alert_metadata: Mapped[str] = mapped_column("metadata", Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


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
_JOB_JSON_FIELDS = {"result_totals", "error_summary", "params"}


class SqlStorage(JobStorage):
    def __init__(
        self,
        connection_url: Optional[str] = None,
        engine: Optional[Engine] = None,
        create_tables: bool = True,
        serializer: Optional[BaseSerializer] = None,
    ) -> None:
        if engine is None and connection_url is None:
            raise ValueError("connection_url or engine is required")
        self.engine = engine or create_engine(connection_url)
        self.serializer = serializer or JsonSerializer()
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        if create_tables:
            Base.metadata.create_all(self.engine)

        self._supports_skip_locked = self.engine.dialect.name in {
            "postgresql",
            "mysql",
            "mariadb",
        }

    # --- Row mapping ---

    def _dump(self, value: Any) -> str:
        return self.serializer.serialize_payload(value)

    def _load(self, payload: Optional[str], default: Any) -> Any:
        return self.serializer.deserialize_payload(payload, default)

    def _job_from_model(self, model: JobModel) -> Job:
        return Job(
            id=model.id,
            kind=model.kind,
            owner=model.owner,
            params=self._load(model.params, {}),
            total_items=model.total_items,
            chunk_size=model.chunk_size,
            total_chunks=model.total_chunks,
            cursor=model.cursor,
            status=model.status,
            completed_chunks=model.completed_chunks,
            failed_chunks=model.failed_chunks,
            processed_items=model.processed_items,
            result_totals=self._load(model.result_totals, {}),
            error_summary=self._load(model.error_summary, []),
            created_at=_aware(model.created_at),
            updated_at=_aware(model.updated_at),
            started_at=_aware(model.started_at),
            completed_at=_aware(model.completed_at),
            version=model.version,
        )

    def _chunk_from_model(self, model: ChunkModel) -> Chunk:
        return Chunk(
            id=model.id,
            job_id=model.job_id,
            job_kind=model.job_kind,
            ordinal=model.ordinal,
            start=model.start,
            end=model.end,
            status=model.status,
            retry_count=model.retry_count,
            last_error=model.last_error,
            error_kind=model.error_kind,
            retry_history=self._load(model.retry_history, []),
            result=self._load(model.result, None),
            worker_id=model.worker_id,
            created_at=_aware(model.created_at),
            updated_at=_aware(model.updated_at),
            started_at=_aware(model.started_at),
            completed_at=_aware(model.completed_at),
            available_at=_aware(model.available_at),
            version=model.version,
        )

    def _task_from_model(self, model: TaskModel) -> QueueTask:
        return QueueTask(
            id=model.id,
            kind=model.kind,
            owner=model.owner,
            payload=self._load(model.payload, {}),
            source_identity=model.source_identity,
            content_identity=model.content_identity,
            fingerprint=model.fingerprint,
            priority=model.priority,
            status=model.status,
            retry_count=model.retry_count,
            error_message=model.error_message,
            error_kind=model.error_kind,
            result=self._load(model.result, None),
            processing_log=self._load(model.processing_log, []),
            received_at=_aware(model.received_at),
            created_at=_aware(model.created_at),
            updated_at=_aware(model.updated_at),
            started_at=_aware(model.started_at),
            completed_at=_aware(model.completed_at),
            available_at=_aware(model.available_at),
            version=model.version,
        )

    def _alert_from_model(self, model: AlertModel) -> Alert:
        return Alert(
            id=model.id,
            severity=model.severity,
            component=model.component,
            message=model.message,
            dedupe_key=model.dedupe_key,
            metadata=self._load(model.alert_metadata, {}),
            created_at=_aware(model.created_at),
        )

    def _conditional_update(
        self,
        session: Session,
        model,
        row_id: str,
        expected_status: str,
        values: Dict[str, Any],
        now: datetime,
        expected_version: Optional[int] = None,
    ) -> bool:
        conditions = [model.id == row_id, model.status == expected_status]
        if expected_version is not None:
            conditions.append(model.version == expected_version)
        values = dict(values)
        values["updated_at"] = now
        values["version"] = model.version + 1
        result = session.execute(update(model).where(*conditions).values(**values))
        return result.rowcount == 1

    # --- Jobs ---

    def create_job(self, job: Job, chunks: Iterable[Chunk]) -> str:
        with self._session_factory.begin() as session:
            session.add(
                JobModel(
                    id=job.id,
                    kind=job.kind,
                    owner=job.owner,
                    params=self._dump(job.params),
                    total_items=job.total_items,
                    chunk_size=job.chunk_size,
                    total_chunks=job.total_chunks,
                    cursor=job.cursor,
                    status=job.status,
                    completed_chunks=job.completed_chunks,
                    failed_chunks=job.failed_chunks,
                    processed_items=job.processed_items,
                    result_totals=self._dump(job.result_totals),
                    error_summary=self._dump(job.error_summary),
                    created_at=job.created_at,
                    updated_at=job.updated_at or job.created_at,
                    version=job.version,
                )
            )
            for chunk in chunks:
                session.add(
                    ChunkModel(
                        id=chunk.id,
                        job_id=chunk.job_id,
                        job_kind=chunk.job_kind,
                        ordinal=chunk.ordinal,
                        start=chunk.start,
                        end=chunk.end,
                        status=chunk.status,
                        retry_count=chunk.retry_count,
                        retry_history=self._dump(chunk.retry_history),
                        created_at=chunk.created_at,
                        updated_at=chunk.updated_at or chunk.created_at,
                        available_at=chunk.available_at,
                        version=chunk.version,
                    )
                )
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._session_factory() as session:
            model = session.get(JobModel, job_id)
            return self._job_from_model(model) if model else None

    def list_jobs(
        self,
        statuses: Optional[Collection[str]] = None,
        kind: Optional[str] = None,
        start: int = 0,
        count: int = 50,
    ) -> List[Job]:
        query = select(JobModel)
        if statuses is not None:
            query = query.where(JobModel.status.in_(list(statuses)))
        if kind is not None:
            query = query.where(JobModel.kind == kind)
        query = query.order_by(JobModel.created_at.desc()).offset(start).limit(count)
        with self._session_factory() as session:
            rows = session.execute(query).scalars().all()
            return [self._job_from_model(row) for row in rows]

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
        values = {
            name: self._dump(value) if name in _JOB_JSON_FIELDS else value
            for name, value in values.items()
        }
        values["updated_at"] = now
        values["version"] = JobModel.version + 1
        conditions = [JobModel.id == job_id]
        if expected_statuses is not None:
            conditions.append(JobModel.status.in_(list(expected_statuses)))
        with self._session_factory.begin() as session:
            result = session.execute(update(JobModel).where(*conditions).values(**values))
            return result.rowcount == 1

    # --- Chunks ---

    def get_chunk(self, chunk_id: str) -> Optional[Chunk]:
        with self._session_factory() as session:
            model = session.get(ChunkModel, chunk_id)
            return self._chunk_from_model(model) if model else None

    def get_chunks(self, job_id: str) -> List[Chunk]:
        with self._session_factory() as session:
            rows = (
                session.execute(
                    select(ChunkModel)
                    .where(ChunkModel.job_id == job_id)
                    .order_by(ChunkModel.ordinal)
                )
                .scalars()
                .all()
            )
            return [self._chunk_from_model(row) for row in rows]

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
        claimed_ids: List[str] = []
        with self._session_factory.begin() as session:
            query = (
                select(ChunkModel.id, ChunkModel.retry_count)
                .where(
                    ChunkModel.job_id == job_id,
                    ChunkModel.status == ChunkStatus.PENDING,
                    (ChunkModel.available_at.is_(None)) | (ChunkModel.available_at <= now),
                )
                .order_by(
                    case((ChunkModel.ordinal >= cursor, 0), else_=1),
                    ChunkModel.ordinal,
                )
                .limit(limit * 2 + 10)
            )
            if self._supports_skip_locked:
                query = query.with_for_update(skip_locked=True)

            for chunk_id, retry_count in session.execute(query).all():
                if len(claimed_ids) >= limit:
                    break
                if max_retries is not None and retry_count > max_retries:
                    self._conditional_update(
                        session,
                        ChunkModel,
                        chunk_id,
                        ChunkStatus.PENDING,
                        {
                            "status": ChunkStatus.FAILED,
                            "error_kind": "permanent",
                            "last_error": "Retry ceiling exceeded before claim",
                        },
                        now,
                    )
                    continue
                won = self._conditional_update(
                    session,
                    ChunkModel,
                    chunk_id,
                    ChunkStatus.PENDING,
                    {
                        "status": ChunkStatus.PROCESSING,
                        "started_at": now,
                        "worker_id": worker_id,
                        "available_at": None,
                    },
                    now,
                )
                if won:
                    claimed_ids.append(chunk_id)

            rows = []
            if claimed_ids:
                rows = (
                    session.execute(
                        select(ChunkModel)
                        .where(ChunkModel.id.in_(claimed_ids))
                        .execution_options(populate_existing=True)
                    )
                    .scalars()
                    .all()
                )
            chunks = {row.id: self._chunk_from_model(row) for row in rows}
        return [chunks[chunk_id] for chunk_id in claimed_ids if chunk_id in chunks]

    def complete_chunk(self, chunk_id: str, result: Any, now: datetime) -> bool:
        with self._session_factory.begin() as session:
            return self._conditional_update(
                session,
                ChunkModel,
                chunk_id,
                ChunkStatus.PROCESSING,
                {
                    "status": ChunkStatus.COMPLETED,
                    "result": self._dump(result),
                    "completed_at": now,
                },
                now,
            )

    def fail_chunk(
        self, chunk_id: str, error_message: str, error_kind: str, now: datetime
    ) -> bool:
        with self._session_factory.begin() as session:
            return self._conditional_update(
                session,
                ChunkModel,
                chunk_id,
                ChunkStatus.PROCESSING,
                {
                    "status": ChunkStatus.FAILED,
                    "last_error": error_message,
                    "error_kind": error_kind,
                },
                now,
            )

    def get_failed_chunks(
        self, max_retries: int, limit: int, job_id: Optional[str] = None
    ) -> List[Chunk]:
        query = select(ChunkModel).where(
            ChunkModel.status == ChunkStatus.FAILED,
            ChunkModel.retry_count <= max_retries,
        )
        if job_id is not None:
            query = query.where(ChunkModel.job_id == job_id)
        query = query.order_by(ChunkModel.updated_at, ChunkModel.ordinal).limit(limit)
        with self._session_factory() as session:
            rows = session.execute(query).scalars().all()
            return [self._chunk_from_model(row) for row in rows]

    def requeue_chunk(
        self,
        chunk_id: str,
        expected_version: int,
        available_at: datetime,
        history_entry: Dict[str, Any],
        now: datetime,
    ) -> bool:
        with self._session_factory.begin() as session:
            model = session.get(ChunkModel, chunk_id)
            if not model or model.version != expected_version:
                return False
            history = self._load(model.retry_history, []) + [dict(history_entry)]
            return self._conditional_update(
                session,
                ChunkModel,
                chunk_id,
                ChunkStatus.FAILED,
                {
                    "status": ChunkStatus.PENDING,
                    "retry_count": model.retry_count + 1,
                    "retry_history": self._dump(history),
                    "available_at": available_at,
                    "started_at": None,
                    "worker_id": None,
                },
                now,
                expected_version=expected_version,
            )

    def dead_letter_chunk(
        self, chunk_id: str, expected_version: int, retry_count: int, now: datetime
    ) -> bool:
        with self._session_factory.begin() as session:
            return self._conditional_update(
                session,
                ChunkModel,
                chunk_id,
                ChunkStatus.FAILED,
                {"retry_count": retry_count},
                now,
                expected_version=expected_version,
            )

    def get_processing_chunks(
        self,
        started_before: datetime,
        limit: int,
        kinds: Optional[Collection[str]] = None,
        exclude_kinds: Optional[Collection[str]] = None,
    ) -> List[Chunk]:
        conditions = [
            ChunkModel.status == ChunkStatus.PROCESSING,
            ChunkModel.started_at.is_not(None),
            ChunkModel.started_at <= started_before,
        ]
        if kinds is not None:
            conditions.append(ChunkModel.job_kind.in_(list(kinds)))
        if exclude_kinds:
            conditions.append(ChunkModel.job_kind.not_in(list(exclude_kinds)))
        with self._session_factory() as session:
            rows = (
                session.execute(
                    select(ChunkModel)
                    .where(*conditions)
                    .order_by(ChunkModel.started_at)
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            return [self._chunk_from_model(row) for row in rows]

    def reset_stalled_chunk(self, chunk_id: str, expected_version: int, now: datetime) -> bool:
        with self._session_factory.begin() as session:
            return self._conditional_update(
                session,
                ChunkModel,
                chunk_id,
                ChunkStatus.PROCESSING,
                {
                    "status": ChunkStatus.PENDING,
                    "started_at": None,
                    "worker_id": None,
                    "available_at": None,
                },
                now,
                expected_version=expected_version,
            )

    def cancel_open_chunks(self, job_id: str, max_retries: int, now: datetime) -> int:
        with self._session_factory.begin() as session:
            result = session.execute(
                update(ChunkModel)
                .where(
                    ChunkModel.job_id == job_id,
                    or_(
                        ChunkModel.status.in_([ChunkStatus.PENDING, ChunkStatus.PROCESSING]),
                        and_(
                            ChunkModel.status == ChunkStatus.FAILED,
                            ChunkModel.retry_count <= max_retries,
                        ),
                    ),
                )
                .values(
                    status=ChunkStatus.CANCELLED,
                    available_at=None,
                    worker_id=None,
                    updated_at=now,
                    version=ChunkModel.version + 1,
                )
            )
            return result.rowcount

    # --- Queue tasks ---

    def add_task(self, task: QueueTask) -> str:
        with self._session_factory.begin() as session:
            session.add(
                TaskModel(
                    id=task.id,
                    kind=task.kind,
                    owner=task.owner,
                    payload=self._dump(task.payload),
                    source_identity=task.source_identity,
                    content_identity=task.content_identity,
                    fingerprint=task.fingerprint,
                    priority=task.priority,
                    status=task.status,
                    retry_count=task.retry_count,
                    processing_log=self._dump(task.processing_log),
                    received_at=task.received_at,
                    created_at=task.created_at,
                    updated_at=task.updated_at or task.created_at,
                    available_at=task.available_at,
                    version=task.version,
                )
            )
        return task.id

    def get_task(self, task_id: str) -> Optional[QueueTask]:
        with self._session_factory() as session:
            model = session.get(TaskModel, task_id)
            return self._task_from_model(model) if model else None

    def list_tasks(
        self, status: Optional[str] = None, start: int = 0, count: int = 50
    ) -> List[QueueTask]:
        query = select(TaskModel)
        if status is not None:
            query = query.where(TaskModel.status == status)
        query = query.order_by(TaskModel.received_at.desc()).offset(start).limit(count)
        with self._session_factory() as session:
            rows = session.execute(query).scalars().all()
            return [self._task_from_model(row) for row in rows]

    def claim_next_tasks(
        self,
        limit: int,
        now: datetime,
        kinds: Optional[Collection[str]] = None,
    ) -> List[QueueTask]:
        if limit <= 0:
            return []
        claimed_ids: List[str] = []
        with self._session_factory.begin() as session:
            query = select(TaskModel.id).where(
                TaskModel.status == TaskStatus.PENDING,
                (TaskModel.available_at.is_(None)) | (TaskModel.available_at <= now),
            )
            if kinds is not None:
                query = query.where(TaskModel.kind.in_(list(kinds)))
            query = query.order_by(TaskModel.priority.desc(), TaskModel.received_at).limit(limit)
            if self._supports_skip_locked:
                query = query.with_for_update(skip_locked=True)

            for task_id in session.execute(query).scalars().all():
                won = self._conditional_update(
                    session,
                    TaskModel,
                    task_id,
                    TaskStatus.PENDING,
                    {
                        "status": TaskStatus.PROCESSING,
                        "started_at": now,
                        "available_at": None,
                    },
                    now,
                )
                if won:
                    claimed_ids.append(task_id)

            rows = []
            if claimed_ids:
                rows = (
                    session.execute(
                        select(TaskModel)
                        .where(TaskModel.id.in_(claimed_ids))
                        .execution_options(populate_existing=True)
                    )
                    .scalars()
                    .all()
                )
            tasks = {row.id: self._task_from_model(row) for row in rows}
        return [tasks[task_id] for task_id in claimed_ids if task_id in tasks]

    def _append_log_transition(
        self,
        task_id: str,
        expected_status: str,
        log: Dict[str, Any],
        values: Dict[str, Any],
        now: datetime,
        expected_version: Optional[int] = None,
        increment_retry: bool = False,
    ) -> bool:
        with self._session_factory.begin() as session:
            model = session.get(TaskModel, task_id)
            if not model or model.status != expected_status:
                return False
            if expected_version is not None and model.version != expected_version:
                return False
            values = dict(values)
            values["processing_log"] = self._dump(
                self._load(model.processing_log, []) + [dict(log)]
            )
            if increment_retry:
                values["retry_count"] = model.retry_count + 1
            # The version read above guards the log append against a concurrent writer.
            return self._conditional_update(
                session,
                TaskModel,
                task_id,
                expected_status,
                values,
                now,
                expected_version=model.version,
            )

    def complete_task(
        self, task_id: str, result: Any, log: Dict[str, Any], now: datetime
    ) -> bool:
        return self._append_log_transition(
            task_id,
            TaskStatus.PROCESSING,
            log,
            {
                "status": TaskStatus.COMPLETED,
                "result": self._dump(result),
                "completed_at": now,
            },
            now,
        )

    def fail_task(
        self,
        task_id: str,
        error_message: str,
        error_kind: str,
        log: Dict[str, Any],
        now: datetime,
    ) -> bool:
        return self._append_log_transition(
            task_id,
            TaskStatus.PROCESSING,
            log,
            {
                "status": TaskStatus.FAILED,
                "error_message": error_message,
                "error_kind": error_kind,
            },
            now,
        )

    def ignore_task(self, task_id: str, reason: str, log: Dict[str, Any], now: datetime) -> bool:
        return self._append_log_transition(
            task_id,
            TaskStatus.PROCESSING,
            log,
            {
                "status": TaskStatus.IGNORED,
                "error_message": reason,
                "completed_at": now,
            },
            now,
        )

    def find_completed_tasks(
        self,
        fingerprint: str,
        received_from: datetime,
        received_to: datetime,
        exclude_id: Optional[str] = None,
    ) -> List[QueueTask]:
        query = select(TaskModel).where(
            TaskModel.fingerprint == fingerprint,
            TaskModel.status == TaskStatus.COMPLETED,
            TaskModel.received_at >= received_from,
            TaskModel.received_at <= received_to,
        )
        if exclude_id is not None:
            query = query.where(TaskModel.id != exclude_id)
        with self._session_factory() as session:
            rows = session.execute(query).scalars().all()
            return [self._task_from_model(row) for row in rows]

    def get_failed_tasks(self, max_retries: int, limit: int) -> List[QueueTask]:
        with self._session_factory() as session:
            rows = (
                session.execute(
                    select(TaskModel)
                    .where(
                        TaskModel.status == TaskStatus.FAILED,
                        TaskModel.retry_count <= max_retries,
                    )
                    .order_by(TaskModel.updated_at)
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            return [self._task_from_model(row) for row in rows]

    def requeue_task(
        self,
        task_id: str,
        expected_version: int,
        available_at: datetime,
        log: Dict[str, Any],
        now: datetime,
    ) -> bool:
        return self._append_log_transition(
            task_id,
            TaskStatus.FAILED,
            log,
            {
                "status": TaskStatus.PENDING,
                "available_at": available_at,
                "started_at": None,
            },
            now,
            expected_version=expected_version,
            increment_retry=True,
        )

    def dead_letter_task(
        self,
        task_id: str,
        expected_version: int,
        retry_count: int,
        log: Dict[str, Any],
        now: datetime,
    ) -> bool:
        return self._append_log_transition(
            task_id,
            TaskStatus.FAILED,
            log,
            {"retry_count": retry_count},
            now,
            expected_version=expected_version,
        )

    def get_processing_tasks(self, started_before: datetime, limit: int) -> List[QueueTask]:
        with self._session_factory() as session:
            rows = (
                session.execute(
                    select(TaskModel)
                    .where(
                        TaskModel.status == TaskStatus.PROCESSING,
                        TaskModel.started_at.is_not(None),
                        TaskModel.started_at <= started_before,
                    )
                    .order_by(TaskModel.started_at)
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            return [self._task_from_model(row) for row in rows]

    def reset_stalled_task(
        self, task_id: str, expected_version: int, log: Dict[str, Any], now: datetime
    ) -> bool:
        return self._append_log_transition(
            task_id,
            TaskStatus.PROCESSING,
            log,
            {"status": TaskStatus.PENDING, "started_at": None},
            now,
            expected_version=expected_version,
        )

    # --- Alerts ---

    def add_alert(self, alert: Alert) -> str:
        with self._session_factory.begin() as session:
            session.add(
                AlertModel(
                    id=alert.id,
                    severity=alert.severity,
                    component=alert.component,
                    message=alert.message,
                    dedupe_key=alert.dedupe_key,
                    alert_metadata=self._dump(alert.metadata),
                    created_at=alert.created_at,
                )
            )
        return alert.id

    def get_alerts(
        self, start: int = 0, count: int = 50, since: Optional[datetime] = None
    ) -> List[Alert]:
        query = select(AlertModel)
        if since is not None:
            query = query.where(AlertModel.created_at >= since)
        query = query.order_by(AlertModel.created_at.desc()).offset(start).limit(count)
        with self._session_factory() as session:
            rows = session.execute(query).scalars().all()
            return [self._alert_from_model(row) for row in rows]

    def get_latest_alert(self, dedupe_key: str) -> Optional[Alert]:
        with self._session_factory() as session:
            model = session.execute(
                select(AlertModel)
                .where(AlertModel.dedupe_key == dedupe_key)
                .order_by(AlertModel.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return self._alert_from_model(model) if model else None

    # --- Metrics ---

    def _unit_model(self, unit: str):
        if unit == UNIT_CHUNK:
            return ChunkModel, ALL_CHUNK_STATUSES
        if unit == UNIT_TASK:
            return TaskModel, ALL_TASK_STATUSES
        raise ValueError(f"Unknown unit type: {unit}")

    def get_job_status_counts(self) -> Dict[str, int]:
        with self._session_factory() as session:
            rows = session.execute(
                select(JobModel.status, func.count(JobModel.id)).group_by(JobModel.status)
            ).all()
        counts = {status: 0 for status in ALL_JOB_STATUSES}
        for status, count in rows:
            counts[status] = int(count)
        return counts

    def get_status_counts(self, unit: str, max_retries: int) -> Dict[str, int]:
        model, statuses = self._unit_model(unit)
        with self._session_factory() as session:
            rows = session.execute(
                select(model.status, func.count(model.id)).group_by(model.status)
            ).all()
            dead_lettered = session.execute(
                select(func.count(model.id)).where(
                    model.status == ChunkStatus.FAILED,
                    model.retry_count > max_retries,
                )
            ).scalar_one()
        counts = {status: 0 for status in statuses}
        for status, count in rows:
            counts[status] = int(count)
        counts["dead_lettered"] = int(dead_lettered)
        counts[ChunkStatus.FAILED] -= counts["dead_lettered"]
        return counts

    def _duration_seconds(self, model):
        dialect = self.engine.dialect.name
        if dialect == "sqlite":
            return (func.julianday(model.completed_at) - func.julianday(model.started_at)) * 86400.0
        if dialect in ("mysql", "mariadb"):
            return (
                func.timestampdiff(literal_column("MICROSECOND"), model.started_at, model.completed_at)
                / 1000000.0
            )
        return func.extract("epoch", model.completed_at - model.started_at)

    def get_window_stats(self, unit: str, since: datetime) -> Dict[str, Any]:
        model, _ = self._unit_model(unit)
        duration = self._duration_seconds(model)
        with self._session_factory() as session:
            completed, timed, average = session.execute(
                select(func.count(model.id), func.count(duration), func.avg(duration)).where(
                    model.status == ChunkStatus.COMPLETED,
                    model.completed_at.is_not(None),
                    model.completed_at >= since,
                )
            ).one()
            rows = session.execute(
                select(model.status, func.count(model.id))
                .where(
                    model.status.in_([ChunkStatus.FAILED, TaskStatus.IGNORED]),
                    model.updated_at >= since,
                )
                .group_by(model.status)
            ).all()
        stats = {"completed": int(completed), "failed": 0, "ignored": 0, "timed": int(timed)}
        for status, count in rows:
            stats[status] = int(count)
        stats["average_duration_seconds"] = float(average) if average is not None else None
        return stats
