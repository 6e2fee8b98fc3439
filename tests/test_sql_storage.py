import pytest
from datetime import timedelta

sqlalchemy = pytest.importorskip("sqlalchemy")
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from chunkflow.client import ChunkFlowClient
from chunkflow.common.alert import Alert, AlertSeverity
from chunkflow.common.states import ChunkStatus, JobStatus, TaskStatus
from chunkflow.common.task import QueueTask, log_entry
from chunkflow.config import Settings
from chunkflow.execution.registry import ProcessorRegistry
from chunkflow.server.engine import ContinuationEngine
from chunkflow.storage.base import UNIT_CHUNK, UNIT_TASK
from chunkflow.storage.sql_storage import SqlStorage

from tests.support import FakeClock, count_chunk_items, no_sleep


def _make_storage() -> SqlStorage:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    return SqlStorage(engine=engine, create_tables=True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return _make_storage()


@pytest.fixture
def client(storage, clock):
    return ChunkFlowClient(storage, Settings(), clock=clock)


def test_sql_storage_requires_engine_or_url():
    with pytest.raises(ValueError):
        SqlStorage()


def test_sql_storage_create_and_load_job(client, storage, clock):
    job = client.create_job("chunked-file-import", 120, 50, owner="acme", params={"file": "feed.csv"})

    stored = storage.get_job(job.id)
    assert stored.kind == "chunked-file-import"
    assert stored.owner == "acme"
    assert stored.params == {"file": "feed.csv"}
    assert stored.total_chunks == 3
    assert stored.created_at == clock()
    assert stored.created_at.tzinfo is not None

    chunks = storage.get_chunks(job.id)
    assert [(c.ordinal, c.start, c.end) for c in chunks] == [(0, 0, 50), (1, 50, 100), (2, 100, 120)]
    assert all(c.job_kind == "chunked-file-import" for c in chunks)


def test_sql_storage_claim_from_cursor(client, storage, clock):
    job = client.create_job("chunked-file-import", 250, 50)

    chunks = storage.claim_next_chunks(job.id, 3, clock(), cursor=3, worker_id="w1")

    assert [c.ordinal for c in chunks] == [3, 4, 0]
    assert all(c.status == ChunkStatus.PROCESSING for c in chunks)
    assert all(c.worker_id == "w1" for c in chunks)
    assert all(c.version == 1 for c in chunks)
    assert [c.ordinal for c in storage.claim_next_chunks(job.id, 5, clock())] == [1, 2]
    assert storage.claim_next_chunks(job.id, 5, clock()) == []


def test_sql_storage_requeue_and_backoff(client, storage, clock):
    job = client.create_job("chunked-file-import", 10, 10)
    chunk = storage.claim_next_chunks(job.id, 1, clock())[0]
    assert storage.fail_chunk(chunk.id, "Request timed out", "transient", clock())
    failed = storage.get_chunk(chunk.id)
    assert [c.id for c in storage.get_failed_chunks(3, 10, job_id=job.id)] == [chunk.id]

    entry = {"attempt": 1, "reason": "timeout", "timestamp": clock().isoformat()}
    assert storage.requeue_chunk(chunk.id, failed.version, clock() + timedelta(seconds=5), entry, clock())
    assert not storage.requeue_chunk(chunk.id, failed.version, clock(), entry, clock())

    assert storage.claim_next_chunks(job.id, 1, clock()) == []
    reclaimed = storage.claim_next_chunks(job.id, 1, clock() + timedelta(seconds=5))
    assert reclaimed[0].retry_count == 1
    assert reclaimed[0].retry_history == [entry]
    assert reclaimed[0].available_at is None


def test_sql_storage_force_terminalizes_over_ceiling(client, storage, clock):
    job = client.create_job("chunked-file-import", 10, 10)
    chunk = storage.claim_next_chunks(job.id, 1, clock())[0]
    storage.fail_chunk(chunk.id, "timeout", "transient", clock())
    failed = storage.get_chunk(chunk.id)
    # Simulates a row whose counter was pushed past the ceiling by another writer.
    storage.dead_letter_chunk(chunk.id, failed.version, 4, clock())
    failed = storage.get_chunk(chunk.id)
    storage.requeue_chunk(chunk.id, failed.version, clock(), {"attempt": 5}, clock())

    assert storage.claim_next_chunks(job.id, 1, clock(), max_retries=3) == []
    forced = storage.get_chunk(chunk.id)
    assert forced.status == ChunkStatus.FAILED
    assert forced.error_kind == "permanent"


def test_sql_storage_completion_and_stall_reset_are_conditional(client, storage, clock):
    job = client.create_job("chunked-file-import", 20, 10)
    first, second = storage.claim_next_chunks(job.id, 2, clock())
    seen = {c.id: c for c in storage.get_processing_chunks(clock(), 10)}

    assert storage.complete_chunk(first.id, {"matched": 10}, clock())
    assert not storage.complete_chunk(first.id, {"matched": 10}, clock())
    assert not storage.reset_stalled_chunk(first.id, seen[first.id].version, clock())
    assert storage.reset_stalled_chunk(second.id, seen[second.id].version, clock())

    assert storage.get_chunk(first.id).result == {"matched": 10}
    assert storage.get_chunk(second.id).status == ChunkStatus.PENDING
    assert storage.get_chunk(second.id).started_at is None


def test_sql_storage_update_job(client, storage, clock):
    job = client.create_job("email-batch", 10, 5)

    assert not storage.update_job(job.id, {"status": JobStatus.RUNNING}, clock(), expected_statuses={JobStatus.RUNNING})
    assert storage.update_job(
        job.id,
        {"status": JobStatus.RUNNING, "result_totals": {"matched": 4}, "started_at": clock()},
        clock(),
        expected_statuses={JobStatus.PENDING},
    )
    stored = storage.get_job(job.id)
    assert stored.status == JobStatus.RUNNING
    assert stored.result_totals == {"matched": 4}
    assert stored.version == 1
    with pytest.raises(ValueError):
        storage.update_job(job.id, {"kind": "other"}, clock())


def test_sql_storage_task_log_and_retry(client, storage, clock):
    task_id = client.enqueue_task("inbound-email", {"subject": "Price list"}, "orders@acme.test", "prices.xlsx")

    claimed = storage.claim_next_tasks(10, clock(), kinds=["inbound-email"])
    assert [t.id for t in claimed] == [task_id]
    assert storage.fail_task(task_id, "ECONNRESET", "transient", log_entry("error", "ECONNRESET", clock()), clock())
    failed = storage.get_task(task_id)
    assert [t.id for t in storage.get_failed_tasks(3, 10)] == [task_id]
    assert storage.requeue_task(task_id, failed.version, clock(), log_entry("retry", "again", clock()), clock())
    storage.claim_next_tasks(10, clock())
    assert storage.complete_task(task_id, {"rows": 12}, log_entry("completed", "ok", clock()), clock())

    stored = storage.get_task(task_id)
    assert stored.status == TaskStatus.COMPLETED
    assert stored.payload == {"subject": "Price list"}
    assert stored.result == {"rows": 12}
    assert stored.retry_count == 1
    assert [e["type"] for e in stored.processing_log] == ["error", "retry", "completed"]

    hour = timedelta(hours=1)
    found = storage.find_completed_tasks(stored.fingerprint, clock() - hour, clock() + hour)
    assert [t.id for t in found] == [task_id]


def test_sql_storage_stalled_task_reset(storage, clock):
    task = QueueTask(kind="inbound-email", received_at=clock(), created_at=clock())
    storage.add_task(task)
    storage.claim_next_tasks(1, clock())
    seen = storage.get_processing_tasks(clock(), 10)[0]

    assert storage.reset_stalled_task(task.id, seen.version, log_entry("stall_reset", "", clock()), clock())
    assert not storage.reset_stalled_task(task.id, seen.version, log_entry("stall_reset", "", clock()), clock())
    stored = storage.get_task(task.id)
    assert stored.status == TaskStatus.PENDING
    assert [e["type"] for e in stored.processing_log] == ["stall_reset"]


def test_sql_storage_status_counts(client, storage, clock):
    job = client.create_job("chunked-file-import", 30, 10)
    chunks = storage.claim_next_chunks(job.id, 2, clock())
    storage.complete_chunk(chunks[0].id, {}, clock())
    storage.fail_chunk(chunks[1].id, "401 Unauthorized", "permanent", clock())
    failed = storage.get_chunk(chunks[1].id)
    storage.dead_letter_chunk(chunks[1].id, failed.version, 4, clock())
    client.enqueue_task("inbound-email")

    counts = storage.get_status_counts(UNIT_CHUNK, 3)
    assert counts["pending"] == 1
    assert counts["completed"] == 1
    assert counts["failed"] == 0
    assert counts["dead_lettered"] == 1
    assert storage.get_status_counts(UNIT_TASK, 3)["pending"] == 1
    assert storage.get_job_status_counts()[JobStatus.PENDING] == 1


def test_sql_storage_window_stats(client, storage, clock):
    job = client.create_job("chunked-file-import", 40, 10)
    first, second, third = storage.claim_next_chunks(job.id, 3, clock())
    clock.advance(30)
    storage.complete_chunk(first.id, {}, clock())
    clock.advance(30)
    storage.complete_chunk(second.id, {}, clock())
    storage.fail_chunk(third.id, "timeout", "transient", clock())

    stats = storage.get_window_stats(UNIT_CHUNK, clock() - timedelta(minutes=5))

    assert stats["completed"] == 2
    assert stats["failed"] == 1
    assert stats["ignored"] == 0
    assert stats["timed"] == 2
    assert stats["average_duration_seconds"] == pytest.approx(45.0, abs=0.01)
    later = storage.get_window_stats(UNIT_CHUNK, clock() + timedelta(seconds=1))
    assert later["completed"] == 0
    assert later["average_duration_seconds"] is None


def test_sql_storage_cancel_open_chunks(client, storage, clock):
    job = client.create_job("chunked-file-import", 50, 10)
    done, running, retryable, dead = storage.claim_next_chunks(job.id, 4, clock())
    storage.complete_chunk(done.id, {}, clock())
    storage.fail_chunk(retryable.id, "timeout", "transient", clock())
    storage.fail_chunk(dead.id, "forbidden", "permanent", clock())
    storage.dead_letter_chunk(dead.id, storage.get_chunk(dead.id).version, 4, clock())

    assert storage.cancel_open_chunks(job.id, 3, clock()) == 3

    statuses = {c.id: c.status for c in storage.get_chunks(job.id)}
    assert statuses[done.id] == ChunkStatus.COMPLETED
    assert statuses[dead.id] == ChunkStatus.FAILED
    assert statuses[running.id] == ChunkStatus.CANCELLED
    assert statuses[retryable.id] == ChunkStatus.CANCELLED
    counts = storage.get_status_counts(UNIT_CHUNK, 3)
    assert counts["pending"] == 0
    assert counts["cancelled"] == 3
    assert storage.get_failed_chunks(3, 10) == []
    assert not storage.complete_chunk(running.id, {}, clock())


def test_sql_storage_processing_chunks_by_kind(client, storage, clock):
    imports = client.create_job("chunked-file-import", 10, 10)
    emails = client.create_job("email-batch", 10, 10)
    storage.claim_next_chunks(imports.id, 1, clock())
    storage.claim_next_chunks(emails.id, 1, clock())

    only = storage.get_processing_chunks(clock(), 10, kinds=["email-batch"])
    others = storage.get_processing_chunks(clock(), 10, exclude_kinds=["email-batch"])

    assert [c.job_kind for c in only] == ["email-batch"]
    assert [c.job_kind for c in others] == ["chunked-file-import"]


def test_sql_storage_alerts(storage, clock):
    older = Alert(AlertSeverity.WARNING, "queue", "backlog", metadata={"pending": 250}, created_at=clock())
    newer = Alert(AlertSeverity.WARNING, "queue", "backlog", created_at=clock() + timedelta(minutes=5))
    storage.add_alert(older)
    storage.add_alert(newer)

    assert storage.get_latest_alert("queue:warning").id == newer.id
    assert storage.get_latest_alert("missing") is None
    alerts = storage.get_alerts()
    assert [a.id for a in alerts] == [newer.id, older.id]
    assert alerts[1].metadata == {"pending": 250}


def test_sql_storage_runs_engine_end_to_end(storage, clock):
    processors = ProcessorRegistry()
    processors.register_chunk_processor("chunked-file-import", count_chunk_items)
    engine = ContinuationEngine(
        storage,
        processors,
        settings=Settings(concurrency=1, slice_batch_size=10),
        clock=clock,
        sleep=no_sleep,
    )
    job = engine.registry.create_job("chunked-file-import", 45, 10)

    summary = engine.resume(job.id)

    assert summary.processed == 5
    assert summary.jobs == {job.id: JobStatus.COMPLETED}
    stored = storage.get_job(job.id)
    assert stored.processed_items == 45
    assert stored.result_totals == {"matched": 45, "new": 0}
