import threading
from datetime import timedelta

import pytest

from chunkflow.common.alert import Alert, AlertSeverity
from chunkflow.common.job import Job, build_chunks
from chunkflow.common.states import ChunkStatus, JobStatus, TaskStatus
from chunkflow.common.task import QueueTask, log_entry
from chunkflow.storage.base import UNIT_CHUNK, UNIT_TASK
from chunkflow.storage.memory_storage import MemoryStorage

from tests.support import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return MemoryStorage()


def _create_job(storage, clock, total_items=250, chunk_size=50, kind="chunked-file-import"):
    job = Job(kind=kind, total_items=total_items, chunk_size=chunk_size, created_at=clock())
    storage.create_job(job, build_chunks(job))
    return job


def test_concurrent_claims_are_disjoint(storage, clock):
    job = _create_job(storage, clock, total_items=1000, chunk_size=10)
    claimed = []
    lock = threading.Lock()

    def claimer():
        while True:
            chunks = storage.claim_next_chunks(job.id, 3, clock())
            if not chunks:
                return
            with lock:
                claimed.extend(c.id for c in chunks)

    threads = [threading.Thread(target=claimer) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(claimed) == 100
    assert len(set(claimed)) == 100


def test_claim_starts_at_cursor_and_wraps(storage, clock):
    job = _create_job(storage, clock)

    chunks = storage.claim_next_chunks(job.id, 3, clock(), cursor=3)

    assert [c.ordinal for c in chunks] == [3, 4, 0]
    assert all(c.status == ChunkStatus.PROCESSING for c in chunks)
    assert all(c.started_at == clock() for c in chunks)


def test_claim_returns_empty_when_no_work(storage, clock):
    job = _create_job(storage, clock, total_items=10, chunk_size=10)
    assert len(storage.claim_next_chunks(job.id, 5, clock())) == 1

    assert storage.claim_next_chunks(job.id, 5, clock()) == []
    assert storage.claim_next_chunks("unknown-job", 5, clock()) == []


def test_claim_honors_backoff(storage, clock):
    job = _create_job(storage, clock, total_items=10, chunk_size=10)
    chunk = storage.claim_next_chunks(job.id, 1, clock())[0]
    storage.fail_chunk(chunk.id, "timeout", "transient", clock())
    failed = storage.get_chunk(chunk.id)
    entry = {"attempt": 1, "reason": "timeout", "timestamp": clock().isoformat()}
    assert storage.requeue_chunk(chunk.id, failed.version, clock() + timedelta(seconds=5), entry, clock())

    assert storage.claim_next_chunks(job.id, 1, clock()) == []
    clock.advance(5)
    reclaimed = storage.claim_next_chunks(job.id, 1, clock())
    assert [c.id for c in reclaimed] == [chunk.id]
    assert reclaimed[0].retry_count == 1
    assert reclaimed[0].retry_history == [entry]


def test_claim_force_terminalizes_chunk_over_ceiling(storage, clock):
    job = _create_job(storage, clock, total_items=20, chunk_size=10)
    chunk = storage.claim_next_chunks(job.id, 1, clock())[0]
    for attempt in range(1, 5):
        storage.fail_chunk(chunk.id, "timeout", "transient", clock())
        failed = storage.get_chunk(chunk.id)
        storage.requeue_chunk(chunk.id, failed.version, clock(), {"attempt": attempt}, clock())
        if attempt < 4:
            storage.claim_next_chunks(job.id, 1, clock(), max_retries=3)

    assert storage.get_chunk(chunk.id).retry_count == 4
    claimed = storage.claim_next_chunks(job.id, 5, clock(), max_retries=3)

    assert [c.ordinal for c in claimed] == [1]
    forced = storage.get_chunk(chunk.id)
    assert forced.status == ChunkStatus.FAILED
    assert forced.error_kind == "permanent"
    assert storage.get_status_counts(UNIT_CHUNK, 3)["dead_lettered"] == 1


def test_completion_is_conditional(storage, clock):
    job = _create_job(storage, clock, total_items=10, chunk_size=10)
    chunk = storage.claim_next_chunks(job.id, 1, clock())[0]

    assert storage.complete_chunk(chunk.id, {"matched": 10}, clock())
    assert not storage.complete_chunk(chunk.id, {"matched": 10}, clock())
    assert not storage.fail_chunk(chunk.id, "late failure", "unknown", clock())
    assert storage.get_chunk(chunk.id).status == ChunkStatus.COMPLETED


def test_version_guards_stall_reset(storage, clock):
    job = _create_job(storage, clock, total_items=10, chunk_size=10)
    chunk = storage.claim_next_chunks(job.id, 1, clock())[0]
    seen = storage.get_processing_chunks(clock(), 10)[0]

    storage.complete_chunk(chunk.id, {}, clock())

    assert not storage.reset_stalled_chunk(seen.id, seen.version, clock())
    assert storage.get_chunk(chunk.id).status == ChunkStatus.COMPLETED


def test_returned_rows_are_copies(storage, clock):
    job = _create_job(storage, clock, total_items=10, chunk_size=10)
    chunk = storage.get_chunks(job.id)[0]
    chunk.status = ChunkStatus.COMPLETED

    assert storage.get_chunk(chunk.id).status == ChunkStatus.PENDING


def test_update_job_respects_expected_statuses(storage, clock):
    job = _create_job(storage, clock)

    assert not storage.update_job(job.id, {"status": JobStatus.RUNNING}, clock(), expected_statuses={JobStatus.RUNNING})
    assert storage.update_job(job.id, {"status": JobStatus.RUNNING}, clock(), expected_statuses={JobStatus.PENDING})
    assert storage.get_job(job.id).version == 1
    with pytest.raises(ValueError):
        storage.update_job(job.id, {"total_items": 5}, clock())


def test_task_lifecycle_appends_to_log(storage, clock):
    task = QueueTask(kind="inbound-email", fingerprint="fp", received_at=clock())
    storage.add_task(task)

    claimed = storage.claim_next_tasks(10, clock())
    assert [t.id for t in claimed] == [task.id]
    assert storage.fail_task(task.id, "timeout", "transient", log_entry("error", "timeout", clock()), clock())
    failed = storage.get_task(task.id)
    assert storage.requeue_task(task.id, failed.version, clock(), log_entry("retry", "again", clock()), clock())
    storage.claim_next_tasks(10, clock())
    assert storage.complete_task(task.id, {"rows": 3}, log_entry("completed", "done", clock()), clock())

    stored = storage.get_task(task.id)
    assert stored.status == TaskStatus.COMPLETED
    assert stored.retry_count == 1
    assert [e["type"] for e in stored.processing_log] == ["error", "retry", "completed"]
    assert len(stored.retry_entries()) == 1


def test_task_claim_order_and_kind_filter(storage, clock):
    low = QueueTask(kind="inbound-email", priority=0, received_at=clock())
    high = QueueTask(kind="inbound-email", priority=5, received_at=clock() + timedelta(seconds=1))
    other = QueueTask(kind="auto-link", priority=9, received_at=clock())
    for task in (low, high, other):
        storage.add_task(task)

    claimed = storage.claim_next_tasks(10, clock(), kinds=["inbound-email"])

    assert [t.id for t in claimed] == [high.id, low.id]
    assert storage.get_task(other.id).status == TaskStatus.PENDING


def test_find_completed_tasks_window(storage, clock):
    task = QueueTask(kind="inbound-email", fingerprint="fp", received_at=clock())
    storage.add_task(task)
    storage.claim_next_tasks(1, clock())
    storage.complete_task(task.id, {}, log_entry("completed", "", clock()), clock())

    hour = timedelta(hours=1)
    assert [t.id for t in storage.find_completed_tasks("fp", clock() - hour, clock() + hour)] == [task.id]
    assert storage.find_completed_tasks("fp", clock() + hour, clock() + 2 * hour) == []
    assert storage.find_completed_tasks("fp", clock() - hour, clock() + hour, exclude_id=task.id) == []


def test_status_counts_and_alerts(storage, clock):
    _create_job(storage, clock, total_items=30, chunk_size=10)
    storage.add_task(QueueTask(kind="inbound-email"))
    first = Alert(AlertSeverity.WARNING, "queue", "backlog", created_at=clock())
    second = Alert(AlertSeverity.WARNING, "queue", "backlog", created_at=clock() + timedelta(minutes=1))
    storage.add_alert(first)
    storage.add_alert(second)

    assert storage.get_status_counts(UNIT_CHUNK, 3)["pending"] == 3
    assert storage.get_status_counts(UNIT_TASK, 3)["pending"] == 1
    assert storage.get_job_status_counts()[JobStatus.PENDING] == 1
    assert storage.get_latest_alert("queue:warning").id == second.id
    assert [a.id for a in storage.get_alerts()] == [second.id, first.id]
