import pytest

from chunkflow.common.alert import AlertSeverity
from chunkflow.common.states import ChunkStatus, TaskStatus
from chunkflow.common.task import QueueTask
from chunkflow.config import Settings
from chunkflow.execution.registry import ProcessorRegistry
from chunkflow.monitoring.alerts import AlertManager
from chunkflow.registry import JobRegistry
from chunkflow.server.processor import LOST, UnitProcessor
from chunkflow.server.stall import StallDetector
from chunkflow.storage.memory_storage import MemoryStorage

from tests.support import FakeClock, count_chunk_items


class CompletingStorage(MemoryStorage):
    """Completes every chunk it reports as stalled, the way a slow worker
    finishing between the sweep's read and its reset would."""

    def get_processing_chunks(self, started_before, limit, **filters):
        chunks = super().get_processing_chunks(started_before, limit, **filters)
        for chunk in chunks:
            self.complete_chunk(chunk.id, {"late": 1}, started_before)
        return chunks


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(stall_thresholds_by_kind={"email-batch": 15 * 60})


@pytest.fixture
def storage():
    return MemoryStorage()


def _detector(storage, settings, clock, notifiers=None):
    alerts = AlertManager(storage, settings, notifiers=notifiers or [], clock=clock)
    return StallDetector(storage, settings, alerts, clock=clock)


def _start_job(storage, settings, clock, kind="chunked-file-import", chunks=1):
    registry = JobRegistry(storage, settings, clock=clock)
    job = registry.create_job(kind, total_items=10 * chunks, chunk_size=10)
    return job, storage.claim_next_chunks(job.id, chunks, clock())


def test_chunk_past_threshold_is_reset(storage, settings, clock):
    _, (chunk,) = _start_job(storage, settings, clock)
    clock.advance(61 * 60)

    report = _detector(storage, settings, clock).sweep()

    assert report.reset_chunks == [chunk.id]
    assert report.stalled_count == 1
    stored = storage.get_chunk(chunk.id)
    assert stored.status == ChunkStatus.PENDING
    assert stored.started_at is None
    assert stored.retry_count == 0


def test_chunk_within_threshold_is_left_alone(storage, settings, clock):
    _, (chunk,) = _start_job(storage, settings, clock)
    clock.advance(59 * 60)

    report = _detector(storage, settings, clock).sweep()

    assert report.reset_chunks == []
    assert storage.get_chunk(chunk.id).status == ChunkStatus.PROCESSING


def test_per_kind_threshold(storage, settings, clock):
    _, (email_chunk,) = _start_job(storage, settings, clock, kind="email-batch")
    _, (import_chunk,) = _start_job(storage, settings, clock)
    clock.advance(16 * 60)

    report = _detector(storage, settings, clock).sweep()

    assert report.reset_chunks == [email_chunk.id]
    assert storage.get_chunk(import_chunk.id).status == ChunkStatus.PROCESSING


def test_busy_long_threshold_kind_does_not_hide_short_threshold_stalls(storage, clock):
    settings = Settings(stall_thresholds_by_kind={"email-batch": 15 * 60}, stall_sweep_limit=1)
    _, (import_chunk,) = _start_job(storage, settings, clock)
    clock.advance(5 * 60)
    _, (email_chunk,) = _start_job(storage, settings, clock, kind="email-batch")
    clock.advance(16 * 60)

    report = _detector(storage, settings, clock).sweep()

    assert report.reset_chunks == [email_chunk.id]
    assert storage.get_chunk(import_chunk.id).status == ChunkStatus.PROCESSING


def test_environment_style_kind_key_applies(storage, clock):
    settings = Settings(stall_thresholds_by_kind={"email_batch": 15 * 60})
    _, (email_chunk,) = _start_job(storage, settings, clock, kind="email-batch")
    clock.advance(16 * 60)

    report = _detector(storage, settings, clock).sweep()

    assert report.reset_chunks == [email_chunk.id]


def test_completion_between_read_and_reset_wins(settings, clock):
    storage = CompletingStorage()
    _, (chunk,) = _start_job(storage, settings, clock)
    clock.advance(2 * 3600)

    report = _detector(storage, settings, clock).sweep()

    assert report.stalled_count == 1
    assert report.reset_chunks == []
    stored = storage.get_chunk(chunk.id)
    assert stored.status == ChunkStatus.COMPLETED
    assert stored.result == {"late": 1}


def test_late_completion_after_reset_is_discarded(storage, settings, clock):
    job, (chunk,) = _start_job(storage, settings, clock)
    clock.advance(2 * 3600)
    _detector(storage, settings, clock).sweep()

    processors = ProcessorRegistry()
    processors.register_chunk_processor("chunked-file-import", count_chunk_items)
    outcome = UnitProcessor(storage, processors, clock=clock).process_chunk(job, chunk)

    assert outcome == LOST
    assert storage.get_chunk(chunk.id).status == ChunkStatus.PENDING


def test_stalled_task_is_reset_with_log_entry(storage, settings, clock):
    task = QueueTask(kind="inbound-email", received_at=clock())
    storage.add_task(task)
    storage.claim_next_tasks(1, clock())
    clock.advance(11 * 60)

    report = _detector(storage, settings, clock).sweep()

    assert report.reset_tasks == [task.id]
    stored = storage.get_task(task.id)
    assert stored.status == TaskStatus.PENDING
    assert stored.processing_log[-1]["type"] == "stall_reset"


def test_many_stalled_units_raise_alert(storage, settings, clock):
    _start_job(storage, settings, clock, chunks=6)
    clock.advance(2 * 3600)
    notified = []

    report = _detector(storage, settings, clock, notifiers=[notified.append]).sweep()

    assert len(report.reset_chunks) == 6
    assert [a.dedupe_key for a in report.alerts] == ["stall-detector:stalled"]
    assert notified == report.alerts
    assert storage.get_latest_alert("stall-detector:stalled") is not None


def test_dead_letter_alerts_are_debounced(storage, settings, clock):
    manager = AlertManager(storage, settings, notifiers=[], clock=clock)

    first = manager.evaluate({"dead_lettered": 25})
    assert [(a.severity, a.dedupe_key) for a in first] == [(AlertSeverity.CRITICAL, "dead-letter:critical")]
    assert first[0].metadata == {"dead_lettered": 25}

    clock.advance(10 * 60)
    assert manager.evaluate({"dead_lettered": 25}) == []

    clock.advance(6 * 60)
    assert len(manager.evaluate({"dead_lettered": 25})) == 1
    assert len(storage.get_alerts()) == 2


def test_alert_thresholds(storage, settings, clock):
    manager = AlertManager(storage, settings, notifiers=[], clock=clock)

    assert manager.evaluate({"dead_lettered": 10, "stalled": 5, "pending": 200}) == []
    raised = manager.evaluate({"dead_lettered": 11, "pending": 201})

    assert sorted(a.dedupe_key for a in raised) == ["dead-letter:warning", "queue:backlog"]


def test_failing_notifier_does_not_block_alert(storage, settings, clock):
    def broken(alert):
        raise RuntimeError("webhook down")

    manager = AlertManager(storage, settings, notifiers=[broken], clock=clock)

    alert = manager.raise_alert(AlertSeverity.WARNING, "queue", "backlog")

    assert alert is not None
    assert storage.get_latest_alert("queue:warning").id == alert.id
