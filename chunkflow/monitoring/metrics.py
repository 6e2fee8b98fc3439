# chunkflow/monitoring/metrics.py
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from chunkflow.common.clock import Clock, utcnow
from chunkflow.common.exceptions import InvalidInput
from chunkflow.config import Settings
from chunkflow.storage.base import UNIT_CHUNK, UNIT_TASK, JobStorage

logger = logging.getLogger(__name__)

WINDOWS = {
    "15m": timedelta(minutes=15),
    "1h": timedelta(hours=1),
    "6h": timedelta(hours=6),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
}


@dataclass
class MetricsSnapshot:
    window: str
    units: List[str]
    window_seconds: float
    completed: int = 0
    failed: int = 0
    ignored: int = 0
    throughput_per_minute: float = 0.0
    average_duration_seconds: Optional[float] = None
    error_rate: float = 0.0
    pending: int = 0
    processing: int = 0
    retryable_failed: int = 0
    dead_lettered: int = 0
    generated_at: Optional[datetime] = None
    by_unit: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["generated_at"] = self.generated_at.isoformat() if self.generated_at else None
        return data


class MetricsCollector:
    """Sliding-window aggregates over chunk and task rows."""

    def __init__(
        self,
        storage: JobStorage,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.storage = storage
        self.settings = settings or Settings()
        self.clock = clock or utcnow

    def snapshot(self, window: str = "1h", unit: Optional[str] = None) -> MetricsSnapshot:
        if window not in WINDOWS:
            raise InvalidInput(f"Unknown window '{window}', expected one of {list(WINDOWS)}")
        if unit not in (None, UNIT_CHUNK, UNIT_TASK):
            raise InvalidInput(f"Unknown unit '{unit}'")

        now = self.clock()
        span = WINDOWS[window]
        since = now - span
        units = [unit] if unit else [UNIT_CHUNK, UNIT_TASK]
        snapshot = MetricsSnapshot(
            window=window,
            units=units,
            window_seconds=span.total_seconds(),
            generated_at=now,
        )

        timed = 0
        total_duration = 0.0
        for unit_type in units:
            stats = self.storage.get_window_stats(unit_type, since)
            snapshot.completed += stats["completed"]
            snapshot.failed += stats["failed"]
            snapshot.ignored += stats["ignored"]
            if stats["average_duration_seconds"] is not None:
                timed += stats["timed"]
                total_duration += stats["average_duration_seconds"] * stats["timed"]

            counts = self.storage.get_status_counts(unit_type, self.settings.max_retries)
            snapshot.by_unit[unit_type] = counts
            snapshot.pending += counts.get("pending", 0)
            snapshot.processing += counts.get("processing", 0)
            snapshot.retryable_failed += counts.get("failed", 0)
            snapshot.dead_lettered += counts.get("dead_lettered", 0)

        snapshot.throughput_per_minute = snapshot.completed / (span.total_seconds() / 60)
        if timed:
            snapshot.average_duration_seconds = total_duration / timed
        attempted = snapshot.completed + snapshot.failed
        snapshot.error_rate = snapshot.failed / attempted if attempted else 0.0
        return snapshot

    def all_windows(self, unit: Optional[str] = None) -> Dict[str, MetricsSnapshot]:
        return {window: self.snapshot(window, unit) for window in WINDOWS}
