# chunkflow/server/stall.py
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

from chunkflow.common.alert import Alert
from chunkflow.common.clock import Clock, utcnow
from chunkflow.common.task import log_entry
from chunkflow.config import Settings
from chunkflow.monitoring.alerts import AlertManager
from chunkflow.storage.base import UNIT_CHUNK, UNIT_TASK, JobStorage

logger = logging.getLogger(__name__)


@dataclass
class StallReport:
    reset_chunks: List[str] = field(default_factory=list)
    reset_tasks: List[str] = field(default_factory=list)
    stalled_count: int = 0
    dead_lettered_count: int = 0
    pending_count: int = 0
    alerts: List[Alert] = field(default_factory=list)

    def as_dict(self):
        return {
            "reset_chunks": list(self.reset_chunks),
            "reset_tasks": list(self.reset_tasks),
            "stalled_count": self.stalled_count,
            "dead_lettered_count": self.dead_lettered_count,
            "pending_count": self.pending_count,
            "alerts": [alert.message for alert in self.alerts],
        }


class StallDetector:
    """Periodic sweep that returns abandoned in-flight units to pending.

    A reset matches the version read by the sweep, so a unit that completed
    or was reclaimed in the meantime is left untouched.
    """

    def __init__(
        self,
        storage: JobStorage,
        settings: Optional[Settings] = None,
        alerts: Optional[AlertManager] = None,
        clock: Optional[Clock] = None,
    ):
        self.storage = storage
        self.settings = settings or Settings()
        self.alerts = alerts or AlertManager(storage, self.settings, clock=clock)
        self.clock = clock or utcnow

    def _chunk_threshold_groups(self) -> List[Tuple[float, Optional[Set[str]], Optional[Set[str]]]]:
        """One (threshold, kinds, excluded kinds) query per distinct threshold,
        so a full page of one kind never hides stalled chunks of another."""
        by_threshold: Dict[float, Set[str]] = {}
        overridden: Set[str] = set()
        for kind, seconds in self.settings.stall_thresholds_by_kind.items():
            names = {kind, kind.replace("_", "-")}
            by_threshold.setdefault(seconds, set()).update(names)
            overridden.update(names)
        groups = [(seconds, kinds, None) for seconds, kinds in by_threshold.items()]
        groups.append((self.settings.chunk_stall_threshold, None, overridden or None))
        return groups

    def sweep(self, now: Optional[datetime] = None) -> StallReport:
        now = now or self.clock()
        report = StallReport()
        settings = self.settings

        for threshold, kinds, excluded in self._chunk_threshold_groups():
            for chunk in self.storage.get_processing_chunks(
                now - timedelta(seconds=threshold),
                settings.stall_sweep_limit,
                kinds=kinds,
                exclude_kinds=excluded,
            ):
                report.stalled_count += 1
                if self.storage.reset_stalled_chunk(chunk.id, chunk.version, now):
                    report.reset_chunks.append(chunk.id)
                    logger.warning(
                        f"Chunk {chunk.id} (job {chunk.job_id}) stalled since {chunk.started_at}, reset to pending"
                    )

        for task in self.storage.get_processing_tasks(
            now - timedelta(seconds=settings.task_stall_threshold), settings.stall_sweep_limit
        ):
            report.stalled_count += 1
            entry = log_entry("stall_reset", f"Processing since {task.started_at.isoformat()}", now)
            if self.storage.reset_stalled_task(task.id, task.version, entry, now):
                report.reset_tasks.append(task.id)
                logger.warning(f"Task {task.id} stalled since {task.started_at}, reset to pending")

        for unit in (UNIT_CHUNK, UNIT_TASK):
            counts = self.storage.get_status_counts(unit, settings.max_retries)
            report.dead_lettered_count += counts.get("dead_lettered", 0)
            report.pending_count += counts.get("pending", 0)

        health = {
            "dead_lettered": report.dead_lettered_count,
            "stalled": report.stalled_count,
            "pending": report.pending_count,
            "reset": len(report.reset_chunks) + len(report.reset_tasks),
        }
        report.alerts = self.alerts.evaluate(health, now=now)
        if report.stalled_count:
            logger.info(
                f"Stall sweep: {report.stalled_count} stalled, "
                f"{len(report.reset_chunks)} chunks and {len(report.reset_tasks)} tasks reset"
            )
        return report
