# chunkflow/server/scheduler.py
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from cronsim import CronSim, CronSimError

from chunkflow.common.clock import Clock, utcnow
from chunkflow.common.exceptions import InvalidInput

if TYPE_CHECKING:
    from .engine import ContinuationEngine
    from .stall import StallDetector

logger = logging.getLogger(__name__)


@dataclass
class ScheduledSweep:
    name: str
    cron: str
    func: Callable[[], Any]
    next_run: datetime
    last_run: Optional[datetime] = None


class Scheduler:
    """Periodic sweeps keyed by cron expression, run from a worker loop."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or utcnow
        self._sweeps: Dict[str, ScheduledSweep] = {}

    def add(self, name: str, cron_expression: str, func: Callable[[], Any]) -> ScheduledSweep:
        now = self.clock()
        try:
            next_run = next(CronSim(cron_expression, now))
        except CronSimError as e:
            raise InvalidInput(f"Invalid cron expression for '{name}': {cron_expression}") from e
        sweep = ScheduledSweep(name=name, cron=cron_expression, func=func, next_run=next_run)
        self._sweeps[name] = sweep
        logger.debug(f"Scheduled '{name}' ({cron_expression}), next run at {next_run}")
        return sweep

    def remove(self, name: str) -> None:
        self._sweeps.pop(name, None)

    def sweeps(self) -> List[ScheduledSweep]:
        return list(self._sweeps.values())

    def run_due(self, now: Optional[datetime] = None) -> List[str]:
        """Run every sweep whose next run is at or before ``now``; returns their names."""
        now = now or self.clock()
        ran = []
        for sweep in list(self._sweeps.values()):
            if sweep.next_run > now:
                continue
            try:
                sweep.func()
            except Exception:
                logger.error(f"Scheduled sweep '{sweep.name}' failed", exc_info=True)
            sweep.last_run = now
            sweep.next_run = next(CronSim(sweep.cron, now))
            ran.append(sweep.name)
        return ran


def build_default_scheduler(
    engine: "ContinuationEngine", stall_detector: "StallDetector"
) -> Scheduler:
    settings = engine.settings
    scheduler = Scheduler(clock=engine.clock)
    scheduler.add("tick", settings.tick_cron, engine.tick)
    scheduler.add("stall-sweep", settings.stall_sweep_cron, stall_detector.sweep)
    return scheduler
