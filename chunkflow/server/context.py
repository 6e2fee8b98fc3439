# chunkflow/server/context.py
from datetime import datetime
from typing import Optional, Union

from chunkflow.common.job import Chunk
from chunkflow.common.states import UnitState
from chunkflow.common.task import QueueTask


class AdmissionContext:
    def __init__(self, task: QueueTask, now: datetime):
        self.task = task
        self.now = now
        self.rejected_reason: Optional[str] = None

    @property
    def rejected(self) -> bool:
        return self.rejected_reason is not None

    def reject(self, reason: str) -> None:
        self.rejected_reason = reason


class ElectStateContext:
    def __init__(self, unit: Union[Chunk, QueueTask], candidate_state: UnitState):
        self.unit = unit
        self.candidate_state = candidate_state
