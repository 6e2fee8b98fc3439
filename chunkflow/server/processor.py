# chunkflow/server/processor.py
import logging
from typing import Any, Dict, List, Optional

from chunkflow.common.clock import Clock, utcnow
from chunkflow.common.job import Chunk, Job
from chunkflow.common.states import CompletedState, FailedState, UnitState
from chunkflow.common.task import QueueTask, log_entry
from chunkflow.execution.performer import perform
from chunkflow.execution.registry import ProcessorRegistry
from chunkflow.filters.base import UnitFilter
from chunkflow.filters.builtin import ErrorClassificationFilter
from chunkflow.storage.base import JobStorage
from .context import AdmissionContext, ElectStateContext
from .retry import UNKNOWN, classify_exception

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"
# Another writer (usually a stall reset) moved the row first; nothing recorded.
LOST = "lost"


def _as_result(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    return {"value": value}


class UnitProcessor:
    """Runs one chunk or task through its processor and records the outcome.

    A processor failure is recorded on the unit and never propagates: one
    failing unit must not abort the batch it runs in.
    """

    def __init__(
        self,
        storage: JobStorage,
        processors: ProcessorRegistry,
        filters: Optional[List[UnitFilter]] = None,
        clock: Optional[Clock] = None,
    ):
        self.storage = storage
        self.processors = processors
        self.filters = filters if filters is not None else [ErrorClassificationFilter()]
        self.clock = clock or utcnow

    def _run(self, unit, label: str, func_getter, *args) -> UnitState:
        try:
            target_func = func_getter()
            result = perform(target_func, *args)
            candidate_state: UnitState = CompletedState(
                result=_as_result(result), reason=f"{label} processed successfully"
            )
        except Exception as e:
            logger.error(f"{label} {unit.id} failed.", exc_info=True)
            candidate_state = FailedState(e, error_kind=classify_exception(e))

        elect_state_context = ElectStateContext(unit=unit, candidate_state=candidate_state)
        for f in self.filters:
            f.on_state_election(elect_state_context)
        return elect_state_context.candidate_state

    def process_chunk(self, job: Job, chunk: Chunk) -> str:
        final_state = self._run(
            chunk,
            "Chunk",
            lambda: self.processors.get_chunk_processor(job.kind),
            job,
            chunk,
        )
        now = self.clock()
        if isinstance(final_state, CompletedState):
            recorded = self.storage.complete_chunk(chunk.id, final_state.result, now)
            outcome = SUCCEEDED
        else:
            recorded = self.storage.fail_chunk(
                chunk.id,
                final_state.exception_message,
                final_state.error_kind or UNKNOWN,
                now,
            )
            outcome = FAILED

        if not recorded:
            logger.warning(
                f"Chunk {chunk.id} is no longer processing; {outcome} outcome discarded"
            )
            return LOST
        return outcome

    def process_task(self, task: QueueTask) -> str:
        now = self.clock()
        admission_context = AdmissionContext(task, now)
        for f in self.filters:
            f.on_admission(admission_context)
        if admission_context.rejected:
            reason = admission_context.rejected_reason
            self.storage.ignore_task(task.id, reason, log_entry("ignored", reason, now), now)
            return SKIPPED

        final_state = self._run(
            task,
            "Task",
            lambda: self.processors.get_task_processor(task.kind),
            task,
        )
        now = self.clock()
        if isinstance(final_state, CompletedState):
            recorded = self.storage.complete_task(
                task.id,
                final_state.result,
                log_entry("completed", final_state.reason or "", now),
                now,
            )
            outcome = SUCCEEDED
        else:
            recorded = self.storage.fail_task(
                task.id,
                final_state.exception_message,
                final_state.error_kind or UNKNOWN,
                log_entry(
                    "error",
                    final_state.exception_message,
                    now,
                    error_kind=final_state.error_kind,
                ),
                now,
            )
            outcome = FAILED

        if not recorded:
            logger.warning(f"Task {task.id} is no longer processing; {outcome} outcome discarded")
            return LOST
        return outcome
