# chunkflow/filters/builtin.py
import hashlib
import logging
from datetime import timedelta
from typing import Optional

from chunkflow.common.exceptions import ProcessingError, ProcessorLoadError
from chunkflow.common.states import FailedState
from chunkflow.common.task import QueueTask
from chunkflow.filters.base import UnitFilter
from chunkflow.server.context import AdmissionContext, ElectStateContext
from chunkflow.server.retry import classify_status_code, status_code_of
from chunkflow.storage.base import JobStorage

logger = logging.getLogger(__name__)


def _normalize(value: Optional[str]) -> str:
    return " ".join((value or "").split()).lower()


def compute_fingerprint(
    source_identity: Optional[str], content_identity: Optional[str]
) -> Optional[str]:
    """Fingerprint for one delivered event, e.g. (sender, attachment name).

    Returns ``None`` when there is no content identity to key on; such tasks
    are never treated as duplicates.
    """
    content = _normalize(content_identity)
    if not content:
        return None
    raw = f"{_normalize(source_identity)}\x1f{content}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class DeduplicationFilter(UnitFilter):
    """Rejects a task when a completed task with the same fingerprint was
    received within ``window_seconds`` either side of it."""

    def __init__(self, storage: JobStorage, window_seconds: float = 3600):
        self.storage = storage
        self.window = timedelta(seconds=window_seconds)

    def find_duplicate(self, task: QueueTask) -> Optional[QueueTask]:
        if not task.fingerprint:
            return None
        matches = self.storage.find_completed_tasks(
            task.fingerprint,
            task.received_at - self.window,
            task.received_at + self.window,
            exclude_id=task.id,
        )
        if not matches:
            return None
        return min(matches, key=lambda t: t.received_at)

    def is_duplicate(self, task: QueueTask) -> bool:
        return self.find_duplicate(task) is not None

    def on_admission(self, admission_context: AdmissionContext):
        original = self.find_duplicate(admission_context.task)
        if original is not None:
            logger.info(
                f"DeduplicationFilter: Task {admission_context.task.id} duplicates completed task {original.id}"
            )
            admission_context.reject(f"Duplicate of task {original.id}")


class ErrorClassificationFilter(UnitFilter):
    """Classifies failures from the HTTP status of the error, when it has one.

    Errors raised by HTTP clients (``httpx.HTTPStatusError``,
    ``requests.HTTPError``) carry a response whose status is a better signal
    than the message text. Explicitly typed processing errors are left alone.
    """

    def on_state_election(self, elect_state_context: ElectStateContext):
        candidate_state = elect_state_context.candidate_state
        if not isinstance(candidate_state, FailedState):
            return
        if isinstance(candidate_state.exception, (ProcessingError, ProcessorLoadError)):
            return
        status_code = status_code_of(candidate_state.exception)
        if status_code is None:
            return
        error_kind = classify_status_code(status_code)
        if error_kind is None:
            return
        candidate_state.error_kind = error_kind
        logger.debug(
            f"ErrorClassificationFilter: Unit {elect_state_context.unit.id} got HTTP {status_code}, classified as {error_kind}"
        )
