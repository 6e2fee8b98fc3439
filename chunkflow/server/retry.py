# chunkflow/server/retry.py
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, List, Set, TYPE_CHECKING

from chunkflow.common.clock import Clock, utcnow
from chunkflow.common.exceptions import ProcessingError, ProcessorLoadError
from chunkflow.common.task import log_entry
from chunkflow.config import Settings
from chunkflow.storage.base import JobStorage

if TYPE_CHECKING:
    from chunkflow.registry import JobRegistry

logger = logging.getLogger(__name__)

TRANSIENT = "transient"
VALIDATION = "validation"
PERMANENT = "permanent"
UNKNOWN = "unknown"
ERROR_KINDS = (TRANSIENT, VALIDATION, PERMANENT, UNKNOWN)

RETRY = "retry"
DEAD_LETTER = "dead_letter"

# Substring heuristics for errors coming out of opaque external systems.
TRANSIENT_PATTERNS = (
    "timeout",
    "timed out",
    "network",
    "connection",
    "connexion",
    "econnreset",
    "econnrefused",
    "temporarily unavailable",
    "rate limit",
)
VALIDATION_PATTERNS = ("mapping", "column", "schema", "validation", "malformed")
PERMANENT_PATTERNS = ("authentication", "unauthorized", "forbidden", "invalid api key")


def classify_error_message(message: Optional[str]) -> str:
    text = (message or "").lower()
    if any(pattern in text for pattern in TRANSIENT_PATTERNS):
        return TRANSIENT
    if any(pattern in text for pattern in VALIDATION_PATTERNS):
        return VALIDATION
    if any(pattern in text for pattern in PERMANENT_PATTERNS):
        return PERMANENT
    return UNKNOWN


def status_code_of(exc: BaseException) -> Optional[int]:
    """HTTP status carried by an exception or by its ``response``, if any."""
    for source in (exc, getattr(exc, "response", None)):
        code = getattr(source, "status_code", None)
        if isinstance(code, int):
            return code
    return None


def classify_status_code(status_code: int) -> Optional[str]:
    if status_code in (408, 425, 429) or status_code >= 500:
        return TRANSIENT
    if status_code in (400, 422):
        return VALIDATION
    if status_code in (401, 403, 404, 410):
        return PERMANENT
    return None


def classify_exception(exc: BaseException) -> str:
    """Error kind for an exception raised by a processor."""
    if isinstance(exc, ProcessingError):
        return exc.kind
    if isinstance(exc, ProcessorLoadError):
        return PERMANENT
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return TRANSIENT
    return classify_error_message(str(exc))


@dataclass
class RetryDecision:
    action: str
    kind: str
    reason: str


def classify_failure(
    error_kind: Optional[str], message: Optional[str], retry_count: int, max_retries: int
) -> RetryDecision:
    """Decide whether a failed unit goes back to pending or to the dead-letter set.

    ``retry_count`` is the number of retries already granted. Transient errors
    are retried until the ceiling; validation and unrecognized errors get one
    free retry; permanent errors are never retried.
    """
    kind = error_kind if error_kind in (TRANSIENT, VALIDATION, PERMANENT) else None
    if kind is None:
        kind = classify_error_message(message)

    if retry_count >= max_retries:
        return RetryDecision(DEAD_LETTER, kind, f"Retry ceiling of {max_retries} reached")
    if kind == TRANSIENT:
        return RetryDecision(RETRY, kind, f"Transient error: {message}")
    if kind == PERMANENT:
        return RetryDecision(DEAD_LETTER, kind, f"Permanent error: {message}")
    if retry_count == 0:
        return RetryDecision(RETRY, kind, f"First {kind} error, retrying once: {message}")
    return RetryDecision(DEAD_LETTER, kind, f"Repeated {kind} error: {message}")


def backoff_delay(
    attempt: int,
    index: int = 0,
    initial_delay: float = 5.0,
    multiplier: float = 2.0,
    stagger: float = 2.0,
) -> float:
    """Seconds to wait before retry ``attempt`` (1-based) of the ``index``-th
    unit requeued in the same sweep."""
    return initial_delay * multiplier ** (max(attempt, 1) - 1) + stagger * index


@dataclass
class RetrySweepResult:
    requeued: List[str] = field(default_factory=list)
    dead_lettered: List[str] = field(default_factory=list)
    job_ids: Set[str] = field(default_factory=set)


class RetryController:
    """Re-admits failed chunks and tasks to pending, or dead-letters them.

    Backoff is persisted as ``available_at`` on the requeued row instead of
    sleeping, so a sweep never blocks.
    """

    def __init__(
        self,
        storage: JobStorage,
        settings: Optional[Settings] = None,
        registry: Optional["JobRegistry"] = None,
        clock: Optional[Clock] = None,
    ):
        self.storage = storage
        self.settings = settings or Settings()
        self.registry = registry
        self.clock = clock or utcnow

    def delay_for(self, attempt: int, index: int) -> float:
        return backoff_delay(
            attempt,
            index,
            initial_delay=self.settings.retry_initial_delay,
            multiplier=self.settings.retry_multiplier,
            stagger=self.settings.retry_stagger,
        )

    def sweep(
        self,
        now: Optional[datetime] = None,
        job_id: Optional[str] = None,
        include_tasks: Optional[bool] = None,
    ) -> RetrySweepResult:
        """Classify every retryable failure once.

        With ``job_id`` only that job's chunks are swept; tasks are swept when
        no job is given unless ``include_tasks`` says otherwise.
        """
        now = now or self.clock()
        result = RetrySweepResult()
        max_retries = self.settings.max_retries
        index = 0

        for chunk in self.storage.get_failed_chunks(
            max_retries, self.settings.retry_sweep_limit, job_id=job_id
        ):
            decision = classify_failure(
                chunk.error_kind, chunk.last_error, chunk.retry_count, max_retries
            )
            if decision.action == RETRY:
                attempt = chunk.retry_count + 1
                delay = self.delay_for(attempt, index)
                entry = {
                    "attempt": attempt,
                    "reason": decision.reason,
                    "timestamp": now.isoformat(),
                }
                if self.storage.requeue_chunk(
                    chunk.id, chunk.version, now + timedelta(seconds=delay), entry, now
                ):
                    index += 1
                    result.requeued.append(chunk.id)
                    result.job_ids.add(chunk.job_id)
                    logger.info(
                        f"Chunk {chunk.id} (job {chunk.job_id}) requeued, attempt {attempt} in {delay:.0f}s"
                    )
            elif self.storage.dead_letter_chunk(chunk.id, chunk.version, max_retries + 1, now):
                result.dead_lettered.append(chunk.id)
                result.job_ids.add(chunk.job_id)
                logger.warning(
                    f"Chunk {chunk.id} (job {chunk.job_id}) dead-lettered: {decision.reason}"
                )

        if include_tasks is None:
            include_tasks = job_id is None
        if include_tasks:
            index = self._sweep_tasks(now, result, index)

        if self.registry is not None:
            for affected_job_id in sorted(result.job_ids):
                self.registry.advance_job(affected_job_id)
        return result

    def _sweep_tasks(self, now: datetime, result: RetrySweepResult, index: int) -> int:
        max_retries = self.settings.max_retries
        for task in self.storage.get_failed_tasks(max_retries, self.settings.retry_sweep_limit):
            # Retry history for tasks lives in the processing log.
            retries = len(task.retry_entries())
            decision = classify_failure(task.error_kind, task.error_message, retries, max_retries)
            if decision.action == RETRY:
                attempt = retries + 1
                delay = self.delay_for(attempt, index)
                available_at = now + timedelta(seconds=delay)
                entry = log_entry(
                    "retry",
                    decision.reason,
                    now,
                    attempt=attempt,
                    available_at=available_at.isoformat(),
                )
                if self.storage.requeue_task(task.id, task.version, available_at, entry, now):
                    index += 1
                    result.requeued.append(task.id)
                    logger.info(f"Task {task.id} requeued, attempt {attempt} in {delay:.0f}s")
            else:
                entry = log_entry("dead_letter", decision.reason, now, error_kind=decision.kind)
                if self.storage.dead_letter_task(
                    task.id, task.version, max_retries + 1, entry, now
                ):
                    result.dead_lettered.append(task.id)
                    logger.warning(f"Task {task.id} dead-lettered: {decision.reason}")
        return index
