# chunkflow/dispatch/base.py
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from chunkflow.common.job import Continuation


class ContinuationQueue(ABC):
    """Holds at most one pending continuation per job.

    Pushing for a job that already has one replaces its cursor and keeps the
    earlier of the two ``not_before`` instants.
    """

    @abstractmethod
    def push(self, continuation: Continuation) -> None: ...

    @abstractmethod
    def pop_due(self, now: datetime, limit: int = 10) -> List[Continuation]:
        """Remove and return up to ``limit`` continuations due at ``now``."""

    @abstractmethod
    def peek(self, job_id: str) -> Optional[Continuation]: ...

    @abstractmethod
    def __len__(self) -> int: ...
