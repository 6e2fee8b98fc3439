# chunkflow/dispatch/memory_queue.py
import copy
import heapq
import itertools
from datetime import datetime
from threading import Lock
from typing import Dict, List, Optional, Tuple

from chunkflow.common.job import Continuation
from .base import ContinuationQueue


class MemoryContinuationQueue(ContinuationQueue):
    def __init__(self):
        self._heap: List[Tuple[datetime, int, str]] = []
        self._entries: Dict[str, Tuple[int, Continuation]] = {}
        self._counter = itertools.count()
        self._lock = Lock()

    def push(self, continuation: Continuation) -> None:
        with self._lock:
            existing = self._entries.get(continuation.job_id)
            continuation = copy.copy(continuation)
            if existing is not None and existing[1].not_before < continuation.not_before:
                continuation.not_before = existing[1].not_before
            seq = next(self._counter)
            self._entries[continuation.job_id] = (seq, continuation)
            heapq.heappush(self._heap, (continuation.not_before, seq, continuation.job_id))

    def pop_due(self, now: datetime, limit: int = 10) -> List[Continuation]:
        due = []
        with self._lock:
            while self._heap and len(due) < limit and self._heap[0][0] <= now:
                _, seq, job_id = heapq.heappop(self._heap)
                entry = self._entries.get(job_id)
                # Superseded heap items are skipped.
                if entry is None or entry[0] != seq:
                    continue
                del self._entries[job_id]
                due.append(entry[1])
        return due

    def peek(self, job_id: str) -> Optional[Continuation]:
        with self._lock:
            entry = self._entries.get(job_id)
            return copy.copy(entry[1]) if entry else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
