# chunkflow/execution/registry.py
import logging
from threading import RLock
from typing import Callable, Dict, List, Optional, Union

from chunkflow.common.exceptions import ProcessorLoadError
from chunkflow.execution.performer import load_callable

logger = logging.getLogger(__name__)

ProcessorRef = Union[Callable, str]


class ProcessorRegistry:
    """Maps job kinds and task kinds to processor functions.

    Chunk processors are called as ``fn(job, chunk)`` and task processors as
    ``fn(task)``. A processor may be registered by dotted path, in which case
    it is imported on first use.
    """

    def __init__(self):
        self._chunk_processors: Dict[str, ProcessorRef] = {}
        self._task_processors: Dict[str, ProcessorRef] = {}
        self._lock = RLock()

    def register_chunk_processor(self, kind: str, func: Optional[ProcessorRef] = None):
        if func is None:
            def decorator(f: Callable) -> Callable:
                self.register_chunk_processor(kind, f)
                return f

            return decorator
        with self._lock:
            self._chunk_processors[kind] = func
        logger.debug(f"Registered chunk processor for '{kind}'")
        return func

    def register_task_processor(self, kind: str, func: Optional[ProcessorRef] = None):
        if func is None:
            def decorator(f: Callable) -> Callable:
                self.register_task_processor(kind, f)
                return f

            return decorator
        with self._lock:
            self._task_processors[kind] = func
        logger.debug(f"Registered task processor for '{kind}'")
        return func

    def _resolve(self, processors: Dict[str, ProcessorRef], kind: str, label: str) -> Callable:
        with self._lock:
            ref = processors.get(kind)
            if ref is None:
                raise ProcessorLoadError(f"No {label} processor registered for kind '{kind}'")
            if isinstance(ref, str):
                ref = load_callable(ref)
                processors[kind] = ref
            return ref

    def get_chunk_processor(self, kind: str) -> Callable:
        return self._resolve(self._chunk_processors, kind, "chunk")

    def get_task_processor(self, kind: str) -> Callable:
        return self._resolve(self._task_processors, kind, "task")

    def task_kinds(self) -> List[str]:
        with self._lock:
            return sorted(self._task_processors)

    def chunk_kinds(self) -> List[str]:
        with self._lock:
            return sorted(self._chunk_processors)
