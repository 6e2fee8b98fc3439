from .base import JobStorage, UNIT_CHUNK, UNIT_TASK
from .memory_storage import MemoryStorage
from .sql_storage import SqlStorage

__all__ = ["JobStorage", "MemoryStorage", "SqlStorage", "UNIT_CHUNK", "UNIT_TASK"]
