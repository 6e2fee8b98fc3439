from .base import ContinuationQueue
from .memory_queue import MemoryContinuationQueue

__all__ = ["ContinuationQueue", "MemoryContinuationQueue"]
