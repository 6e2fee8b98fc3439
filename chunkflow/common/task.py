# chunkflow/common/task.py
import uuid
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Optional, Dict, Any, List

from .states import TaskStatus


def log_entry(entry_type: str, message: str, timestamp: datetime, **extra) -> Dict[str, Any]:
    entry = {"type": entry_type, "timestamp": timestamp.isoformat(), "message": message}
    entry.update(extra)
    return entry


@dataclass
class QueueTask:
    """
    A single-item unit of work (e.g. one inbound email attachment).

    ``processing_log`` is append-only; ``retry_count`` mirrors the number of
    ``retry`` entries in it, and is raised past the ceiling on dead-letter.
    """

    kind: str
    owner: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    source_identity: Optional[str] = None
    content_identity: Optional[str] = None
    fingerprint: Optional[str] = None
    priority: int = 0

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: str = TaskStatus.PENDING
    retry_count: int = 0
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    processing_log: List[Dict[str, Any]] = field(default_factory=list)

    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    available_at: Optional[datetime] = None
    version: int = 0

    def retry_entries(self) -> List[Dict[str, Any]]:
        return [entry for entry in self.processing_log if entry.get("type") == "retry"]
