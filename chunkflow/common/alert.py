# chunkflow/common/alert.py
import uuid
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Dict, Any


class AlertSeverity:
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class Alert:
    """An operator alert. Created once, never mutated."""

    severity: str
    component: str
    message: str
    dedupe_key: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self):
        if not self.dedupe_key:
            self.dedupe_key = f"{self.component}:{self.severity}"
