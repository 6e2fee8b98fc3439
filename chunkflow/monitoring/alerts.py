# chunkflow/monitoring/alerts.py
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from chunkflow.common.alert import Alert, AlertSeverity
from chunkflow.common.clock import Clock, utcnow
from chunkflow.config import Settings
from chunkflow.storage.base import JobStorage

logger = logging.getLogger(__name__)

Notifier = Callable[[Alert], None]


class LoggingNotifier:
    """Default notifier: writes each alert to the ``chunkflow.alerts`` logger."""

    def __init__(self, logger_name: str = "chunkflow.alerts"):
        self.logger = logging.getLogger(logger_name)

    def __call__(self, alert: Alert) -> None:
        level = logging.CRITICAL if alert.severity == AlertSeverity.CRITICAL else logging.WARNING
        self.logger.log(level, f"[{alert.component}] {alert.message} {alert.metadata}")


class AlertManager:
    """Persists alerts and hands them to notifiers.

    Evaluation is level-triggered: callers re-check thresholds on every sweep.
    An alert with the same dedupe key as one stored less than
    ``alert_debounce_seconds`` ago is suppressed.
    """

    def __init__(
        self,
        storage: JobStorage,
        settings: Optional[Settings] = None,
        notifiers: Optional[List[Notifier]] = None,
        clock: Optional[Clock] = None,
    ):
        self.storage = storage
        self.settings = settings or Settings()
        self.notifiers = notifiers if notifiers is not None else [LoggingNotifier()]
        self.clock = clock or utcnow

    def raise_alert(
        self,
        severity: str,
        component: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        dedupe_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Alert]:
        now = now or self.clock()
        alert = Alert(
            severity=severity,
            component=component,
            message=message,
            dedupe_key=dedupe_key or "",
            metadata=dict(metadata or {}),
            created_at=now,
        )
        latest = self.storage.get_latest_alert(alert.dedupe_key)
        debounce = timedelta(seconds=self.settings.alert_debounce_seconds)
        if latest is not None and now - latest.created_at < debounce:
            logger.debug(f"Alert '{alert.dedupe_key}' suppressed, last raised at {latest.created_at}")
            return None

        self.storage.add_alert(alert)
        for notify in self.notifiers:
            try:
                notify(alert)
            except Exception:
                logger.error(f"Notifier failed for alert {alert.id}", exc_info=True)
        return alert

    def evaluate(self, health: Dict[str, int], now: Optional[datetime] = None) -> List[Alert]:
        """Raise alerts for every threshold ``health`` breaches.

        ``health`` carries ``dead_lettered``, ``stalled`` and ``pending`` unit
        counts; the whole dict is attached to each alert as metadata.
        """
        settings = self.settings
        raised = []
        dead = health.get("dead_lettered", 0)
        stalled = health.get("stalled", 0)
        pending = health.get("pending", 0)

        if dead > settings.dead_letter_critical_threshold:
            raised.append(
                self.raise_alert(
                    AlertSeverity.CRITICAL,
                    "dead-letter",
                    f"{dead} dead-lettered units (threshold {settings.dead_letter_critical_threshold})",
                    health,
                    dedupe_key="dead-letter:critical",
                    now=now,
                )
            )
        elif dead > settings.dead_letter_warning_threshold:
            raised.append(
                self.raise_alert(
                    AlertSeverity.WARNING,
                    "dead-letter",
                    f"{dead} dead-lettered units (threshold {settings.dead_letter_warning_threshold})",
                    health,
                    dedupe_key="dead-letter:warning",
                    now=now,
                )
            )

        if stalled > settings.stalled_warning_threshold:
            raised.append(
                self.raise_alert(
                    AlertSeverity.WARNING,
                    "stall-detector",
                    f"{stalled} stalled units (threshold {settings.stalled_warning_threshold})",
                    health,
                    dedupe_key="stall-detector:stalled",
                    now=now,
                )
            )

        if pending > settings.pending_backlog_warning_threshold:
            raised.append(
                self.raise_alert(
                    AlertSeverity.WARNING,
                    "queue",
                    f"{pending} pending units (threshold {settings.pending_backlog_warning_threshold})",
                    health,
                    dedupe_key="queue:backlog",
                    now=now,
                )
            )

        return [alert for alert in raised if alert is not None]
