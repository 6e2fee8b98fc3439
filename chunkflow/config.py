# chunkflow/config.py
from typing import Optional, Dict, TYPE_CHECKING

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from chunkflow.storage.base import JobStorage


class Settings(BaseSettings):
    """Policy constants for the job engine. Durations are in seconds.

    Every field can be set from a ``CHUNKFLOW_<FIELD>`` environment variable.
    Per-kind stall thresholds use the nested form
    ``CHUNKFLOW_STALL_THRESHOLDS_BY_KIND__EMAIL_BATCH=900`` or a JSON object
    in ``CHUNKFLOW_STALL_THRESHOLDS_BY_KIND``.
    """

    model_config = SettingsConfigDict(
        env_prefix="CHUNKFLOW_", env_nested_delimiter="__", extra="ignore"
    )

    # Back end used by the entry-point scripts
    storage: str = "memory"
    database_url: Optional[str] = None

    # Retry/backoff
    max_retries: int = 3
    retry_initial_delay: float = 5.0
    retry_multiplier: float = 2.0
    retry_stagger: float = 2.0
    retry_sweep_limit: int = 100

    # Stall detection
    chunk_stall_threshold: float = 60 * 60
    task_stall_threshold: float = 10 * 60
    stall_thresholds_by_kind: Dict[str, float] = Field(default_factory=dict)
    stall_sweep_limit: int = 500

    # Alerting
    dead_letter_warning_threshold: int = 10
    dead_letter_critical_threshold: int = 20
    stalled_warning_threshold: int = 5
    pending_backlog_warning_threshold: int = 200
    alert_debounce_seconds: float = 15 * 60

    # Dedup
    dedup_window_seconds: float = 60 * 60

    # Dispatch
    concurrency: int = 3
    inter_batch_pause: float = 3.0
    slice_batch_size: int = 30
    task_batch_limit: int = 50
    invocation_budget_seconds: float = 120.0
    continuation_idle_delay: float = 30.0

    # Scheduling
    tick_cron: str = "*/15 * * * *"
    stall_sweep_cron: str = "*/5 * * * *"

    def stall_threshold_for(self, job_kind: Optional[str]) -> float:
        if job_kind:
            # Keys set through the environment use underscores for hyphens.
            for key in (job_kind, job_kind.replace("-", "_")):
                if key in self.stall_thresholds_by_kind:
                    return self.stall_thresholds_by_kind[key]
        return self.chunk_stall_threshold


class _GlobalConfig:
    def __init__(self):
        self.storage: Optional["JobStorage"] = None
        self.settings: Settings = Settings()


_GLOBAL_CONFIG = _GlobalConfig()


def configure(storage: Optional["JobStorage"], settings: Optional[Settings] = None) -> None:
    _GLOBAL_CONFIG.storage = storage
    _GLOBAL_CONFIG.settings = settings or Settings()


def get_storage() -> "JobStorage":
    if not _GLOBAL_CONFIG.storage:
        raise RuntimeError("chunkflow has not been configured. Call chunkflow.configure() first.")
    return _GLOBAL_CONFIG.storage


def get_settings() -> Settings:
    return _GLOBAL_CONFIG.settings
