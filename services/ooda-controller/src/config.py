"""
ChronoHeal - OODA Controller Configuration
==========================================
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from functools import lru_cache
from enum import Enum

from shared.constants import ActionType, Defaults, Timing, DEFAULT_ALLOWED_ACTIONS


class HealingMode(str, Enum):
    """How much autonomy the approval gate grants before ACT."""
    AUTO = "auto"           # Dispatch any allow-listed action
    SEMI_AUTO = "semi_auto" # Dispatch only when every action is low risk
    MANUAL = "manual"       # Never dispatch; runs stop at the approval gate


class ExecutorMode(str, Enum):
    HTTP = "http"
    SIMULATED = "simulated"


class SinkMode(str, Enum):
    MEMORY = "memory"
    HTTP = "http"


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        extra="ignore",
    )

    service_name: str = Field(default="ooda-controller")
    service_version: str = Field(default="0.1.0")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8003)
    debug: bool = Field(default=False)

    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True)

    # Collaborators
    reasoning_backend_url: str = Field(
        default="http://reasoning-backend:8010",
        description="URL of the reasoning backend"
    )
    action_executor_url: str = Field(
        default="http://action-executor:8004",
        description="URL of the cluster action executor"
    )
    incident_store_url: str = Field(
        default="http://incident-store:8002",
        description="URL of the durable incident store"
    )
    executor_mode: ExecutorMode = Field(default=ExecutorMode.HTTP)
    sink_mode: SinkMode = Field(default=SinkMode.MEMORY)

    # Collaborator timeouts
    reasoning_timeout_seconds: float = Field(default=Timing.REASONING_TIMEOUT_SECONDS)
    pattern_store_timeout_seconds: float = Field(default=Timing.PATTERN_STORE_TIMEOUT_SECONDS)
    executor_timeout_seconds: float = Field(default=Timing.EXECUTOR_TIMEOUT_SECONDS)
    approval_timeout_seconds: float = Field(default=Timing.APPROVAL_TIMEOUT_SECONDS)
    sink_timeout_seconds: float = Field(default=Timing.SINK_TIMEOUT_SECONDS)

    # Evidence
    evidence_buffer_capacity: int = Field(
        default=Defaults.EVIDENCE_BUFFER_CAPACITY,
        ge=1,
        description="Units kept per subject"
    )
    observation_window: int = Field(
        default=Defaults.OBSERVATION_WINDOW,
        ge=1,
        description="Recent units handed to the reasoning backend per observation"
    )

    # OODA loop
    healing_mode: HealingMode = Field(default=HealingMode.AUTO)
    allowed_actions: list[ActionType] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_ACTIONS),
        description="Action types permitted for automatic dispatch"
    )
    max_actions_per_run: int = Field(default=Defaults.MAX_ACTIONS_PER_RUN, ge=1)
    max_verify_retries: int = Field(
        default=Defaults.MAX_VERIFY_RETRIES,
        ge=0,
        description="Times VERIFY may send a run back to ORIENT"
    )
    verification_delay_seconds: float = Field(
        default=Timing.VERIFICATION_DELAY_SECONDS,
        ge=0,
        description="Wait before re-observing in VERIFY"
    )

    # Knowledge base
    high_confidence_threshold: float = Field(
        default=Defaults.HIGH_CONFIDENCE_THRESHOLD,
        ge=0.0,
        le=1.0
    )
    pattern_min_score: float = Field(default=0.0, ge=0.0, le=1.0)
    pattern_max_results: int = Field(default=10, ge=1)

    # Detection scheduler
    detection_interval_seconds: float = Field(
        default=Timing.DETECTION_INTERVAL_SECONDS,
        gt=0
    )
    detection_autostart: bool = Field(default=False)
    monitored_subjects: list[str] = Field(default_factory=list)
    max_concurrent_runs: int = Field(
        default=3,
        ge=1,
        description="Runs allowed in flight across all subjects"
    )
    cooldown_seconds: float = Field(
        default=0,
        ge=0,
        description="Quiet period after a run finishes before the subject is scheduled again"
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
