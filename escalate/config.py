# escalate/config.py
import os
import logging
from typing import List, Optional
from pydantic import BaseModel, Field, model_validator

from escalate.errors import ConfigurationError


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


class QueueSettings(BaseModel):
    concurrency: int = Field(1, ge=1)
    max_attempts: int = Field(1, ge=1)
    base_delay_ms: int = Field(5000, ge=0)


class Settings(BaseModel):
    log_level: str = "INFO"

    redis_url: str = "redis://localhost:6379/0"
    pg_dsn: Optional[str] = None

    # analysis
    analysis_window_minutes: int = 60
    max_similar_incidents: int = 5
    analysis_cache_ttl_seconds: int = 24 * 60 * 60
    metrics_cache_ttl_seconds: int = 300
    max_retries: int = 3
    retry_delay_ms: int = 5000
    enable_pattern_detection: bool = True
    min_pattern_occurrences: int = 3
    pattern_lookback_days: int = 7
    pattern_delay_ms: int = 0
    lock_ttl_seconds: int = 240
    lock_margin_seconds: float = 15.0
    collaborator_timeout_seconds: float = 30.0
    summarization_timeout_seconds: float = 120.0
    ai_model: str = "llama3"

    # queues
    queue_concurrency: int = 2
    stalled_interval_ms: int = 300_000
    stalled_check_interval_ms: int = 5_000
    shutdown_grace_seconds: float = 30.0
    broker_visibility_timeout_seconds: int = 3600
    completed_retention_seconds: int = 24 * 60 * 60
    failed_retention_seconds: int = 7 * 24 * 60 * 60

    # integrations
    ollama_base_url: Optional[str] = None
    snow_url: Optional[str] = None
    snow_user: Optional[str] = None
    snow_pass: Optional[str] = None
    awx_url: Optional[str] = None
    awx_token: Optional[str] = None
    slack_webhook_url: Optional[str] = None
    incident_poll_interval_seconds: int = 30
    incident_batch_size: int = 5

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            pg_dsn=build_pg_dsn(),
            analysis_window_minutes=_int("ANALYSIS_WINDOW", 60),
            max_similar_incidents=_int("MAX_SIMILAR_INCIDENTS", 5),
            analysis_cache_ttl_seconds=_int("ANALYSIS_CACHE_TTL", 86400),
            max_retries=_int("MAX_RETRIES", 3),
            retry_delay_ms=_int("RETRY_DELAY", 5000),
            enable_pattern_detection=_flag("PATTERN_DETECTION", True),
            min_pattern_occurrences=_int("MIN_PATTERN_OCCURRENCES", 3),
            pattern_delay_ms=_int("PATTERN_DELAY", 0),
            lock_ttl_seconds=_int("LOCK_TTL", 240),
            collaborator_timeout_seconds=float(_int("COLLABORATOR_TIMEOUT", 30)),
            summarization_timeout_seconds=float(_int("SUMMARIZATION_TIMEOUT", 120)),
            ai_model=os.getenv("LLM_MODEL", "llama3"),
            queue_concurrency=_int("QUEUE_CONCURRENCY", 2),
            stalled_interval_ms=_int("QUEUE_STALLED_INTERVAL", 300_000),
            shutdown_grace_seconds=float(_int("SHUTDOWN_GRACE_SECONDS", 30)),
            broker_visibility_timeout_seconds=_int("BROKER_VISIBILITY_TIMEOUT", 3600),
            ollama_base_url=os.getenv("OLLAMA_BASE_URL"),
            snow_url=os.getenv("SNOW_URL"),
            snow_user=os.getenv("SNOW_USER"),
            snow_pass=os.getenv("SNOW_PASS"),
            awx_url=os.getenv("AWX_URL"),
            awx_token=os.getenv("AWX_TOKEN"),
            slack_webhook_url=os.getenv("SLACK_WEBHOOK_URL"),
            incident_poll_interval_seconds=_int("INCIDENT_POLL_INTERVAL_SECONDS", 30),
            incident_batch_size=_int("INCIDENT_BATCH_SIZE", 5),
        )

    @model_validator(mode="after")
    def _lock_outlives_pipeline(self) -> "Settings":
        needed = self.lock_hold_seconds() + self.lock_margin_seconds
        if self.lock_ttl_seconds < needed:
            raise ConfigurationError(
                f"LOCK_TTL={self.lock_ttl_seconds}s is shorter than the {needed:.0f}s an analysis may hold it "
                f"(3 x collaborator timeout + summarization timeout + {self.lock_margin_seconds:.0f}s margin)"
            )
        return self

    def lock_hold_seconds(self) -> float:
        # source fetch, metric fan-out and similar lookup run one after another, then the summarizer
        return 3 * self.collaborator_timeout_seconds + self.summarization_timeout_seconds

    def lock_deadline_seconds(self) -> float:
        """How long the locked part of an analysis may run before it is abandoned."""
        return self.lock_ttl_seconds - self.lock_margin_seconds

    def queue_settings(self) -> dict:
        """Per-queue concurrency and retry policy, keyed by queue name."""
        return {
            "analysis": QueueSettings(
                concurrency=self.queue_concurrency,
                max_attempts=self.max_retries,
                base_delay_ms=self.retry_delay_ms,
            ),
            "notifications": QueueSettings(concurrency=1, max_attempts=1),
            "patterns": QueueSettings(concurrency=1, max_attempts=1),
        }

    def integrations_enabled(self) -> List[str]:
        enabled = []
        if self.snow_url and self.snow_user and self.snow_pass:
            enabled.append("servicenow")
        if self.awx_url and self.awx_token:
            enabled.append("awx")
        if self.slack_webhook_url:
            enabled.append("slack")
        if self.ollama_base_url:
            enabled.append("ollama")
        return enabled


def build_pg_dsn() -> Optional[str]:
    if not os.getenv("POSTGRES_HOST"):
        return None
    return (
        f"postgresql://{os.getenv('POSTGRES_USER')}:{os.getenv('POSTGRES_PASSWORD')}"
        f"@{os.getenv('POSTGRES_HOST')}:{os.getenv('POSTGRES_PORT', '5432')}/{os.getenv('POSTGRES_DB')}"
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
