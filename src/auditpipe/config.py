"""
Configuration management for the audit pipeline.

Uses Pydantic Settings for environment variable handling and validation.
A config.yaml file may supply defaults; environment variables override it.
"""

import json
import os
import yaml
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


def load_config_file(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML file."""
    if config_path is None:
        possible_paths = [
            os.environ.get("AUDITPIPE_CONFIG_FILE", ""),
            "config.yaml",
            "../../config.yaml",
        ]

        for path in possible_paths:
            if path and os.path.exists(path):
                config_path = path
                break
        else:
            return {}

    if os.path.exists(config_path):
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}
            return config_data
    return {}


class LaneSettings(BaseModel):
    """Policy for one queue lane."""

    priority: int = Field(default=5, description="Dequeue weight; higher lanes are claimed first")
    concurrency: int = Field(default=5, ge=1, description="Concurrent jobs in this lane")
    attempts: int = Field(default=3, ge=1, description="Attempts before a job is dead-lettered")
    backoff_type: str = Field(default="exponential", description="exponential or fixed")
    backoff_delay_ms: int = Field(default=2000, ge=0, description="Base backoff delay")
    retention_on_complete: int = Field(default=100, ge=0, description="Completed job summaries kept")
    retention_on_fail: int = Field(default=500, ge=0, description="Failed job summaries kept")

    @field_validator("backoff_type")
    def validate_backoff_type(cls, v: str) -> str:
        if v not in ("exponential", "fixed"):
            raise ValueError(f"Unsupported backoff type '{v}'")
        return v


def default_lanes() -> Dict[str, LaneSettings]:
    return {
        "critical": LaneSettings(
            priority=10, concurrency=10, attempts=5, backoff_delay_ms=1000,
            retention_on_complete=200, retention_on_fail=1000,
        ),
        "sensitive": LaneSettings(
            priority=8, concurrency=3, attempts=3, backoff_delay_ms=5000,
            retention_on_complete=100, retention_on_fail=1000,
        ),
        "default": LaneSettings(
            priority=5, concurrency=5, attempts=3, backoff_delay_ms=2000,
        ),
        "batch": LaneSettings(
            priority=1, concurrency=2, attempts=2, backoff_delay_ms=10000,
            retention_on_complete=50, retention_on_fail=200,
        ),
    }


REQUIRED_LANES = ("default", "critical", "sensitive", "batch")


class QueueSettings(BaseSettings):
    """Durable queue configuration."""

    journal_path: Path = Field(default=Path("./data/queue"), description="Directory holding the queue journal")
    lanes: Dict[str, LaneSettings] = Field(default_factory=default_lanes)
    backoff_jitter_ratio: float = Field(default=0.1, ge=0, le=0.5, description="Max jitter as share of the delay")
    poll_interval_seconds: float = Field(default=0.5, description="Idle wait between claim attempts")
    compact_on_open: bool = Field(default=True, description="Rewrite the journal with live jobs on startup")
    compact_threshold: int = Field(
        default=1000, ge=0, description="Superseded journal records tolerated before compaction; 0 disables"
    )

    @field_validator("lanes", mode="before")
    def parse_lanes(cls, v: Any) -> Any:
        """Accept a JSON string and merge partial lane overrides onto defaults."""
        if isinstance(v, str):
            v = json.loads(v)
        if isinstance(v, dict):
            merged: Dict[str, Any] = {name: lane.model_dump() for name, lane in default_lanes().items()}
            for name, lane in v.items():
                if isinstance(lane, LaneSettings):
                    lane = lane.model_dump()
                merged[name] = {**merged.get(name, {}), **lane}
            return merged
        return v

    @field_validator("lanes")
    def validate_lanes(cls, v: Dict[str, LaneSettings]) -> Dict[str, LaneSettings]:
        missing = [name for name in REQUIRED_LANES if name not in v]
        if missing:
            raise ValueError(f"Missing queue lanes: {missing}")
        return v

    class Config:
        env_prefix = "AUDITPIPE_QUEUE_"


class DedupSettings(BaseSettings):
    """Request deduplication cache."""

    enabled: bool = Field(default=True)
    ttl_seconds: float = Field(default=5.0, description="Window in which identical requests are duplicates")
    max_entries: int = Field(default=10000, description="Upper bound before oldest entries are evicted")

    class Config:
        env_prefix = "AUDITPIPE_DEDUP_"


class CaptureSettings(BaseSettings):
    """Boundary capture configuration."""

    mask_value: str = Field(default="***MASKED***")
    baseline_keys: List[str] = Field(
        default=["password", "senha", "token", "authorization", "api_key", "secret"],
        description="Keys masked in captured bodies on every route",
    )
    sync_budget_ms: float = Field(default=5.0, description="Budget for synchronous listeners")
    sign_critical_events: bool = Field(default=True, description="Request signing for CRITICAL events")

    class Config:
        env_prefix = "AUDITPIPE_CAPTURE_"


class WorkerSettings(BaseSettings):
    """Worker processing configuration."""

    compress_by_default: bool = Field(default=True, description="Compress large fields when a job does not say")
    compression_threshold_bytes: int = Field(default=1024, description="Fields larger than this are compressed")
    signing_private_key: str = Field(default="", description="Base64 encoded PEM Ed25519 private key")
    signing_key_id: str = Field(default="audit-local", description="Identifier stored with signatures")
    retention_default_days: int = Field(default=90)
    retention_security_days: int = Field(default=1825)
    retention_legal_days: int = Field(default=2555)

    class Config:
        env_prefix = "AUDITPIPE_WORKER_"


class DeadLetterSettings(BaseSettings):
    """Dead-letter handling configuration."""

    fallback_path: Path = Field(default=Path("./storage/dead-letter-queue"), description="Local fallback directory")
    resubmit_lane: str = Field(default="batch")
    retry_delay_seconds: Dict[str, int] = Field(
        default={"critical": 300, "high": 900, "medium": 3600, "low": 14400},
        description="Delay before a retryable dead letter is resubmitted, by priority",
    )
    max_resubmissions: int = Field(default=3, description="Automatic resubmissions before a record waits for an operator")
    alert_webhook_url: str = Field(default="", description="Optional operator webhook")
    alert_timeout_seconds: int = Field(default=10)

    class Config:
        env_prefix = "AUDITPIPE_DEADLETTER_"


class HealthSettings(BaseSettings):
    """Thresholds consumed by the health checker."""

    error_rate_warning: float = Field(default=0.05)
    error_rate_critical: float = Field(default=0.15)
    response_time_warning_ms: float = Field(default=1000)
    response_time_critical_ms: float = Field(default=3000)
    queue_size_warning: int = Field(default=100)
    queue_size_critical: int = Field(default=500)
    min_throughput_per_minute: float = Field(default=10)
    capture_window_seconds: int = Field(default=300)
    check_interval_seconds: int = Field(default=30)

    class Config:
        env_prefix = "AUDITPIPE_HEALTH_"


class SecuritySettings(BaseSettings):
    """Admin surface security."""

    admin_token: str = Field(default="", description="Bearer token for admin endpoints")

    class Config:
        env_prefix = "AUDITPIPE_SECURITY_"


class Settings(BaseSettings):
    """Main application settings."""

    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Log level")

    queue: QueueSettings = Field(default_factory=QueueSettings)
    dedup: DedupSettings = Field(default_factory=DedupSettings)
    capture: CaptureSettings = Field(default_factory=CaptureSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    dead_letter: DeadLetterSettings = Field(default_factory=DeadLetterSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)

    class Config:
        env_prefix = "AUDITPIPE_"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance with config file and env support."""
    config_data = load_config_file()

    if config_data:
        _set_env_from_config(config_data)

    return Settings()


_SCALAR_MAPPINGS = {
    ("server", "host"): "AUDITPIPE_HOST",
    ("server", "port"): "AUDITPIPE_PORT",
    ("server", "debug"): "AUDITPIPE_DEBUG",
    ("server", "log_level"): "AUDITPIPE_LOG_LEVEL",
    ("queue", "journal_path"): "AUDITPIPE_QUEUE_JOURNAL_PATH",
    ("queue", "compact_threshold"): "AUDITPIPE_QUEUE_COMPACT_THRESHOLD",
    ("dedup", "ttl_seconds"): "AUDITPIPE_DEDUP_TTL_SECONDS",
    ("worker", "compression_threshold_bytes"): "AUDITPIPE_WORKER_COMPRESSION_THRESHOLD_BYTES",
    ("worker", "signing_private_key"): "AUDITPIPE_WORKER_SIGNING_PRIVATE_KEY",
    ("dead_letter", "fallback_path"): "AUDITPIPE_DEADLETTER_FALLBACK_PATH",
    ("dead_letter", "alert_webhook_url"): "AUDITPIPE_DEADLETTER_ALERT_WEBHOOK_URL",
    ("health", "error_rate_warning"): "AUDITPIPE_HEALTH_ERROR_RATE_WARNING",
    ("health", "error_rate_critical"): "AUDITPIPE_HEALTH_ERROR_RATE_CRITICAL",
    ("health", "queue_size_warning"): "AUDITPIPE_HEALTH_QUEUE_SIZE_WARNING",
    ("health", "queue_size_critical"): "AUDITPIPE_HEALTH_QUEUE_SIZE_CRITICAL",
    ("health", "check_interval_seconds"): "AUDITPIPE_HEALTH_CHECK_INTERVAL_SECONDS",
    ("security", "admin_token"): "AUDITPIPE_SECURITY_ADMIN_TOKEN",
}

_JSON_MAPPINGS = {
    ("queue", "lanes"): "AUDITPIPE_QUEUE_LANES",
    ("capture", "baseline_keys"): "AUDITPIPE_CAPTURE_BASELINE_KEYS",
    ("dead_letter", "retry_delay_seconds"): "AUDITPIPE_DEADLETTER_RETRY_DELAY_SECONDS",
}


def _set_env_from_config(config_data: Dict[str, Any]) -> None:
    """Set environment variables from config file if not already set."""
    for (section, key), env_var in _SCALAR_MAPPINGS.items():
        if env_var not in os.environ:
            value = (config_data.get(section) or {}).get(key)
            if value is not None:
                os.environ[env_var] = str(value)

    # Structured values travel as JSON strings
    for (section, key), env_var in _JSON_MAPPINGS.items():
        if env_var not in os.environ:
            value = (config_data.get(section) or {}).get(key)
            if value:
                os.environ[env_var] = json.dumps(value)


def reload_settings() -> Settings:
    """Reload settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
