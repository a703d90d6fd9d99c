"""Network reconciliation configuration."""
from __future__ import annotations

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ISOLATION_MODES = ("none", "environment", "strict")


class Settings(BaseSettings):
    """Settings loaded from NETRECON_* environment variables."""

    model_config = SettingsConfigDict(env_prefix="NETRECON_")

    # Feature switches
    enabled: bool = True
    isolation_mode: str = "environment"  # none | environment | strict
    proxy_isolation: bool = False
    swarm_overlay_encryption: bool = False

    # Naming and limits
    name_prefix: str = "ce"
    label_namespace: str = "coolify"
    max_networks_per_server: int = 200

    # Host defaults
    default_network: str = "coolify"
    default_overlay_network: str = "coolify-overlay"
    proxy_container: str = "coolify-proxy"

    # Storage
    database_url: str = "sqlite:///./netrecon.db"
    redis_url: str = "redis://localhost:6379/0"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30

    # Scheduling
    queue_name: str = "netrecon"
    post_deploy_delay: int = 3  # seconds between deploy completion and auto-attach
    reconcile_max_attempts: int = 3
    reconcile_backoff: list[int] = [5, 15, 30]
    reconcile_job_timeout: int = 120
    proxy_migration_job_timeout: int = 300
    reconcile_lock_ttl: int = 180
    trigger_guard_ttl: int = 5
    stale_task_grace: int = 60  # slack before an in-flight task row stops holding its key

    # Engine access
    engine_timeout: int = 30  # seconds per docker API call

    # Drift detection
    drift_check_interval: int = 300
    orphan_grace_days: int = 7
    cluster_cache_ttl: int = 60

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"  # json | text
    metrics_port: int = 8002

    @field_validator("isolation_mode")
    @classmethod
    def _check_isolation_mode(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ISOLATION_MODES:
            raise ValueError(
                f"isolation_mode must be one of {', '.join(ISOLATION_MODES)}, got {value!r}"
            )
        return value

    @field_validator("reconcile_backoff")
    @classmethod
    def _check_backoff(cls, value: list[int]) -> list[int]:
        if any(v < 0 for v in value):
            raise ValueError("reconcile_backoff intervals must be non-negative")
        return value

    @property
    def isolation_active(self) -> bool:
        return self.enabled and self.isolation_mode != "none"

    def label(self, name: str) -> str:
        """Return a fully-qualified engine label key."""
        return f"{self.label_namespace}.{name}"


settings = Settings()
