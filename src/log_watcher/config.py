"""
Log Watcher configuration
Values come from the environment (LOG_WATCHER_*) or a .env file
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    """Process-wide settings for the watcher"""

    model_config = SettingsConfigDict(
        env_prefix="LOG_WATCHER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    service_name: str = "log-watcher"
    environment: str = "dev"
    dry_run: bool = False

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # OpenTelemetry
    otel_enabled: bool = False
    otel_endpoint: str = "http://localhost:4317"

    # Resource store
    watch_namespace: Optional[str] = None
    crd_group: str = "monitoring.example.com"
    crd_version: str = "v1alpha1"
    crd_plural: str = "logwatchers"
    status_write_retries: int = 3

    # Scheduling
    max_concurrent_cycles: int = 4
    default_reconcile_interval: int = 60
    default_tail_lines: int = 100

    # Deadlines (seconds)
    fetch_timeout: float = 10.0
    action_timeout: float = 30.0
    alert_timeout: float = 5.0

    # Remediation
    default_cooldown: float = 300.0
    backoff_base: float = 1.0
    backoff_cap: float = 30.0
    pod_grace_period: int = 30
    max_excerpt_length: int = 256

    # Scaling
    scaling_window: float = 300.0

    # Health API
    health_port: int = 8081


settings = Settings()
