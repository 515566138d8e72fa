"""Runtime settings loaded from environment variables using Pydantic Settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Timing and integration settings shared by every launch.

    These are the knobs that are not part of a single run's configuration:
    poll intervals, readiness budgets, and the names used to find the
    traffic-interception agent in the cluster.
    """

    model_config = SettingsConfigDict(
        env_prefix="KET_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Completion polling
    job_poll_interval_seconds: float = 5.0

    # Test runner pod readiness / log streaming
    pod_poll_interval_seconds: float = 2.0
    pod_ready_timeout_seconds: float = 120.0  # Covers image pulls
    log_chunk_size: int = 2048
    log_drain_timeout_seconds: float = 10.0  # After the Job is terminal

    # Traffic interception sidecar
    sidecar_executable: str = "mirrord"
    sidecar_poll_interval_seconds: float = 2.0
    sidecar_ready_timeout_seconds: float = 60.0
    sidecar_stop_grace_seconds: float = 5.0
    agent_label_selector: str = "app=mirrord"
    agent_name_marker: str = "mirrord"
    agent_container: str = "mirrord-agent"
    agent_ready_marker: str = "agent ready"
    agent_log_tail_lines: int = 50

    # Config file discovery
    config_file_name: str = "ket-config.yaml"
    config_home_dir: str = "~/.ket"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
