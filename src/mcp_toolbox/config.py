"""Configuration management for MCP Toolbox."""

import os
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    Every field can be overridden with an ``MCP_TOOLBOX_``-prefixed
    environment variable, e.g. ``MCP_TOOLBOX_PROBE_HOST``.
    """

    model_config = SettingsConfigDict(
        env_prefix="MCP_TOOLBOX_",
        env_file=".env" if os.getenv("ENVIRONMENT") != "test" else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "MCP Toolbox"
    app_version: str = "0.1.0"
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")

    # Container runtime
    docker_url: Optional[str] = Field(
        default=None,
        description="Docker daemon URL; None lets aiodocker pick DOCKER_HOST or the local socket",
    )

    # Credential issuance service
    credential_service_url: str = Field(default="http://localhost:8000/api/mcp/oauth-credentials")
    credential_service_token: Optional[str] = Field(default=None)
    credential_request_timeout: float = Field(default=15.0, gt=0)
    credential_cache_ttl: float = Field(default=300.0, gt=0)
    credential_refresh_buffer: float = Field(default=300.0, ge=0)
    credential_history_size: int = Field(default=50, ge=1)

    # Deployment
    max_concurrent_deployments: int = Field(default=3, ge=1)
    batch_pause_seconds: float = Field(default=2.0, ge=0)
    max_restart_attempts: int = Field(default=3, ge=0)
    restart_cooldown_seconds: float = Field(default=30.0, ge=0)
    auto_restart_delay_seconds: float = Field(default=5.0, ge=0)
    graceful_timeout_ms: int = Field(default=30000, ge=0)

    # Health monitoring
    probe_host: str = Field(default="localhost")
    health_check_interval: float = Field(default=30.0, gt=0)
    health_check_timeout: float = Field(default=10.0, gt=0)
    health_initial_delay: float = Field(default=1.0, ge=0)
    health_failure_threshold: int = Field(default=3, ge=1)
    health_recovery_threshold: int = Field(default=2, ge=1)
    health_history_size: int = Field(default=100, ge=1)
    group_aggregation_interval: float = Field(default=30.0, gt=0)

    # Container specification defaults
    network_prefix: str = Field(default="mcp-toolbox")
    label_prefix: str = Field(default="mcp-toolbox")
    default_memory_limit: str = Field(default="512m")
    default_cpu_shares: int = Field(default=1024, ge=2)
    restart_max_retries: int = Field(default=3, ge=0)
    no_new_privileges: bool = Field(default=True)
    read_only_root_filesystem: bool = Field(default=False)
    default_cap_add: List[str] = Field(default_factory=list)
    seccomp_profile: Optional[str] = Field(default=None)
    apparmor_profile: Optional[str] = Field(default=None)

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        return str(v or "INFO").upper()

    @field_validator("credential_service_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v):
        return str(v).rstrip("/")


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
