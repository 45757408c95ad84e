"""
Configuration management.

Settings are loaded from, in order of precedence:
1. Environment variables (AGENTBOX_*)
2. A local YAML file (AGENTBOX_CONFIG_FILE or an explicit path)
3. Defaults
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

logger = structlog.get_logger(__name__)

MIN_RECONCILIATION_INTERVAL = 10


class _Section(BaseSettings):
    """Base for config sections: env vars win over values passed in from YAML."""

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return env_settings, dotenv_settings, init_settings, file_secret_settings


class ServerConfig(_Section):
    """HTTP server and logging configuration."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="json or console")

    @field_validator("log_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of {valid_levels}")
        return v

    model_config = SettingsConfigDict(env_prefix="AGENTBOX_", extra="ignore")


class KubernetesConfig(_Section):
    """Cluster access and per-environment defaults."""

    kubeconfig: str = Field(default="", description="Empty means in-cluster")
    namespace_prefix: str = Field(default="agentbox-")
    runtime_class: str = Field(default="gvisor")
    api_timeout_seconds: float = Field(default=15.0, gt=0)

    model_config = SettingsConfigDict(env_prefix="AGENTBOX_", extra="ignore")


class ResourceConfig(_Section):
    """Resource defaults and upper bounds for environment specs."""

    default_cpu_limit: str = Field(default="1000m")
    default_memory_limit: str = Field(default="1Gi")
    default_storage_limit: str = Field(default="5Gi")
    max_cpu: str = Field(default="10")
    max_memory: str = Field(default="10Gi")
    max_storage: str = Field(default="100Gi")
    max_environments_per_user: int = Field(default=100)

    model_config = SettingsConfigDict(env_prefix="AGENTBOX_", extra="ignore")


class TimeoutConfig(_Section):
    """Timeouts in seconds."""

    default_timeout: int = Field(default=3600)
    max_timeout: int = Field(default=86400)
    startup_timeout: int = Field(default=120)
    execution_default_timeout: int = Field(default=300)
    execution_max_timeout: int = Field(default=3600)
    cleanup_timeout: int = Field(default=30)

    model_config = SettingsConfigDict(env_prefix="AGENTBOX_", extra="ignore")


class PoolConfig(_Section):
    """Standby pod pool configuration."""

    enabled: bool = Field(
        default=False,
        description="Give environments without a pool policy the default pool",
    )
    size: int = Field(default=2)
    default_image: str = Field(default="python:3.11-slim")
    default_cpu: str = Field(default="500m")
    default_memory: str = Field(default="512Mi")
    interval_seconds: int = Field(default=10, gt=0)

    model_config = SettingsConfigDict(env_prefix="AGENTBOX_POOL_", extra="ignore")


class ReconciliationConfig(_Section):
    """Reconciliation loop configuration."""

    interval_seconds: int = Field(default=60)
    max_retries: int = Field(default=5)
    fast_fail_permanent: bool = Field(
        default=True,
        description="Mark environments failed on the first clearly permanent error",
    )

    model_config = SettingsConfigDict(
        env_prefix="AGENTBOX_RECONCILIATION_", extra="ignore"
    )


class ExecutionConfig(_Section):
    """Execution engine worker pool."""

    workers: int = Field(default=20)
    queue_size: int = Field(default=1000)

    model_config = SettingsConfigDict(env_prefix="AGENTBOX_EXECUTION_", extra="ignore")


class ProxyConfig(_Section):
    """Interactive session proxy."""

    max_sessions: int = Field(default=100)
    shell: str = Field(default="/bin/sh")
    read_chunk_bytes: int = Field(default=8192, gt=0)

    model_config = SettingsConfigDict(env_prefix="AGENTBOX_PROXY_", extra="ignore")


class DatabaseConfig(_Section):
    """State store connection."""

    url: str = Field(default="sqlite:///./agentbox.db")
    auto_create_tables: bool = Field(default=True)
    timeout_seconds: float = Field(default=10.0, gt=0)

    model_config = SettingsConfigDict(env_prefix="AGENTBOX_DATABASE_", extra="ignore")


_SECTIONS: dict[str, type[_Section]] = {
    "server": ServerConfig,
    "kubernetes": KubernetesConfig,
    "resources": ResourceConfig,
    "timeouts": TimeoutConfig,
    "pool": PoolConfig,
    "reconciliation": ReconciliationConfig,
    "executions": ExecutionConfig,
    "proxy": ProxyConfig,
    "database": DatabaseConfig,
}


class Config(BaseModel):
    """Main application configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)
    resources: ResourceConfig = Field(default_factory=ResourceConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    executions: ExecutionConfig = Field(default_factory=ExecutionConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    @classmethod
    def from_yaml(cls, path: Path | str) -> Config:
        """Load configuration from a YAML file, letting env vars override it."""
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file must contain a mapping: {path}")

        return cls.from_mapping(data)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> Config:
        sections = {}
        for name, section_cls in _SECTIONS.items():
            values = data.get(name) or {}
            if not isinstance(values, dict):
                raise ConfigurationError(f"Config section '{name}' must be a mapping")
            sections[name] = section_cls(**values)
        return cls(**sections)

    def validate_settings(self) -> None:
        """Reject settings the orchestrator cannot run with."""
        if not 1 <= self.server.port <= 65535:
            raise ConfigurationError(
                f"server port must be between 1 and 65535, got {self.server.port}"
            )
        if self.timeouts.max_timeout < self.timeouts.default_timeout:
            raise ConfigurationError(
                "timeouts max_timeout must be >= default_timeout"
            )
        if self.timeouts.execution_max_timeout < self.timeouts.execution_default_timeout:
            raise ConfigurationError(
                "timeouts execution_max_timeout must be >= execution_default_timeout"
            )
        if self.reconciliation.interval_seconds < MIN_RECONCILIATION_INTERVAL:
            raise ConfigurationError(
                f"reconciliation interval_seconds must be >= {MIN_RECONCILIATION_INTERVAL}, "
                f"got {self.reconciliation.interval_seconds}"
            )
        if self.reconciliation.max_retries < 0:
            raise ConfigurationError(
                f"reconciliation max_retries must be >= 0, got {self.reconciliation.max_retries}"
            )
        if self.pool.size < 0:
            raise ConfigurationError(f"pool size must be >= 0, got {self.pool.size}")
        if self.executions.workers < 1:
            raise ConfigurationError("executions workers must be >= 1")
        if self.executions.queue_size < 1:
            raise ConfigurationError("executions queue_size must be >= 1")
        if self.proxy.max_sessions < 1:
            raise ConfigurationError("proxy max_sessions must be >= 1")


def load_config(config_file: Path | str | None = None) -> Config:
    """
    Build a fresh configuration.

    Args:
        config_file: Optional YAML file; falls back to AGENTBOX_CONFIG_FILE

    Returns:
        Validated configuration
    """
    config_file = config_file or os.getenv("AGENTBOX_CONFIG_FILE") or None
    if config_file:
        config = Config.from_yaml(config_file)
        logger.info("config_loaded_from_file", path=str(config_file))
    else:
        config = Config()

    config.validate_settings()
    return config


@lru_cache
def get_config() -> Config:
    """Get cached configuration instance."""
    return load_config()
