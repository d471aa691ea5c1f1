from __future__ import annotations

import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_EVENT_TOPIC, DEFAULT_MAX_ATTEMPTS, DEFAULT_MAX_STEPS_PER_RUN


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    url: Optional[str] = None


class TransportConfig(BaseModel):
    """Event transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    topic: str = DEFAULT_EVENT_TOPIC
    redis: RedisConfig = RedisConfig()


class RetryConfig(BaseModel):
    """Retry policy for failed action dispatches."""

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    per_kind: Dict[str, int] = Field(default_factory=dict)
    base_delay_seconds: float = 60.0
    factor: float = 2.0
    max_delay_seconds: float = 3600.0
    jitter_seconds: float = 5.0

    def attempts_for(self, kind: str, override: Optional[int] = None) -> int:
        if override is not None:
            return override
        return self.per_kind.get(kind, self.max_attempts)


class SchedulerConfig(BaseModel):
    poll_interval_seconds: float = 5.0
    batch_size: int = 100
    stale_after_seconds: float = 600.0


class EngineConfig(BaseModel):
    dispatch_timeout_seconds: float = 30.0
    max_steps_per_run: int = DEFAULT_MAX_STEPS_PER_RUN


class CapabilitiesConfig(BaseModel):
    """Where external capability calls are sent."""

    backend: Literal["inmemory", "http"] = "inmemory"
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    timeout_seconds: float = 10.0


class CrmflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    retry: RetryConfig = RetryConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    engine: EngineConfig = EngineConfig()
    capabilities: CapabilitiesConfig = CapabilitiesConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> CrmflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CRMFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("CRMFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = CrmflowConfig(**data)
    else:
        config = CrmflowConfig()

    env_db_url = os.getenv("CRMFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_log_level = os.getenv("CRMFLOW_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level
    return config
