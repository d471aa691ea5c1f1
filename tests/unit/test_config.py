"""Tests for configuration loading."""

import pytest

import crmflow.persistence as persistence
from crmflow.capabilities import get_capabilities
from crmflow.capabilities.http import HttpCapabilities
from crmflow.config import load_config
from crmflow.persistence import (
    InMemoryWorkflowRepository,
    SQLiteWorkflowRepository,
    get_repository,
    open_repository,
)
from crmflow.transports import get_transport
from crmflow.transports.redis import RedisTransport


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  topic: tenant.events
  redis:
    host: testhost
    port: 1234
retry:
  max_attempts: 5
  per_kind:
    webhook: 8
scheduler:
  poll_interval_seconds: 2
log_level: DEBUG
"""
    )
    monkeypatch.setenv("CRMFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("CRMFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.topic == "tenant.events"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.retry.attempts_for("send_email") == 5
    assert config.retry.attempts_for("webhook") == 8
    assert config.retry.attempts_for("webhook", override=2) == 2
    assert config.scheduler.poll_interval_seconds == 2
    assert config.log_level == "DEBUG"
    assert config.database_url is None


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("CRMFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("DATABASE_URL", "sqlite:///tmp/other.db")
    monkeypatch.setenv("CRMFLOW_DATABASE_URL", "sqlite:///tmp/crmflow.db")
    monkeypatch.setenv("CRMFLOW_LOG_LEVEL", "WARNING")

    config = load_config()
    assert config.database_url == "sqlite:///tmp/crmflow.db"
    assert config.log_level == "WARNING"
    assert config.transport.backend == "inmemory"


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("CRMFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("CRMFLOW_TRANSPORT", raising=False)

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380

    monkeypatch.setenv("CRMFLOW_TRANSPORT", "inmemory")
    assert type(get_transport()).__name__ == "InMemoryTransport"


def test_get_capabilities_http(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
capabilities:
  backend: http
  base_url: https://platform.example.com/api/
  api_key: secret
"""
    )
    monkeypatch.setenv("CRMFLOW_CONFIG", str(config_path))

    caps = get_capabilities()
    assert isinstance(caps, HttpCapabilities)
    assert caps.base_url == "https://platform.example.com/api"


def test_open_repository_by_url(tmp_path):
    assert isinstance(open_repository(None), InMemoryWorkflowRepository)
    assert isinstance(open_repository("memory://"), InMemoryWorkflowRepository)

    repo = open_repository(f"sqlite://{tmp_path / 'crmflow.db'}")
    assert isinstance(repo, SQLiteWorkflowRepository)
    assert repo.db_path == str(tmp_path / "crmflow.db")

    with pytest.raises(ValueError):
        open_repository("mysql://localhost/crmflow")


def test_get_repository_is_shared(tmp_path, monkeypatch):
    monkeypatch.setenv("CRMFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("CRMFLOW_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")
    monkeypatch.setattr(persistence, "_repository_instance", None)

    repo = get_repository()
    assert isinstance(repo, SQLiteWorkflowRepository)
    assert get_repository() is repo
    assert isinstance(get_repository("memory://"), InMemoryWorkflowRepository)
