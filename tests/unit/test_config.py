"""Tests for configuration loading."""

from sparkflow.config import load_config
from sparkflow.persistence import InMemoryRunRepository, SQLiteRunRepository, get_repository
from sparkflow.store import InMemoryLibraryStore, SqlLibraryStore, get_library_store
from sparkflow.transports import get_transport
from sparkflow.transports.redis import RedisTransport


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
readwise:
  list_delay: 4.0
embeddings:
  batch_size: 20
"""
    )
    monkeypatch.setenv("SPARKFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.readwise.list_delay == 4.0
    assert config.readwise.other_delay == 0.25
    assert config.embeddings.batch_size == 20
    assert config.embeddings.api_key is None


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("SPARKFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("SPARKFLOW_DATABASE_URL", "sqlite:///tmp/runs.db")
    monkeypatch.setenv("SPARKFLOW_LIBRARY_URL", "sqlite+aiosqlite:///lib.db")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("SPARKFLOW_LOG_LEVEL", "DEBUG")

    config = load_config()
    assert config.database_url == "sqlite:///tmp/runs.db"
    assert config.library_url == "sqlite+aiosqlite:///lib.db"
    assert config.embeddings.api_key == "sk-test"
    assert config.log_level == "DEBUG"


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
    monkeypatch.setenv("SPARKFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("SPARKFLOW_TRANSPORT", raising=False)

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380


def test_repository_factories(tmp_path, monkeypatch):
    monkeypatch.setenv("SPARKFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("SPARKFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("SPARKFLOW_LIBRARY_URL", raising=False)
    config = load_config()

    assert isinstance(get_repository(config=config), InMemoryRunRepository)
    repo = get_repository(database_url=f"sqlite://{tmp_path / 'runs.db'}")
    assert isinstance(repo, SQLiteRunRepository)

    assert isinstance(get_library_store(config=config), InMemoryLibraryStore)
    store = get_library_store(library_url=f"sqlite+aiosqlite:///{tmp_path / 'lib.db'}")
    assert isinstance(store, SqlLibraryStore)
