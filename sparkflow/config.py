from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    queue_prefix: str = "sparkflow:"


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    poll_interval: float = 0.1
    redis: RedisConfig = RedisConfig()


class ReadwiseConfig(BaseModel):
    """Readwise API endpoint and throttling settings."""

    base_url: str = "https://readwise.io"
    list_delay: float = 3.0
    other_delay: float = 0.25
    max_delay: float = 5.0
    max_pages: int = 100


class AirtableConfig(BaseModel):
    """Airtable API endpoint settings."""

    base_url: str = "https://api.airtable.com/v0"
    page_pause: float = 0.2
    max_pages: int = 100


class EmbeddingsConfig(BaseModel):
    """Embedding provider settings."""

    model: str = "text-embedding-3-small"
    api_key: Optional[str] = None
    fetch_limit: int = 250
    batch_size: int = 50


class SchedulerConfig(BaseModel):
    """Recurring task scanner settings."""

    interval: float = 3600.0


class SparkflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    library_url: Optional[str] = None
    readwise: ReadwiseConfig = ReadwiseConfig()
    airtable: AirtableConfig = AirtableConfig()
    embeddings: EmbeddingsConfig = EmbeddingsConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> SparkflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to SPARKFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("SPARKFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = SparkflowConfig(**data)
    else:
        config = SparkflowConfig()

    env_db_url = os.getenv("SPARKFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_library_url = os.getenv("SPARKFLOW_LIBRARY_URL")
    if env_library_url:
        config.library_url = env_library_url
    env_openai_key = os.getenv("OPENAI_API_KEY")
    if env_openai_key:
        config.embeddings.api_key = env_openai_key
    env_log_level = os.getenv("SPARKFLOW_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level
    return config
