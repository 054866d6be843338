"""
Configuration management for the forum sync system.

Loads and validates settings from sync_config.yaml with environment variable overrides.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from .utils import ConfigError


@dataclass
class EdConfig:
    """Ed Discussion API settings."""
    region: str = "eu"
    base_url: str = ""
    timeout_seconds: float = 30.0
    page_size: int = 100  # Ed caps thread listing at 100 per request
    max_threads: int = 20000  # Safety cap for pagination
    user_agent: str = "forumsync/1.0"

    def __post_init__(self):
        if not self.base_url:
            self.base_url = f"https://{self.region}.edstem.org/api"


@dataclass
class QdrantConfig:
    """Qdrant vector database settings."""
    url: str = ""
    host: str = "localhost"
    port: int = 6333
    api_key: str | None = None
    vector_size: int = 768
    distance: str = "COSINE"
    upsert_batch_size: int = 100
    stats_page_size: int = 1000


@dataclass
class EmbeddingConfig:
    """Embedding model settings."""
    model: str = "nomic-ai/nomic-embed-text-v1.5"
    document_prefix: str = "search_document: "
    query_prefix: str = "search_query: "


@dataclass
class SyncConfig:
    """Sync concurrency, retry and maintenance settings."""
    full_concurrency: int = 50
    delta_concurrency: int = 30
    retry_attempts: int = 5
    default_lookback_days: int = 7
    stuck_sync_hours: float = 2.0
    cleanup_days: int = 7
    health_check_timeout_seconds: float = 10.0
    workflow_workers: int = 4
    step_max_attempts: int = 1


@dataclass
class StateConfig:
    """SQLite sync state settings."""
    path: str = "./cache/forumsync.db"


@dataclass
class SchedulerConfig:
    """Background scheduler settings."""
    enabled: bool = True
    delta_sync_interval_minutes: int = 60
    stuck_sweep_interval_minutes: int = 15
    cleanup_interval_hours: int = 24


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    file: str = "./logs/forumsync.log"
    max_size_mb: int = 50
    backup_count: int = 5


def _section(cls, data: dict[str, Any] | None, current):
    """Build a section dataclass, keeping current values for missing keys."""
    if not data:
        return current
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    values = {name: getattr(current, name) for name in known}
    values.update({k: v for k, v in data.items() if k in known})
    return cls(**values)


@dataclass
class Config:
    """
    Main configuration container.

    Loads from sync_config.yaml with optional environment variable overrides.
    """
    ed: EdConfig = field(default_factory=EdConfig)
    qdrant: QdrantConfig = field(default_factory=QdrantConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    state: StateConfig = field(default_factory=StateConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "Config":
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to sync_config.yaml. If None, uses default locations.

        Returns:
            Config instance with loaded settings.
        """
        if config_path is None:
            candidates = [
                Path("sync_config.yaml"),
                Path(__file__).parent.parent.parent / "sync_config.yaml",
                Path("/etc/forumsync/sync_config.yaml"),
            ]
            for candidate in candidates:
                if candidate.exists():
                    config_path = candidate
                    break
            else:
                raise FileNotFoundError(
                    "Config file not found. Tried: " + ", ".join(str(c) for c in candidates)
                )

        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        logger.info(f"Loading config from {config_path}")

        try:
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {config_path} must contain a mapping of sections")
        for section, values in data.items():
            if values is not None and not isinstance(values, dict):
                raise ConfigError(f"Config section '{section}' must be a mapping")

        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create Config from dictionary."""
        config = cls()

        ed_data = dict(data.get("ed") or {})
        # base_url is derived from region unless set explicitly
        if "region" in ed_data and "base_url" not in ed_data:
            ed_data["base_url"] = ""
        config.ed = _section(EdConfig, ed_data, config.ed)
        config.qdrant = _section(QdrantConfig, data.get("qdrant"), config.qdrant)
        config.embedding = _section(EmbeddingConfig, data.get("embedding"), config.embedding)
        config.sync = _section(SyncConfig, data.get("sync"), config.sync)
        config.state = _section(StateConfig, data.get("state"), config.state)
        config.scheduler = _section(SchedulerConfig, data.get("scheduler"), config.scheduler)
        config.logging = _section(LoggingConfig, data.get("logging"), config.logging)

        config._apply_env_overrides()

        return config

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        if os.getenv("ED_REGION"):
            self.ed = EdConfig(
                region=os.getenv("ED_REGION"),
                timeout_seconds=self.ed.timeout_seconds,
                page_size=self.ed.page_size,
                max_threads=self.ed.max_threads,
                user_agent=self.ed.user_agent,
            )

        if os.getenv("QDRANT_URL"):
            self.qdrant.url = os.getenv("QDRANT_URL")
        if os.getenv("QDRANT_HOST"):
            self.qdrant.host = os.getenv("QDRANT_HOST")
        if os.getenv("QDRANT_PORT"):
            self.qdrant.port = int(os.getenv("QDRANT_PORT"))
        if os.getenv("QDRANT_API_KEY"):
            self.qdrant.api_key = os.getenv("QDRANT_API_KEY")

        if os.getenv("FORUMSYNC_STATE_PATH"):
            self.state.path = os.getenv("FORUMSYNC_STATE_PATH")

    def validate(self) -> list[str]:
        """
        Validate configuration and return list of errors.
        Empty list means configuration is valid.
        """
        errors = []

        if self.ed.region not in ("eu", "us"):
            errors.append(f"ed.region must be 'eu' or 'us', got {self.ed.region!r}")
        if not 1 <= self.ed.page_size <= 100:
            errors.append("ed.page_size must be between 1 and 100")
        if self.ed.max_threads < self.ed.page_size:
            errors.append("ed.max_threads must be at least ed.page_size")

        if self.qdrant.vector_size < 1:
            errors.append("qdrant.vector_size must be positive")
        if self.qdrant.upsert_batch_size < 1:
            errors.append("qdrant.upsert_batch_size must be positive")

        if self.sync.full_concurrency < 1 or self.sync.delta_concurrency < 1:
            errors.append("sync concurrency must be positive")
        if self.sync.retry_attempts < 1:
            errors.append("sync.retry_attempts must be at least 1")
        if self.sync.step_max_attempts < 1:
            errors.append("sync.step_max_attempts must be at least 1")

        return errors
