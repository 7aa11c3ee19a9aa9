"""Configuration settings for coop_memory."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from coop_memory.types import MaintenanceConfig


class MemorySettings(BaseSettings):
    """Memory engine settings loaded from ``COOP_MEMORY_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="COOP_MEMORY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    data_dir: Path = Path.home() / ".coop"
    db_filename: str = "memory.db"
    agent_id: str = Field(default="coop", min_length=1)

    # Logging
    log_level: str = "INFO"

    # Embeddings: "none", "hash" (local, deterministic) or "openai"
    embedding_provider: str = "none"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: Optional[int] = Field(default=None, ge=1)

    # Reconciliation
    reconcile_candidates: int = Field(default=5, ge=1, le=50)

    # Maintenance
    archive_after_days: int = 90
    delete_archive_after_days: int = 365
    compress_after_days: int = 30
    compression_min_cluster_size: int = 3
    max_rows_per_run: int = Field(default=200, ge=1)

    @property
    def db_path(self) -> Path:
        return self.data_dir.expanduser() / self.db_filename

    @property
    def log_dir(self) -> Path:
        return self.data_dir.expanduser() / "logs"

    def maintenance_config(self) -> MaintenanceConfig:
        return MaintenanceConfig(
            archive_after_days=self.archive_after_days,
            delete_archive_after_days=self.delete_archive_after_days,
            compress_after_days=self.compress_after_days,
            compression_min_cluster_size=self.compression_min_cluster_size,
            max_rows_per_run=self.max_rows_per_run,
        )


@lru_cache
def get_settings() -> MemorySettings:
    """Get cached settings instance."""
    return MemorySettings()


def get_coop_home() -> Path:
    """Data directory, re-read from the environment on every call."""
    return MemorySettings().data_dir.expanduser()
