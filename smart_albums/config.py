"""Configuration settings for the smart album pipeline."""

import os
from dataclasses import dataclass, fields
from datetime import timedelta
from typing import Optional

from dotenv import load_dotenv

from smart_albums.error_handling import ConfigurationError

DATABASE_PATH = "smart_albums.db"
ENV_PREFIX = "SMART_ALBUMS_"


@dataclass
class PipelineConfig:
    """Central configuration for album generation, caching and scheduling."""

    # Storage and logging
    database_path: str = DATABASE_PATH
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Event clustering
    max_time_window_hours: float = 2.0
    max_distance_meters: float = 300.0
    min_cluster_size: int = 3
    min_cluster_duration_minutes: float = 30.0

    # Classification
    max_samples_per_cluster: int = 3
    max_tags_per_album: int = 5
    classification_workers: int = 3
    classification_timeout: Optional[float] = None
    geocoding_timeout: float = 1.0

    # Batch scheduling
    batch_size_override: Optional[int] = None
    memory_check_interval: float = 2.0
    memory_threshold: float = 0.7
    pressure_pause_seconds: float = 2.0
    extraction_chunk_size: int = 500

    # Album cache validity
    cache_ttl_hours: float = 24.0

    # Image caches
    thumbnail_cost_limit_mb: int = 25
    thumbnail_count_limit: int = 100
    high_quality_cost_limit_mb: int = 50
    high_quality_count_limit: int = 30
    screen_scale: float = 2.0

    @property
    def max_time_window(self) -> timedelta:
        return timedelta(hours=self.max_time_window_hours)

    @property
    def min_cluster_duration(self) -> timedelta:
        return timedelta(minutes=self.min_cluster_duration_minutes)

    @property
    def cache_ttl(self) -> timedelta:
        return timedelta(hours=self.cache_ttl_hours)

    def validate(self):
        """Raise ConfigurationError for values the pipeline cannot run with."""
        if self.min_cluster_size < 1:
            raise ConfigurationError("min_cluster_size must be at least 1")
        if self.max_time_window_hours <= 0:
            raise ConfigurationError("max_time_window_hours must be positive")
        if self.max_distance_meters <= 0:
            raise ConfigurationError("max_distance_meters must be positive")
        if self.max_samples_per_cluster < 1:
            raise ConfigurationError("max_samples_per_cluster must be at least 1")
        if self.batch_size_override is not None and self.batch_size_override < 1:
            raise ConfigurationError("batch_size_override must be at least 1")
        if not 0 < self.memory_threshold <= 1:
            raise ConfigurationError("memory_threshold must be in (0, 1]")
        return self


def _is_optional(target_type) -> bool:
    return type(None) in getattr(target_type, "__args__", ())


def _coerce(raw: str, target_type, name: str):
    if raw == "" or raw.lower() == "none":
        if _is_optional(target_type):
            return None
        raise ConfigurationError(f"{ENV_PREFIX}{name.upper()} cannot be empty")
    try:
        if target_type in (int, Optional[int]):
            return int(raw)
        if target_type in (float, Optional[float]):
            return float(raw)
    except ValueError:
        raise ConfigurationError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}")
    return raw


def load_config(env_file: Optional[str] = None) -> PipelineConfig:
    """
    Build a PipelineConfig from defaults, an optional .env file and the environment.

    Every field can be overridden with SMART_ALBUMS_<FIELD_NAME>, e.g.
    SMART_ALBUMS_MAX_TIME_WINDOW_HOURS=3.

    Args:
        env_file: Optional path to a .env file

    Returns:
        PipelineConfig: Validated configuration
    """
    load_dotenv(env_file)

    overrides = {}
    for config_field in fields(PipelineConfig):
        raw = os.getenv(f"{ENV_PREFIX}{config_field.name.upper()}")
        if raw is None:
            continue
        overrides[config_field.name] = _coerce(raw.strip(), config_field.type, config_field.name)

    return PipelineConfig(**overrides).validate()
