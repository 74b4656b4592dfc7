"""
Chrome Stream Configuration
===========================

This module handles configuration loading for the stream synchronizer.

Configuration Sources (in order of precedence):
    1. Environment variables (highest priority)
    2. config.yaml file
    3. Default values (lowest priority)

Environment Variable Mapping:
    CHROME_STREAM_URL                 -> source.url
    CHROME_STREAM_RECONNECT_BACKOFF_MS -> source.reconnect_backoff_ms
    CHROME_STREAM_QUALITY             -> stream.quality
    CHROME_STREAM_DELTA_THRESHOLD     -> stream.delta_threshold
    CHROME_STREAM_KEEP_ALIVE_MS       -> stream.keep_alive_ms
    CHROME_STREAM_MAX_BUFFER_SIZE     -> stream.max_buffer_size
    CHROME_STREAM_STABILITY_WAIT_MS   -> sync.stability_wait_ms
    CHROME_STREAM_MAX_WAIT_MS         -> sync.max_wait_ms
    CHROME_STREAM_DIFF_WORKERS        -> delta.diff_workers
    CHROME_STREAM_LOG_LEVEL           -> logging.level

Example:
    from chrome_stream.config import settings

    print(settings.stream.delta_threshold)
    print(settings.sync.max_wait_ms)
"""

import os
import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, model_validator


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration Models
# =============================================================================

class StreamConfig(BaseModel):
    """Screencast capture and sampling configuration."""

    viewport_width: int = Field(default=1280, ge=1, description="Viewport width in CSS pixels")
    viewport_height: int = Field(default=800, ge=1, description="Viewport height in CSS pixels")
    quality: int = Field(
        default=80,
        ge=0,
        le=100,
        description="JPEG quality requested from the screencast",
    )
    every_nth_frame: int = Field(
        default=1,
        ge=1,
        description="Deliver every Nth screencast frame",
    )
    delta_threshold: float = Field(
        default=2.0,
        ge=0,
        le=100,
        description="Changed-pixel percentage above which a frame is forwarded",
    )
    keep_alive_ms: int = Field(
        default=2000,
        gt=0,
        description="Maximum idle interval before a frame is forced forward",
    )
    max_buffer_size: int = Field(
        default=10,
        ge=1,
        description="Number of forwarded frames kept in history",
    )


class DeltaConfig(BaseModel):
    """Pixel comparison configuration."""

    color_threshold: float = Field(
        default=0.1,
        gt=0,
        le=1.0,
        description="Per-pixel color distance tolerance in (0, 1]",
    )
    diff_workers: int = Field(
        default=2,
        ge=1,
        description="Threads in the comparison worker pool",
    )
    downsample_max_width: int = Field(
        default=0,
        ge=0,
        description="Downsample rasters wider than this before comparing (0 = off)",
    )


class SyncConfig(BaseModel):
    """Action/frame synchronization configuration."""

    stability_wait_ms: float = Field(
        default=200,
        gt=0,
        description="After this long any newer frame resolves an action",
    )
    max_wait_ms: float = Field(
        default=2000,
        gt=0,
        description="Upper bound on waiting for a post-action frame",
    )
    stability_threshold: float = Field(
        default=0.5,
        ge=0,
        le=100,
        description="delta_percent at or below which a frame counts as settled",
    )

    @model_validator(mode="after")
    def check_wait_ordering(self) -> "SyncConfig":
        if self.max_wait_ms <= self.stability_wait_ms:
            raise ValueError(
                f"max_wait_ms ({self.max_wait_ms}) must be greater than "
                f"stability_wait_ms ({self.stability_wait_ms})"
            )
        return self


class SourceConfig(BaseModel):
    """Screencast relay connection configuration."""

    url: str = Field(
        default="ws://localhost:9300/screencast",
        description="WebSocket URL of the screencast relay",
    )
    reconnect_backoff_ms: int = Field(
        default=500,
        ge=100,
        description="Backoff in milliseconds between reconnect attempts",
    )
    max_reconnect_attempts: int = Field(
        default=0,
        ge=0,
        description="Maximum reconnection attempts (0 = unlimited)",
    )
    capture_timeout_ms: int = Field(
        default=3000,
        gt=0,
        description="Timeout for an on-demand capture",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format: json or text")


class Settings(BaseModel):
    """
    Main settings class for the stream synchronizer.

    Loads configuration from YAML file and environment variables.
    Environment variables take precedence over file values.
    """

    stream: StreamConfig = Field(default_factory=StreamConfig)
    delta: DeltaConfig = Field(default_factory=DeltaConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# Configuration Loading
# =============================================================================

def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Load configuration from YAML file and environment variables.

    Priority (highest to lowest):
        1. Environment variables
        2. YAML config file
        3. Default values

    Args:
        config_path: Path to config.yaml. If None, searches common locations.

    Returns:
        Settings: Loaded configuration

    Raises:
        pydantic.ValidationError: If any value is out of range
    """
    if config_path is None:
        search_paths = [
            Path("chrome_stream.yaml"),
            Path("config.yaml"),
            Path("config.yml"),
        ]
        for path in search_paths:
            if path.exists():
                config_path = str(path)
                break

    config_data = {}
    if config_path and Path(config_path).exists():
        logger.info(f"Loading config from: {config_path}")
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
    else:
        logger.debug("No config file found, using defaults and environment variables")

    _apply_env_overrides(config_data)

    return Settings.model_validate(config_data)


def _apply_env_overrides(config_data: dict) -> None:
    """Apply environment variable overrides to config data."""

    # Source settings
    if env_url := os.environ.get("CHROME_STREAM_URL"):
        config_data.setdefault("source", {})["url"] = env_url
    if env_backoff := os.environ.get("CHROME_STREAM_RECONNECT_BACKOFF_MS"):
        config_data.setdefault("source", {})["reconnect_backoff_ms"] = int(env_backoff)

    # Stream settings
    if env_quality := os.environ.get("CHROME_STREAM_QUALITY"):
        config_data.setdefault("stream", {})["quality"] = int(env_quality)
    if env_delta := os.environ.get("CHROME_STREAM_DELTA_THRESHOLD"):
        config_data.setdefault("stream", {})["delta_threshold"] = float(env_delta)
    if env_keep_alive := os.environ.get("CHROME_STREAM_KEEP_ALIVE_MS"):
        config_data.setdefault("stream", {})["keep_alive_ms"] = int(env_keep_alive)
    if env_size := os.environ.get("CHROME_STREAM_MAX_BUFFER_SIZE"):
        config_data.setdefault("stream", {})["max_buffer_size"] = int(env_size)

    # Sync settings
    if env_stability := os.environ.get("CHROME_STREAM_STABILITY_WAIT_MS"):
        config_data.setdefault("sync", {})["stability_wait_ms"] = float(env_stability)
    if env_max_wait := os.environ.get("CHROME_STREAM_MAX_WAIT_MS"):
        config_data.setdefault("sync", {})["max_wait_ms"] = float(env_max_wait)

    # Delta settings
    if env_workers := os.environ.get("CHROME_STREAM_DIFF_WORKERS"):
        config_data.setdefault("delta", {})["diff_workers"] = int(env_workers)

    # Logging settings
    if env_log := os.environ.get("CHROME_STREAM_LOG_LEVEL"):
        config_data.setdefault("logging", {})["level"] = env_log


def setup_logging(settings: Settings) -> None:
    """Configure logging based on settings."""
    log_level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    if settings.logging.format == "json":
        log_format = '{"time": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}'
    else:
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


# =============================================================================
# Global Settings Instance
# =============================================================================

# Loaded on import; logging is left to the embedding application
settings = load_config()
