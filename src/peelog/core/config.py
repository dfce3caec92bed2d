"""Configuration management with Pydantic and YAML support."""

from __future__ import annotations

import os
from datetime import datetime, tzinfo
from functools import lru_cache
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, EnvSettingsSource, SettingsConfigDict


class RemoteConfig(BaseModel):
    """Remote sync/analytics service configuration."""

    enabled: bool = True
    base_url: str = Field(default="https://api.peelog.app", description="Service root URL")
    timeout_seconds: float = Field(default=10.0, gt=0, le=120, description="Per-request timeout")


class SyncConfig(BaseModel):
    """Event synchronization configuration."""

    enabled: bool = True
    cooldown_seconds: float = Field(default=20.0, ge=0, description="Coalesce triggers within this window")
    upload_batch_size: int = Field(default=200, ge=1, le=1000)


class ConnectivityConfig(BaseModel):
    """Reachability probe configuration."""

    probe_url: str = Field(default="https://api.peelog.app/health")
    probe_interval_seconds: float = Field(default=15.0, ge=1)
    probe_timeout_seconds: float = Field(default=3.0, gt=0)


class AnalyticsConfig(BaseModel):
    """Statistics freshness and gating configuration."""

    freshness_minutes: int = Field(default=10, ge=1, le=120, description="Cached stats are fresh for this long")
    min_active_days: int = Field(default=3, ge=1, description="Days with events needed before interpreting stats")
    prewarm: bool = Field(default=True, description="Fetch common ranges in the background")


class NotificationConfig(BaseModel):
    """User-facing status toast configuration."""

    toast_interval_seconds: float = Field(default=3.0, ge=0, description="At most one status toast per interval")


class AIConfig(BaseModel):
    """AI insight service configuration."""

    enabled: bool = True
    daily_question_limit: int = Field(default=1, ge=0)


class Config(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PEELOG_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Paths
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".local/share/peelog")
    log_dir: Path = Field(default_factory=lambda: Path.home() / ".local/state/peelog")
    config_dir: Path = Field(default_factory=lambda: Path.home() / ".config/peelog")

    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")

    # IANA zone used for calendar-day bucketing; device local zone when unset
    timezone: str | None = Field(default=None)

    # Sub-configurations
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    connectivity: ConnectivityConfig = Field(default_factory=ConnectivityConfig)
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    ai: AIConfig = Field(default_factory=AIConfig)

    @property
    def db_path(self) -> Path:
        """Path to SQLite database."""
        return self.data_dir / "peelog.db"

    @property
    def config_file(self) -> Path:
        """Path to YAML config file."""
        return self.config_dir / "config.yaml"

    @property
    def tz(self) -> tzinfo:
        """Zone for local calendar computations."""
        if self.timezone:
            return ZoneInfo(self.timezone)
        return datetime.now().astimezone().tzinfo  # type: ignore[return-value]

    def ensure_directories(self) -> None:
        """Create all required directories."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.config_dir.mkdir(parents=True, exist_ok=True)

        # Event history is personal health data
        os.chmod(self.data_dir, 0o700)

    @classmethod
    def load(cls, config_path: Path | None = None) -> Config:
        """Load configuration from YAML file, environment variables, and defaults.

        Priority (highest to lowest):
        1. Environment variables
        2. YAML config file
        3. Default values
        """
        config_path = config_path or Path.home() / ".config/peelog/config.yaml"

        yaml_config: dict[str, Any] = {}
        if config_path.exists():
            with open(config_path) as f:
                yaml_config = yaml.safe_load(f) or {}

        # Init kwargs outrank env in pydantic-settings, so fold env values over the YAML first
        env_values = EnvSettingsSource(cls)()
        return cls(**_deep_merge(yaml_config, env_values))

    def save(self, config_path: Path | None = None) -> None:
        """Save current configuration to YAML file."""
        config_path = config_path or self.config_file
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude={"db_path", "config_file", "tz"}, exclude_none=True)

        for key in ["data_dir", "log_dir", "config_dir"]:
            if key in data:
                data[key] = str(data[key])

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

        os.chmod(config_path, 0o600)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@lru_cache
def get_config() -> Config:
    """Get cached configuration instance."""
    return Config.load()
