"""
Configuration management for logvault.

Supports a YAML config file with environment variable overrides. The file is
read once at startup and written once on first run (see ``Config.install``).
"""

from __future__ import annotations

import os
import socket
from contextvars import ContextVar
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

INFINITE_RETENTION = -1

# Never written to the installed config file
RUN_ONLY_KEYS = frozenset({"dry_run"})

# YAML file read by the settings source of the Config being built
_yaml_file: ContextVar[Path | None] = ContextVar("logvault_yaml_file", default=None)


def _default_workers() -> int:
    return max(1, min(4, os.cpu_count() or 1))


class BackendConfig(BaseModel):
    """Configuration for the host log subsystem backend."""

    kind: str = Field(default="file", description="Log backend (file, wevtutil)")
    channel_glob: str = Field(default="*.log", description="Glob for file-backed channels")
    default_max_size_bytes: int = Field(
        default=20 * 1024 * 1024,
        description="Capacity assumed for file-backed channels without an override",
    )
    max_size_overrides: dict[str, int] = Field(
        default_factory=dict,
        description="Per-channel capacity in bytes (file backend)",
    )
    command_timeout: float = Field(default=300.0, description="Per-call timeout in seconds")

    @field_validator("kind")
    @classmethod
    def _known_kind(cls, value: str) -> str:
        value = value.lower()
        if value not in {"file", "wevtutil"}:
            raise ValueError(f"unknown backend '{value}'")
        return value


class LockConfig(BaseModel):
    """Configuration for the single-instance run-lock."""

    path: str | None = Field(default=None, description="Lock file (defaults under archive_path)")
    retries: int = Field(default=1, ge=1, description="Acquisition attempts per invocation")
    retry_delay_seconds: float = Field(default=2.0, ge=0.0, description="Delay between attempts")
    max_consecutive_skips: int = Field(
        default=12,
        ge=1,
        description="Skipped invocations tolerated before reporting lock starvation",
    )


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format (json, plain)")
    file: str | None = Field(default=None, description="Log file path (None for stdout)")
    audit_file: str | None = Field(default=None, description="JSONL audit trail path")


class Config(BaseSettings):
    """Main configuration for logvault."""

    model_config = SettingsConfigDict(
        env_prefix="LOGVAULT_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    archive_path: str = Field(default="/var/lib/logvault/archive", description="Archive root")
    source_path: str = Field(default="/var/log", description="OS log directory")
    retention_days: int = Field(
        default=INFINITE_RETENTION,
        description="Days to keep archives (-1 keeps them forever)",
    )
    staging_path: str | None = Field(default=None, description="Staging directory override")
    host: str = Field(default_factory=socket.gethostname, description="Host name for archives")
    dry_run: bool = Field(default=False, description="Rehearse without clearing or deleting")
    max_workers: int = Field(default_factory=_default_workers, ge=1, description="Archive pool")
    interval_minutes: int = Field(default=15, ge=1, description="Cycle interval for --loop")

    backend: BackendConfig = Field(default_factory=BackendConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("retention_days")
    @classmethod
    def _valid_retention(cls, value: int) -> int:
        if value < INFINITE_RETENTION:
            raise ValueError("retention_days must be -1 (infinite) or >= 0")
        return value

    @property
    def staging_dir(self) -> Path:
        """Directory holding in-flight exports."""
        if self.staging_path:
            return Path(self.staging_path)
        return Path(self.archive_path) / ".staging"

    @property
    def lock_file(self) -> Path:
        """Run-lock file location."""
        if self.lock.path:
            return Path(self.lock.path)
        return Path(self.archive_path) / ".logvault.lock"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        yaml_file = _yaml_file.get()
        if yaml_file is None:
            return init_settings, env_settings, dotenv_settings, file_secret_settings
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file),
            file_secret_settings,
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> Config:
        """Load configuration from a YAML file, with environment variables taking precedence."""
        path = Path(path)
        if not path.exists():
            return cls()

        token = _yaml_file.set(path)
        try:
            return cls()
        finally:
            _yaml_file.reset(token)

    @classmethod
    def load(cls, config_path: str | None = None) -> Config:
        """
        Load configuration with precedence:
        1. Environment variables (highest)
        2. Config file
        3. Defaults (lowest)
        """
        if config_path is None:
            config_path = os.getenv("LOGVAULT_CONFIG")

        if config_path is None:
            for candidate in [
                "logvault.yaml",
                "logvault.yml",
                "config/logvault.yaml",
                "/etc/logvault/logvault.yaml",
            ]:
                if Path(candidate).exists():
                    config_path = candidate
                    break

        if config_path and Path(config_path).exists():
            return cls.from_yaml(config_path)

        return cls()

    def to_yaml(self, path: str | Path, exclude: set[str] | None = None) -> None:
        """Save configuration to a YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with path.open("w") as f:
            yaml.dump(self.model_dump(exclude=exclude), f, default_flow_style=False)

    def install(self, path: str | Path) -> bool:
        """
        Persist this configuration on first run.

        Run-only settings such as ``dry_run`` are left out of the file.

        Returns:
            True if the file was written, False if it already existed.
        """
        path = Path(path)
        if path.exists():
            return False
        self.to_yaml(path, exclude=set(RUN_ONLY_KEYS))
        return True


# Global config instance, used by logging setup only
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
